"""
Retry handler with exponential backoff and jitter.

Implements error-aware retry logic for external calls made by pipeline steps:
- 429 / rate limit -> retry with backoff
- Timeouts and transient network errors -> retry with backoff
- 5xx server errors -> retry with backoff
- Parse, validation and persistence errors -> fail immediately (no retry)

Backoff formula: min(max_delay, initial_delay * multiplier^attempt) +/- jitter

Exhausted or non-retryable failures are re-raised as RetryExhaustedError,
labelled with the operation name. Callers treat that as a step failure.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Generic,
    List,
    Optional,
    Sequence,
    TypeVar,
)

import httpx
from sqlalchemy.exc import SQLAlchemyError

from src.agents.constants import (
    RETRY_BACKOFF_MULTIPLIER,
    RETRY_INITIAL_DELAY_SECONDS,
    RETRY_JITTER_FACTOR,
    RETRY_MAX_DELAY_SECONDS,
    RETRY_MAX_RETRIES,
)
from src.agents.errors import AgentError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_MARKERS = ("rate limit", "429", "too many requests")
TIMEOUT_MARKERS = ("timeout", "timed out", "etimedout")
NETWORK_MARKERS = ("network", "connection", "econnreset")
SERVER_ERROR_MARKERS = ("500", "502", "503", "504")


class ErrorCategory(str, Enum):
    """Error classification for retry decisions."""
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    SERVER_ERROR = "server_error"
    PERSISTENCE = "persistence"
    NON_RETRYABLE = "non_retryable"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy configuration.

    Attributes:
        max_retries: Additional attempts after the first one
        initial_delay_seconds: Delay before the first retry
        max_delay_seconds: Maximum delay cap
        backoff_multiplier: Growth factor per attempt
        jitter_factor: Random jitter factor (0.1 = +/- 10%)
    """
    max_retries: int = RETRY_MAX_RETRIES
    initial_delay_seconds: float = RETRY_INITIAL_DELAY_SECONDS
    max_delay_seconds: float = RETRY_MAX_DELAY_SECONDS
    backoff_multiplier: float = RETRY_BACKOFF_MULTIPLIER
    jitter_factor: float = RETRY_JITTER_FACTOR


@dataclass
class OperationResult(Generic[T]):
    """Outcome of one operation run through execute_all."""
    label: Optional[str]
    success: bool
    data: Optional[T] = None
    error: Optional[BaseException] = None


def categorize_error(error: BaseException) -> ErrorCategory:
    """
    Categorize an exception for retry decisions.

    Typed signals (httpx exceptions, SQLAlchemy errors, AgentError flags) win
    over message matching; message matching covers clients that only surface
    a string.

    Args:
        error: Exception raised by the operation

    Returns:
        ErrorCategory for the error
    """
    if isinstance(error, SQLAlchemyError):
        return ErrorCategory.PERSISTENCE

    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        if status_code == 429:
            return ErrorCategory.RATE_LIMIT
        if 500 <= status_code < 600:
            return ErrorCategory.SERVER_ERROR
        return ErrorCategory.NON_RETRYABLE

    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ErrorCategory.TIMEOUT

    if isinstance(error, (httpx.NetworkError, ConnectionError)):
        return ErrorCategory.CONNECTION

    message = str(error).lower()

    if any(marker in message for marker in RATE_LIMIT_MARKERS):
        return ErrorCategory.RATE_LIMIT
    if any(marker in message for marker in TIMEOUT_MARKERS):
        return ErrorCategory.TIMEOUT
    if any(marker in message for marker in NETWORK_MARKERS):
        return ErrorCategory.CONNECTION
    if any(marker in message for marker in SERVER_ERROR_MARKERS):
        return ErrorCategory.SERVER_ERROR

    if isinstance(error, AgentError) and error.retryable:
        return ErrorCategory.CONNECTION

    return ErrorCategory.NON_RETRYABLE


def is_retryable(error: BaseException) -> bool:
    """Check if an error is worth retrying."""
    return categorize_error(error) in (
        ErrorCategory.RATE_LIMIT,
        ErrorCategory.TIMEOUT,
        ErrorCategory.CONNECTION,
        ErrorCategory.SERVER_ERROR,
    )


def calculate_backoff(attempt: int, policy: RetryPolicy = RetryPolicy()) -> float:
    """
    Calculate backoff delay with exponential growth and jitter.

    Formula: min(initial * multiplier^attempt, max_delay) +/- jitter, floored at 0

    Args:
        attempt: Current attempt number (0-indexed)
        policy: Retry policy configuration

    Returns:
        Delay in seconds before next retry
    """
    delay = policy.initial_delay_seconds * (policy.backoff_multiplier ** attempt)

    # Cap at maximum delay
    delay = min(delay, policy.max_delay_seconds)

    # Add jitter (+/- jitter_factor)
    jitter_range = delay * policy.jitter_factor
    jitter = random.uniform(-jitter_range, jitter_range) if jitter_range else 0.0

    return max(0.0, delay + jitter)


class RetryHandler:
    """
    Runs async operations with bounded retry.

    An operation is attempted at most max_retries + 1 times. No delay is
    taken after the final attempt.
    """

    def __init__(
        self,
        policy: RetryPolicy = RetryPolicy(),
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize retry handler.

        Args:
            policy: Retry policy configuration
            on_retry: Optional callback(attempt, error, delay_seconds) before each retry
            sleep: Awaitable sleep function (injectable for tests)
        """
        self.policy = policy
        self.on_retry = on_retry
        self._sleep = sleep

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        label: Optional[str] = None,
    ) -> T:
        """
        Execute an operation with retry logic.

        Args:
            operation: Zero-argument coroutine function
            label: Operation name used in logs and the wrapped error

        Returns:
            The operation's result

        Raises:
            RetryExhaustedError: If the last attempt fails or the error is not retryable
        """
        total_attempts = self.policy.max_retries + 1

        for attempt in range(total_attempts):
            try:
                return await operation()
            except Exception as e:
                last_attempt = attempt == self.policy.max_retries
                category = categorize_error(e)

                if last_attempt or not is_retryable(e):
                    logger.warning(
                        "retry.exhausted",
                        extra={
                            "label": label,
                            "attempt": attempt + 1,
                            "max_attempts": total_attempts,
                            "error_category": category.value,
                            "error": str(e),
                        },
                    )
                    raise RetryExhaustedError(label, e, attempt + 1) from e

                delay = calculate_backoff(attempt, self.policy)

                if self.on_retry:
                    self.on_retry(attempt + 1, e, delay)

                logger.info(
                    "retry.scheduled",
                    extra={
                        "label": label,
                        "attempt": attempt + 1,
                        "max_attempts": total_attempts,
                        "error_category": category.value,
                        "delay_seconds": round(delay, 3),
                        "error": str(e),
                    },
                )

                await self._sleep(delay)

        # Unreachable: the loop either returns or raises
        raise RuntimeError("retry loop exited without result")

    async def execute_all(
        self,
        operations: Sequence[tuple],
        continue_on_error: bool = False,
        concurrency: int = 1,
    ) -> List[OperationResult]:
        """
        Execute independent operations, each with its own retry budget.

        Operations run in groups of `concurrency`; every group is awaited in
        full before the next starts, so nothing is left in flight on return.

        Args:
            operations: Sequence of (operation, label) pairs
            continue_on_error: Keep going after an operation fails for good
            concurrency: Maximum operations in flight at once

        Returns:
            One OperationResult per attempted operation, in input order
        """
        results: List[OperationResult] = []
        batch_size = max(1, concurrency)

        for start in range(0, len(operations), batch_size):
            batch = operations[start:start + batch_size]
            outcomes = await asyncio.gather(
                *(self.execute(fn, label) for fn, label in batch),
                return_exceptions=True,
            )

            failed = False
            for (_, label), outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    results.append(OperationResult(label=label, success=False, error=outcome))
                    failed = True
                else:
                    results.append(OperationResult(label=label, success=True, data=outcome))

            if failed and not continue_on_error:
                break

        return results
