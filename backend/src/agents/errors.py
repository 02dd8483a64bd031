"""
Exceptions and error classification for agent jobs.

Every error raised by the orchestration engine carries an AgentErrorCode and
a retryable flag so callers can decide how to react without inspecting
messages themselves.
"""

import enum
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError


class AgentErrorCode(str, enum.Enum):
    """Error classification for agent jobs."""
    PARSE_ERROR = "PARSE_ERROR"
    CHUNK_ERROR = "CHUNK_ERROR"
    LLM_ERROR = "LLM_ERROR"
    LLM_RATE_LIMIT = "LLM_RATE_LIMIT"
    LLM_TIMEOUT = "LLM_TIMEOUT"
    JSON_PARSE_ERROR = "JSON_PARSE_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CANCELLED = "CANCELLED"
    JOB_RECLAIMED = "JOB_RECLAIMED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class AgentError(Exception):
    """Base class for agent job errors."""

    def __init__(
        self,
        message: str,
        code: AgentErrorCode = AgentErrorCode.UNKNOWN_ERROR,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class JobCancelledError(AgentError):
    """Raised when the orchestrator observes a cancelled job at a step boundary."""

    def __init__(self, job_id: str):
        super().__init__(
            f"Job {job_id} was cancelled",
            code=AgentErrorCode.CANCELLED,
            details={"job_id": job_id},
        )
        self.job_id = job_id


class JobReclaimedError(AgentError):
    """
    Raised when a running job was finished by someone else, e.g. failed by
    stale-job reclamation, so its run must stop without writing further.
    """

    def __init__(self, job_id: str, status: Optional[str] = None):
        super().__init__(
            f"Job {job_id} is no longer active (status: {status or 'missing'})",
            code=AgentErrorCode.JOB_RECLAIMED,
            details={"job_id": job_id, "status": status},
        )
        self.job_id = job_id
        self.status = status


class JobAlreadyActiveError(AgentError):
    """Raised when a job is requested for a script that already has one running."""

    def __init__(self, message: str, existing_job_id: Optional[str] = None):
        super().__init__(
            message,
            code=AgentErrorCode.VALIDATION_ERROR,
            details={"existing_job_id": existing_job_id},
        )
        self.existing_job_id = existing_job_id


class JobNotFoundError(AgentError):
    """Raised when a job is not found."""

    def __init__(self, job_id: str):
        super().__init__(
            f"Job {job_id} not found",
            code=AgentErrorCode.VALIDATION_ERROR,
            details={"job_id": job_id},
        )
        self.job_id = job_id


class StepFailedError(AgentError):
    """Raised by the orchestrator after a fatal step failure has been persisted."""

    def __init__(self, step: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=AgentErrorCode.UNKNOWN_ERROR, details=details)
        self.step = step


class RetryExhaustedError(AgentError):
    """
    Raised by RetryHandler when an operation fails for the last time.

    The message is prefixed with the operation label; the original exception
    is chained as __cause__.
    """

    def __init__(self, label: Optional[str], error: BaseException, attempts: int):
        prefix = f"[{label}] " if label else ""
        classified = to_agent_error(error)
        super().__init__(
            f"{prefix}{error}",
            code=classified.code,
            retryable=False,
            details={"label": label, "attempts": attempts},
        )
        self.label = label
        self.attempts = attempts
        self.original = error


def to_agent_error(error: BaseException, code: Optional[AgentErrorCode] = None) -> AgentError:
    """
    Classify an arbitrary exception as an AgentError.

    Args:
        error: Exception to classify
        code: Explicit code to use when the message gives no better hint

    Returns:
        AgentError with code and retryable flag set
    """
    if isinstance(error, AgentError):
        return error

    message = str(error)
    lowered = message.lower()
    error_code = code or AgentErrorCode.UNKNOWN_ERROR
    retryable = False

    if "rate limit" in lowered or "429" in lowered:
        error_code = AgentErrorCode.LLM_RATE_LIMIT
        retryable = True
    elif "timeout" in lowered or "timed out" in lowered:
        error_code = AgentErrorCode.LLM_TIMEOUT
        retryable = True
    elif isinstance(error, SQLAlchemyError) or "database" in lowered:
        error_code = AgentErrorCode.DATABASE_ERROR
    elif "json" in lowered or "parse" in lowered:
        error_code = AgentErrorCode.JSON_PARSE_ERROR

    return AgentError(
        message,
        code=error_code,
        retryable=retryable,
        details={"type": type(error).__name__},
    )
