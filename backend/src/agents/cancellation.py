"""
Cooperative cancellation for running agent jobs.

The job record is the source of truth for cancellation. A CancellationWatcher
polls it in the background and sets a CancellationToken that long-running
steps can check between chunks. The orchestrator itself still only aborts at
step boundaries.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from src.agents.constants import CANCEL_POLL_SECONDS

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-way cancellation flag shared by a job's orchestrator and its steps."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class CancellationWatcher:
    """
    Background task that fans persisted cancellation into a token.

    Usage:
        async with CancellationWatcher(tracker.is_cancelled, token):
            await orchestrator.run()
    """

    def __init__(
        self,
        check: Callable[[], Awaitable[bool]],
        token: CancellationToken,
        poll_seconds: float = CANCEL_POLL_SECONDS,
    ):
        """
        Initialize watcher.

        Args:
            check: Coroutine function returning True once the job is cancelled
            token: Token to set when cancellation is observed
            poll_seconds: Interval between checks
        """
        self.check = check
        self.token = token
        self.poll_seconds = poll_seconds
        self._task: Optional[asyncio.Task] = None

    async def _poll(self) -> None:
        while not self.token.is_cancelled:
            try:
                cancelled = await self.check()
            except Exception as e:
                # Polling failures are retried on the next tick
                logger.warning(
                    "Cancellation check failed",
                    extra={"error": str(e)},
                    exc_info=True,
                )
                cancelled = False

            if cancelled:
                logger.info("Cancellation observed by watcher")
                self.token.cancel()
                return
            await asyncio.sleep(self.poll_seconds)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._poll())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def __aenter__(self) -> "CancellationWatcher":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
