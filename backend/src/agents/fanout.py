"""
Chunk fan-out with in-order reduction.

Work for a batch of chunks runs concurrently, each call with its own retry
budget. Results are then applied to the context strictly in chunk-index
order so numbering that depends on earlier chunks stays continuous, no
matter which call finished first. Nothing is left in flight on return.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from src.agents.constants import CHUNK_BATCH_SIZE
from src.agents.errors import JobCancelledError
from src.agents.progress import ProgressTracker
from src.agents.retry import RetryHandler
from src.agents.types import ChunkData

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class FanOutSummary:
    processed: int = 0
    failed: int = 0
    errors: Dict[int, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.processed + self.failed


async def process_chunks_in_order(
    chunks: Sequence[ChunkData],
    worker: Callable[[ChunkData], Awaitable[T]],
    apply: Callable[[ChunkData, T], None],
    tracker: ProgressTracker,
    retry_handler: Optional[RetryHandler] = None,
    batch_size: int = CHUNK_BATCH_SIZE,
    serialize: Optional[Callable[[T], Dict[str, Any]]] = None,
) -> FanOutSummary:
    """
    Run `worker` over chunks in batches and apply results in index order.

    Failed chunks are recorded on the chunk (and its persisted record) and
    counted; their results are never applied.

    Args:
        chunks: Chunks to process
        worker: Coroutine function producing a result for one chunk
        apply: Merges one chunk's result into shared state
        tracker: Progress tracker (also supplies the cancellation token)
        retry_handler: Retry wrapper for each worker call
        batch_size: Maximum concurrent worker calls
        serialize: Optional converter storing each result on its chunk record

    Returns:
        FanOutSummary of processed and failed chunks

    Raises:
        JobCancelledError: If the job is cancelled between batches
    """
    handler = retry_handler or RetryHandler()
    ordered = sorted(chunks, key=lambda c: c.chunk_index)
    total = len(ordered)
    summary = FanOutSummary()
    step_size = max(1, batch_size)

    for start in range(0, total, step_size):
        if tracker.token.is_cancelled:
            raise JobCancelledError(tracker.job_id)

        batch = ordered[start:start + step_size]
        operations = [
            (_bind(worker, chunk), f"chunk {chunk.chunk_index + 1}/{total}")
            for chunk in batch
        ]
        outcomes = await handler.execute_all(
            operations,
            continue_on_error=True,
            concurrency=step_size,
        )

        # execute_all preserves input order, so this loop is the in-order merge
        for chunk, outcome in zip(batch, outcomes):
            if outcome.success:
                apply(chunk, outcome.data)
                chunk.processed = True
                chunk.error = None
                summary.processed += 1
                tracker.jobs.update_chunk(
                    chunk.id,
                    processed=True,
                    result=serialize(outcome.data) if serialize else None,
                )
            else:
                message = str(outcome.error)
                chunk.error = message
                summary.failed += 1
                summary.errors[chunk.chunk_index] = message
                tracker.jobs.update_chunk(chunk.id, error=message)
                logger.warning(
                    "Chunk processing failed",
                    extra={
                        "job_id": tracker.job_id,
                        "chunk_index": chunk.chunk_index,
                        "error": message,
                    },
                )

        await tracker.update_progress(summary.total, total)

    return summary


def _bind(worker: Callable[[ChunkData], Awaitable[T]], chunk: ChunkData) -> Callable[[], Awaitable[T]]:
    async def call() -> T:
        return await worker(chunk)
    return call
