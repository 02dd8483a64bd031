"""
Progress tracker for agent jobs.

Persists status transitions and progress for one job so clients can poll
(or be pushed) real-time progress.

Progress math:
- Entering step i reports sum(weights of steps before i) / total_weight * 100
- Intra-step progress blends completed/total into the step's own weight,
  capped at 99 (100 is reserved for completion)
- Reported progress never decreases while the job is active
"""

import logging
from typing import Any, Dict, Optional, Sequence

from src.agents.constants import (
    SCRIPT_ANALYSIS_STEPS,
    TERMINAL_STATUSES,
    AgentJobStatus,
    PipelineStep,
    describe_status,
)
from src.agents.cancellation import CancellationToken
from src.agents.errors import AgentError, AgentErrorCode, JobCancelledError, JobReclaimedError
from src.agents.job_manager import JobManager
from src.agents.types import AnalysisContext
from src.models.agent_job import AgentJob, as_utc, utcnow

logger = logging.getLogger(__name__)

# Highest percent reportable before complete()
MAX_ACTIVE_PERCENT = 99


class ProgressTracker:
    """
    Progress reporting bound to one job and its step sequence.

    Steps must report all intra-step progress through this tracker; they
    never write job records directly.
    """

    def __init__(
        self,
        job_id: str,
        job_manager: JobManager,
        steps: Sequence[PipelineStep] = SCRIPT_ANALYSIS_STEPS,
        token: Optional[CancellationToken] = None,
    ):
        """
        Initialize progress tracker.

        Args:
            job_id: Job being tracked
            job_manager: Persistence layer for the job
            steps: Full ordered step sequence of the pipeline
            token: Cancellation token steps can check between work items

        Raises:
            AgentError: VALIDATION_ERROR if the sequence is empty or weightless
        """
        if not steps:
            raise AgentError("A pipeline needs at least one step", code=AgentErrorCode.VALIDATION_ERROR)

        self.job_id = job_id
        self.jobs = job_manager
        self.steps = tuple(steps)
        self.total_weight = sum(step.weight for step in self.steps)

        if self.total_weight <= 0:
            raise AgentError("Pipeline steps have no progress weight", code=AgentErrorCode.VALIDATION_ERROR)

        self.token = token or CancellationToken()
        self.current_step: Optional[PipelineStep] = None
        self.last_percent = 0

    # ------------------------------------------------------------------
    # Progress math
    # ------------------------------------------------------------------

    def step_index(self, step: PipelineStep) -> int:
        try:
            return self.steps.index(step)
        except ValueError:
            raise AgentError(
                f"Step {step.name} is not part of this pipeline",
                code=AgentErrorCode.VALIDATION_ERROR,
                details={"step": step.name},
            )

    def calculate_progress(self, step: PipelineStep, include_current: bool = False) -> int:
        """Cumulative percent for entering (or finishing) a step."""
        index = self.step_index(step)
        completed_weight = sum(s.weight for s in self.steps[:index])
        if include_current:
            completed_weight += step.weight
        return round(completed_weight / self.total_weight * 100)

    def _monotonic(self, percent: int) -> int:
        percent = max(0, min(MAX_ACTIVE_PERCENT, int(percent)))
        self.last_percent = max(self.last_percent, percent)
        return self.last_percent

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def get_job(self) -> Optional[AgentJob]:
        return self.jobs.get_job(self.job_id)

    async def start(self) -> None:
        """Stamp started_at (if not already claimed) and load persisted progress."""
        job = self.jobs.get_job(self.job_id)
        if job is None:
            raise AgentError(
                f"Job {self.job_id} not found",
                code=AgentErrorCode.VALIDATION_ERROR,
                details={"job_id": self.job_id},
            )

        self.last_percent = job.progress_percent or 0
        if job.started_at is None:
            self.jobs.update_job(self.job_id, {"started_at": utcnow()}, operation="start agent job")

        logger.info("job.started", extra={"job_id": self.job_id, "script_id": job.script_id})

    async def transition_to(self, step: PipelineStep) -> int:
        """
        Enter a pipeline step.

        Persists status, 1-based step index, total steps, cumulative percent
        and the step description in one update.

        Returns:
            Reported progress percent
        """
        index = self.step_index(step)
        percent = self._monotonic(self.calculate_progress(step))
        self.current_step = step

        self.jobs.update_job(
            self.job_id,
            {
                "status": step.status,
                "current_step": index + 1,
                "total_steps": len(self.steps),
                "progress_percent": percent,
                "step_description": step.description,
            },
            operation="record step transition",
        )
        return percent

    async def update_progress(
        self,
        completed: int,
        total: int,
        note: Optional[str] = None,
    ) -> int:
        """
        Report progress within the current step.

        Args:
            completed: Items finished so far
            total: Items in this step
            note: Optional text shown instead of "completed/total"

        Returns:
            Reported progress percent
        """
        step = self.current_step
        if step is None:
            return self.last_percent

        fraction = completed / total if total > 0 else 0.0
        fraction = max(0.0, min(1.0, fraction))

        base = self.calculate_progress(step)
        raw = round(base + (step.weight * fraction / self.total_weight) * 100)
        percent = self._monotonic(raw)

        detail = note if note else f"{completed}/{total}"
        self.jobs.update_job(
            self.job_id,
            {
                "progress_percent": percent,
                "step_description": f"{step.description} ({detail})",
            },
            operation="record step progress",
        )
        return percent

    def _processing_time_ms(self) -> Optional[int]:
        job = self.jobs.get_job(self.job_id)
        started_at = as_utc(job.started_at) if job else None
        if started_at is None:
            return None
        return max(0, int((utcnow() - started_at).total_seconds() * 1000))

    async def complete(self, result: Dict[str, Any]) -> bool:
        """
        Mark the job completed with its aggregate result.

        Returns:
            True if the job was still active and is now completed
        """
        processing_time_ms = self._processing_time_ms()
        completed = self.jobs.update_job(
            self.job_id,
            {
                "status": AgentJobStatus.COMPLETED,
                "progress_percent": 100,
                "step_description": describe_status(AgentJobStatus.COMPLETED),
                "result": result,
                "completed_at": utcnow(),
                "processing_time_ms": processing_time_ms,
            },
            operation="complete agent job",
        )
        if completed:
            self.last_percent = 100
            logger.info(
                "job.completed",
                extra={"job_id": self.job_id, "processing_time_ms": processing_time_ms},
            )
        return completed

    async def fail(self, message: str, details: Optional[Dict[str, Any]] = None) -> bool:
        """
        Mark the job failed.

        A job that is already terminal (e.g. cancelled) is left untouched.

        Returns:
            True if the job was still active and is now failed
        """
        processing_time_ms = self._processing_time_ms()
        failed = self.jobs.update_job(
            self.job_id,
            {
                "status": AgentJobStatus.FAILED,
                "error_message": message,
                "error_details": details,
                "step_description": describe_status(AgentJobStatus.FAILED),
                "completed_at": utcnow(),
                "processing_time_ms": processing_time_ms,
            },
            operation="fail agent job",
        )
        if failed:
            logger.error(
                "job.failed",
                extra={"job_id": self.job_id, "error_message": message, "error_details": details},
            )
        return failed

    async def cancel(self) -> bool:
        return self.jobs.cancel_job(self.job_id)

    async def is_cancelled(self) -> bool:
        """Re-read the persisted status, tripping the token if cancelled."""
        job = self.jobs.get_job(self.job_id)
        cancelled = job is not None and job.status == AgentJobStatus.CANCELLED
        if cancelled:
            self.token.cancel()
        return cancelled

    async def save_context(self, context: AnalysisContext) -> None:
        self.jobs.save_context(self.job_id, context.to_dict())

    async def ensure_active(self) -> None:
        """
        Re-read the persisted status and stop the run if the job is no longer active.

        Raises:
            JobCancelledError: If the job was cancelled (the token is tripped too)
            JobReclaimedError: If the job was finished elsewhere, e.g. failed
                by stale-job reclamation, or no longer exists
        """
        job = self.jobs.get_job(self.job_id)
        status = job.status if job is not None else None

        if status == AgentJobStatus.CANCELLED:
            self.token.cancel()
            logger.info("Job cancelled at step boundary", extra={"job_id": self.job_id})
            raise JobCancelledError(self.job_id)

        if status is None or status in TERMINAL_STATUSES:
            logger.warning(
                "job.reclaimed",
                extra={"job_id": self.job_id, "status": status.value if status else None},
            )
            raise JobReclaimedError(self.job_id, status.value if status else None)
