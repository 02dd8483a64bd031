"""
Agent orchestrator.

Drives one job through an ordered list of steps:
- Checks before every step that the job is still active (the only abort
  point): cancelled, or finished elsewhere such as a stale-job reclaim
- Persists the context after every successful step
- Lets best-effort steps fail without failing the job (should_continue)
- Persists fatal failures on the job before re-raising them

Steps are coroutine functions taking (context, tracker) and returning a
StepResult. They report intra-step progress through the tracker only.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from src.agents.cancellation import CancellationToken
from src.agents.constants import PipelineStep
from src.agents.errors import (
    AgentError,
    AgentErrorCode,
    JobCancelledError,
    JobReclaimedError,
    StepFailedError,
)
from src.agents.job_manager import JobManager
from src.agents.progress import ProgressTracker
from src.agents.types import AnalysisContext, JobResult, StepResult

logger = logging.getLogger(__name__)

StepFunction = Callable[[AnalysisContext, ProgressTracker], Awaitable[StepResult]]


@dataclass(frozen=True)
class OrchestratorStep:
    step: PipelineStep
    execute: StepFunction


def init_context(job_id: str, project_id: str, script_id: str, user_id: str) -> AnalysisContext:
    """Empty context for a new job run."""
    return AnalysisContext(
        job_id=job_id,
        project_id=project_id,
        script_id=script_id,
        user_id=user_id,
    )


class AgentOrchestrator:
    """
    Sequential step runner for a single job.

    Two orchestrators must never run the same job id at once; callers
    guarantee this via JobManager.has_active_job, cancel_stale_jobs and
    claim_job.
    """

    def __init__(
        self,
        job_id: str,
        context: AnalysisContext,
        steps: Sequence[OrchestratorStep],
        job_manager: JobManager,
        token: Optional[CancellationToken] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            job_id: Job to run
            context: Shared state passed to every step
            steps: Ordered pipeline
            job_manager: Persistence layer for the job
            token: Cancellation token shared with the steps
        """
        if not steps:
            raise AgentError("Orchestrator needs at least one step", code=AgentErrorCode.VALIDATION_ERROR)

        self.job_id = job_id
        self.context = context
        self.steps = tuple(steps)
        self.tracker = ProgressTracker(
            job_id,
            job_manager,
            steps=[s.step for s in self.steps],
            token=token,
        )

    async def run(self) -> JobResult:
        """Run every step from the beginning."""
        return await self._run_from(0)

    async def resume_from(self, step_index: int) -> JobResult:
        """
        Run the steps from step_index (0-based) onward.

        The context must already hold the output of the skipped steps,
        e.g. restored with AnalysisContext.from_dict. Progress and step
        numbers stay relative to the full pipeline.

        Raises:
            AgentError: VALIDATION_ERROR for an out-of-range index
        """
        if step_index < 0 or step_index >= len(self.steps):
            raise AgentError(
                f"Invalid step index: {step_index}",
                code=AgentErrorCode.VALIDATION_ERROR,
                details={"step_index": step_index, "total_steps": len(self.steps)},
            )
        return await self._run_from(step_index)

    def _failure_details(self, last_successful: int) -> dict:
        # last_successful is the 1-based number of the last step passed, 0 if none
        return {
            "last_successful_step": last_successful,
            "last_successful_step_name": (
                self.steps[last_successful - 1].step.status.value if last_successful > 0 else None
            ),
        }

    async def _check_active(self) -> None:
        if self.tracker.token.is_cancelled:
            logger.info("Job cancelled at step boundary", extra={"job_id": self.job_id})
            raise JobCancelledError(self.job_id)
        await self.tracker.ensure_active()

    async def _run_from(self, start_index: int) -> JobResult:
        await self.tracker.start()

        last_successful = start_index

        try:
            for index in range(start_index, len(self.steps)):
                step = self.steps[index]
                step_name = step.step.status.value

                await self._check_active()
                await self.tracker.transition_to(step.step)

                logger.info(
                    "job.step_started",
                    extra={"job_id": self.job_id, "step": step_name, "step_number": index + 1},
                )

                result = await step.execute(self.context, self.tracker)

                if result.success:
                    last_successful = index + 1
                    await self.tracker.save_context(self.context)
                    logger.info(
                        "job.step_completed",
                        extra={"job_id": self.job_id, "step": step_name, "step_number": index + 1},
                    )
                    continue

                error_message = result.error or f"Step {step_name} failed"
                logger.warning(
                    "job.step_failed",
                    extra={
                        "job_id": self.job_id,
                        "step": step_name,
                        "error": error_message,
                        "should_continue": result.should_continue,
                    },
                )

                if result.should_continue:
                    self.context.warnings.append(f"{step.step.description} did not finish: {error_message}")
                    last_successful = index + 1
                    await self.tracker.save_context(self.context)
                    continue

                details = dict(result.error_details or {})
                details["step"] = step_name
                details.update(self._failure_details(last_successful))

                await self.tracker.fail(error_message, details)
                raise StepFailedError(step_name, error_message, details)

            job_result = self.build_result()
            if not await self.tracker.complete(job_result.to_dict()):
                # Finished elsewhere while the last step ran
                await self.tracker.ensure_active()
                raise JobReclaimedError(self.job_id)
            return job_result

        except (JobCancelledError, JobReclaimedError, StepFailedError):
            raise

        except Exception as e:
            logger.error(
                "Orchestrator aborted",
                extra={"job_id": self.job_id, "error": str(e)},
                exc_info=True,
            )
            details = self._failure_details(last_successful)
            if isinstance(e, AgentError):
                details["code"] = e.code.value
            await self.tracker.fail(str(e), details)
            raise

    def build_result(self) -> JobResult:
        """Aggregate result from the context, with data-quality warnings."""
        context = self.context
        scenes = context.extracted_scenes
        warnings = list(context.warnings)

        if not scenes:
            warnings.append("No scenes were extracted from the script")

        if not context.extracted_elements:
            warnings.append("No production elements were identified")

        missing_synopsis = sum(1 for s in scenes if not (s.synopsis or "").strip())
        if missing_synopsis:
            warnings.append(f"{missing_synopsis} scenes are missing synopses")

        missing_time = sum(1 for s in scenes if not s.estimated_hours or s.estimated_hours <= 0)
        if missing_time:
            warnings.append(f"{missing_time} scenes are missing time estimates")

        # A run without chunk records processed the script as one unit
        if context.chunks:
            chunks_processed = sum(1 for c in context.chunks if c.processed)
            total_chunks = len(context.chunks)
        else:
            chunks_processed = total_chunks = 1

        return JobResult(
            scenes_created=len(context.created_scene_ids),
            elements_created=len(context.created_element_ids),
            cast_created=sum(1 for c in context.linked_cast if c.is_new),
            cast_linked=len(context.linked_cast),
            synopses_generated=sum(1 for s in scenes if s.synopsis),
            time_estimates_generated=sum(1 for s in scenes if s.estimated_hours),
            chunks_processed=chunks_processed,
            total_chunks=total_chunks,
            warnings=warnings,
            scene_ids=list(context.created_scene_ids),
            element_ids=list(context.created_element_ids),
            cast_ids=list(context.created_cast_ids),
        )
