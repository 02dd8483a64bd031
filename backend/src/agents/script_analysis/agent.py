"""
Script analysis agent.

Kicks off and runs the script analysis pipeline for one script:
    parse -> chunk -> extract scenes -> extract elements -> link cast
    -> generate synopses -> estimate time -> create records -> suggest crew

Jobs are enqueued in the pending state (enqueue_script_analysis) and run
by a worker (ScriptAnalysisAgent.run). A failed job can be retried as a
new job that resumes after the last step the failed job completed.
"""

import logging
from typing import List, Optional

from src.agents.cancellation import CancellationToken, CancellationWatcher
from src.agents.chunker import ScriptChunker, TextChunk
from src.agents.constants import (
    SCRIPT_ANALYSIS_STEPS,
    AgentJobStatus,
    AgentJobType,
)
from src.agents.errors import AgentError, AgentErrorCode, JobAlreadyActiveError
from src.agents.job_manager import CreateJobInput, JobManager, new_job_id
from src.agents.orchestrator import AgentOrchestrator, init_context
from src.agents.retry import RetryHandler
from src.agents.script_analysis.backend import ScriptAnalysisBackend
from src.agents.script_analysis.steps import ScriptAnalysisSteps
from src.agents.types import AnalysisContext, JobResult
from src.models.agent_job import AgentJob, ScriptChunk, utcnow

logger = logging.getLogger(__name__)

ACTIVE_JOB_MESSAGE = "An analysis job is already in progress for this script"


def _ensure_no_active_job(job_manager: JobManager, script_id: str) -> None:
    """
    Reclaim stale jobs for the script, then reject if one is still active.

    Raises:
        JobAlreadyActiveError: If the script still has an active job
    """
    reclaimed = job_manager.cancel_stale_jobs(script_id)
    if reclaimed:
        logger.info(
            "Reclaimed stale jobs before kickoff",
            extra={"script_id": script_id, "reclaimed": reclaimed},
        )

    active = job_manager.get_active_job(script_id)
    if active is not None:
        raise JobAlreadyActiveError(ACTIVE_JOB_MESSAGE, existing_job_id=active.id)


def enqueue_script_analysis(
    job_manager: JobManager,
    project_id: str,
    script_id: str,
    user_id: str,
) -> AgentJob:
    """
    Create a pending script analysis job.

    Stale jobs for the script are reclaimed first, so a crashed run never
    blocks a new one for longer than the staleness window.

    Raises:
        JobAlreadyActiveError: If the script still has an active job
    """
    _ensure_no_active_job(job_manager, script_id)

    return job_manager.create_job(CreateJobInput(
        project_id=project_id,
        script_id=script_id,
        user_id=user_id,
        job_type=AgentJobType.SCRIPT_ANALYSIS,
        total_steps=len(SCRIPT_ANALYSIS_STEPS),
    ))


def enqueue_retry(job_manager: JobManager, failed_job_id: str) -> AgentJob:
    """
    Enqueue a new job that resumes a failed one.

    The failed job's saved context is copied onto the new job so the run
    starts after the failed job's last successful step. Without a usable
    context the new job starts from the beginning. The job is created with
    its context and chunks in one commit.

    Raises:
        JobNotFoundError: If the failed job does not exist
        AgentError: VALIDATION_ERROR if the job did not fail
        JobAlreadyActiveError: If the script has an active job
    """
    failed = job_manager.require_job(failed_job_id)
    if failed.status != AgentJobStatus.FAILED:
        raise AgentError(
            f"Job {failed_job_id} has not failed",
            code=AgentErrorCode.VALIDATION_ERROR,
            details={"job_id": failed_job_id, "status": failed.status.value},
        )

    _ensure_no_active_job(job_manager, failed.script_id)

    job_id = new_job_id()
    last_successful = int((failed.error_details or {}).get("last_successful_step") or 0)
    saved_context = None
    chunk_records = []

    if failed.context and 0 < last_successful < len(SCRIPT_ANALYSIS_STEPS):
        context = AnalysisContext.from_dict(failed.context)
        context.job_id = job_id
        context.resume_step = last_successful
        chunk_records = _rebind_chunks(job_manager, context)
        saved_context = context.to_dict()

    job = job_manager.create_job(
        CreateJobInput(
            project_id=failed.project_id,
            script_id=failed.script_id,
            user_id=failed.user_id,
            job_type=AgentJobType.SCRIPT_ANALYSIS,
            total_steps=len(SCRIPT_ANALYSIS_STEPS),
            job_id=job_id,
            context=saved_context,
        ),
        chunks=chunk_records,
    )

    logger.info(
        "Retrying failed job",
        extra={
            "failed_job_id": failed_job_id,
            "job_id": job.id,
            "last_successful_step": last_successful,
        },
    )
    return job


class ScriptAnalysisAgent:
    """
    Runs the script analysis pipeline for one job.

    A job's saved context, if present when the agent is built, is restored
    and the run starts at its resume_step.
    """

    def __init__(
        self,
        job_id: str,
        project_id: str,
        script_id: str,
        user_id: str,
        job_manager: JobManager,
        backend: ScriptAnalysisBackend,
        retry_handler: Optional[RetryHandler] = None,
        chunker: Optional[ScriptChunker] = None,
        context: Optional[AnalysisContext] = None,
    ):
        """
        Initialize agent.

        Args:
            job_id: Job to run
            project_id: Owning project
            script_id: Script to analyze
            user_id: Requesting user
            job_manager: Persistence layer
            backend: Extraction and persistence collaborator
            retry_handler: Retry wrapper for backend calls
            chunker: Chunker for the chunking step
            context: Restored context when resuming
        """
        self.job_id = job_id
        self.project_id = project_id
        self.script_id = script_id
        self.user_id = user_id
        self.jobs = job_manager
        self.steps = ScriptAnalysisSteps(backend, retry_handler=retry_handler, chunker=chunker)
        self.context = context or init_context(job_id, project_id, script_id, user_id)
        self.token = CancellationToken()

    @classmethod
    def start(
        cls,
        job_manager: JobManager,
        backend: ScriptAnalysisBackend,
        project_id: str,
        script_id: str,
        user_id: str,
        **kwargs,
    ) -> "ScriptAnalysisAgent":
        """Enqueue a new job and return an agent bound to it."""
        job = enqueue_script_analysis(job_manager, project_id, script_id, user_id)
        return cls(job.id, project_id, script_id, user_id, job_manager, backend, **kwargs)

    @classmethod
    def for_job(
        cls,
        job: AgentJob,
        job_manager: JobManager,
        backend: ScriptAnalysisBackend,
        **kwargs,
    ) -> "ScriptAnalysisAgent":
        """Agent for an existing pending job (used by the worker)."""
        context = AnalysisContext.from_dict(job.context) if job.context else None
        return cls(
            job.id,
            job.project_id,
            job.script_id,
            job.user_id,
            job_manager,
            backend,
            context=context,
            **kwargs,
        )

    @classmethod
    def retry_failed(
        cls,
        failed_job_id: str,
        job_manager: JobManager,
        backend: ScriptAnalysisBackend,
        **kwargs,
    ) -> "ScriptAnalysisAgent":
        """Enqueue a retry of a failed job and return an agent bound to it."""
        job = enqueue_retry(job_manager, failed_job_id)
        return cls.for_job(job, job_manager, backend, **kwargs)

    def build_orchestrator(self) -> AgentOrchestrator:
        return AgentOrchestrator(
            self.job_id,
            self.context,
            self.steps.pipeline(),
            self.jobs,
            token=self.token,
        )

    async def run(self) -> JobResult:
        """
        Claim the job and run the pipeline to completion, failure or cancellation.

        Raises:
            JobAlreadyActiveError: If another runner already claimed the job
            JobCancelledError: If the job was cancelled
            StepFailedError: If a fatal step failed (already persisted)
        """
        if not self.jobs.claim_job(self.job_id):
            raise JobAlreadyActiveError(
                f"Job {self.job_id} is already running or finished",
                existing_job_id=self.job_id,
            )

        orchestrator = self.build_orchestrator()

        async with CancellationWatcher(orchestrator.tracker.is_cancelled, self.token):
            if self.context.resume_step:
                return await orchestrator.resume_from(self.context.resume_step)
            return await orchestrator.run()


def _rebind_chunks(job_manager: JobManager, context: AnalysisContext) -> List[ScriptChunk]:
    """
    Unsaved copies of a restored context's chunks under the context's (new) job.

    The context's chunk ids are pointed at the copies.
    """
    if not context.chunks:
        return []

    ordered = sorted(context.chunks, key=lambda c: c.chunk_index)
    text_chunks = []
    position = 0
    for chunk in ordered:
        end = position + len(chunk.chunk_text)
        text_chunks.append(TextChunk(
            index=chunk.chunk_index,
            text=chunk.chunk_text,
            start=position,
            end=end,
            page_start=chunk.page_start,
            page_end=chunk.page_end,
            scene_count=chunk.scene_count,
        ))
        position = end

    records = job_manager.build_chunk_records(context.job_id, context.script_id, text_chunks)
    processed_at = utcnow()
    for chunk, record in zip(ordered, records):
        chunk.id = record.id
        if chunk.processed:
            record.processed = True
            record.processed_at = processed_at
    return records
