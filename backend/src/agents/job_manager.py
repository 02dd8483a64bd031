"""
Job manager for agent jobs.

Handles:
- Job creation with per-kind default step counts
- Active-job checks (one active job per script)
- Cancellation and stale-job reclamation
- Retention cleanup of terminal jobs
- Chunk persistence

All writes are single-row (or single-statement) updates committed
immediately so status pollers in other sessions see them. Updates that
change status are guarded on the current status so a terminal job is never
resurrected.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, case, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.agents.chunker import TextChunk
from src.agents.constants import (
    ACTIVE_STATUSES,
    DEFAULT_TOTAL_STEPS,
    JOB_RETENTION_DAYS,
    STALE_JOB_MINUTES,
    TERMINAL_STATUSES,
    AgentJobStatus,
    AgentJobType,
    describe_status,
)
from src.agents.errors import AgentError, AgentErrorCode, JobNotFoundError
from src.agents.sanitize import sanitize_for_storage
from src.models.agent_job import AgentJob, ScriptChunk, as_utc, utcnow

logger = logging.getLogger(__name__)

STALE_JOB_MESSAGE = (
    "Job was abandoned: no completion recorded within {minutes} minutes. "
    "The worker running it likely stopped. Start a new analysis to retry."
)
QUEUED_JOB_MESSAGE = (
    "Job was never picked up: it waited in the queue for more than {minutes} minutes. "
    "Start a new analysis to retry."
)
FUTURE_JOB_MESSAGE = "Job has a creation time in the future (clock skew); reclaimed as stale."


@dataclass
class CreateJobInput:
    project_id: str
    script_id: Optional[str]
    user_id: str
    job_type: AgentJobType = AgentJobType.SCRIPT_ANALYSIS
    total_steps: Optional[int] = None
    job_id: Optional[str] = None
    context: Optional[Dict[str, Any]] = None


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex[:12]}"


def make_chunk_id(job_id: str, index: int) -> str:
    return f"{job_id}-chunk-{index}"


class JobManager:
    """
    Persistence and lifecycle queries for agent jobs and their chunks.
    """

    def __init__(
        self,
        db_session: Session,
        stale_minutes: int = STALE_JOB_MINUTES,
        retention_days: int = JOB_RETENTION_DAYS,
    ):
        """
        Initialize job manager.

        Args:
            db_session: Database session
            stale_minutes: Age after which an active job counts as abandoned
            retention_days: Age after which terminal jobs are deleted
        """
        self.db = db_session
        self.stale_minutes = stale_minutes
        self.retention_days = retention_days

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Agent job persistence failed",
                extra={"operation": operation, "error": str(e)},
                exc_info=True,
            )
            raise AgentError(
                f"Failed to {operation}: {e}",
                code=AgentErrorCode.DATABASE_ERROR,
            ) from e

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(
        self,
        job_input: CreateJobInput,
        chunks: Iterable[ScriptChunk] = (),
    ) -> AgentJob:
        """
        Insert a job in the pending state.

        The job, its initial context and any chunk records (built with
        build_chunk_records for job_input.job_id) are written in one commit,
        so a worker never sees the job without them.

        Returns:
            The created AgentJob
        """
        total_steps = job_input.total_steps or DEFAULT_TOTAL_STEPS.get(job_input.job_type, 1)

        job = AgentJob(
            id=job_input.job_id or new_job_id(),
            project_id=job_input.project_id,
            script_id=job_input.script_id,
            user_id=job_input.user_id,
            job_type=job_input.job_type,
            status=AgentJobStatus.PENDING,
            current_step=0,
            total_steps=total_steps,
            progress_percent=0,
            step_description=describe_status(AgentJobStatus.PENDING),
            created_at=utcnow(),
            context=sanitize_for_storage(job_input.context) if job_input.context else None,
        )
        job.chunks.extend(chunks)
        self.db.add(job)
        self._commit("create agent job")

        logger.info(
            "job.created",
            extra={
                "job_id": job.id,
                "project_id": job.project_id,
                "script_id": job.script_id,
                "job_type": job.job_type.value,
                "total_steps": total_steps,
            },
        )
        return job

    def get_job(self, job_id: str) -> Optional[AgentJob]:
        """Get a job by ID, reading the latest persisted state."""
        job = self.db.get(AgentJob, job_id, populate_existing=True)
        return job

    def require_job(self, job_id: str) -> AgentJob:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_jobs_for_project(self, project_id: str) -> List[AgentJob]:
        """Jobs for a project, newest first."""
        return (
            self.db.query(AgentJob)
            .filter(AgentJob.project_id == project_id)
            .order_by(AgentJob.created_at.desc())
            .all()
        )

    def get_latest_job_for_script(self, script_id: str) -> Optional[AgentJob]:
        return (
            self.db.query(AgentJob)
            .filter(AgentJob.script_id == script_id)
            .order_by(AgentJob.created_at.desc())
            .first()
        )

    def get_active_job(self, script_id: str) -> Optional[AgentJob]:
        """Get a non-terminal job for a script, if any."""
        return (
            self.db.query(AgentJob)
            .filter(
                AgentJob.script_id == script_id,
                AgentJob.status.in_(list(ACTIVE_STATUSES)),
            )
            .order_by(AgentJob.created_at.desc())
            .first()
        )

    def has_active_job(self, script_id: str) -> bool:
        """True if any non-terminal job exists for the script."""
        return self.get_active_job(script_id) is not None

    def get_pending_jobs(self, limit: int = 10) -> List[AgentJob]:
        """Unclaimed pending jobs across all scripts, oldest first."""
        return (
            self.db.query(AgentJob)
            .filter(
                AgentJob.status == AgentJobStatus.PENDING,
                AgentJob.started_at.is_(None),
            )
            .order_by(AgentJob.created_at.asc())
            .limit(limit)
            .all()
        )

    def update_job(
        self,
        job_id: str,
        values: Dict[str, Any],
        allowed_statuses: Iterable[AgentJobStatus] = ACTIVE_STATUSES,
        operation: str = "update agent job",
    ) -> bool:
        """
        Guarded single-row update.

        Only applies while the job's current status is one of
        allowed_statuses. JSON payloads are sanitized before writing.
        A progress_percent value never lowers the stored percent.

        Returns:
            True if a row was updated
        """
        payload = dict(values)
        for key in ("result", "error_details", "context"):
            if payload.get(key) is not None:
                payload[key] = sanitize_for_storage(payload[key])
        if payload.get("error_message") is not None:
            payload["error_message"] = sanitize_for_storage(payload["error_message"])

        percent = payload.get("progress_percent")
        if percent is not None:
            payload["progress_percent"] = case(
                (AgentJob.progress_percent < percent, percent),
                else_=AgentJob.progress_percent,
            )

        updated = (
            self.db.query(AgentJob)
            .filter(
                AgentJob.id == job_id,
                AgentJob.status.in_(list(allowed_statuses)),
            )
            .update(payload, synchronize_session="fetch")
        )
        self._commit(operation)
        return updated > 0

    def claim_job(self, job_id: str) -> bool:
        """
        Claim a pending job for execution by stamping started_at.

        Returns:
            True if this caller won the claim
        """
        updated = (
            self.db.query(AgentJob)
            .filter(
                AgentJob.id == job_id,
                AgentJob.status == AgentJobStatus.PENDING,
                AgentJob.started_at.is_(None),
            )
            .update({"started_at": utcnow()}, synchronize_session="fetch")
        )
        self._commit("claim agent job")
        return updated > 0

    def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a job.

        Only non-terminal jobs change. The orchestrator notices at its next
        step boundary.

        Returns:
            True if the job was cancelled by this call
        """
        cancelled = self.update_job(
            job_id,
            {
                "status": AgentJobStatus.CANCELLED,
                "step_description": describe_status(AgentJobStatus.CANCELLED),
                "completed_at": utcnow(),
            },
            operation="cancel agent job",
        )

        if cancelled:
            logger.info("job.cancelled", extra={"job_id": job_id})
        return cancelled

    def delete_job(self, job_id: str) -> None:
        """Delete a job and its chunks."""
        self.db.query(ScriptChunk).filter(ScriptChunk.job_id == job_id).delete(
            synchronize_session=False
        )
        self.db.query(AgentJob).filter(AgentJob.id == job_id).delete(
            synchronize_session=False
        )
        self._commit("delete agent job")

    def save_context(self, job_id: str, context: Dict[str, Any]) -> None:
        """Persist serialized context for recovery."""
        self.update_job(
            job_id,
            {"context": context},
            allowed_statuses=list(AgentJobStatus),
            operation="save job context",
        )

    # ------------------------------------------------------------------
    # Lifecycle maintenance
    # ------------------------------------------------------------------

    def cancel_stale_jobs(
        self,
        script_id: Optional[str] = None,
        queue_wait_minutes: Optional[int] = None,
    ) -> int:
        """
        Fail active jobs whose worker has evidently gone away.

        A job is stale if it started more than stale_minutes ago, if it was
        never claimed and was created longer ago than the queue wait, or if
        its creation time lies in the future. Limited to one script when
        script_id is given.

        Args:
            script_id: Only reclaim this script's jobs
            queue_wait_minutes: Window for unclaimed jobs; defaults to
                stale_minutes. Queue consumers pass a longer window so a
                backlog is not failed before it runs.

        Returns:
            Number of jobs reclaimed
        """
        now = utcnow()
        cutoff = now - timedelta(minutes=self.stale_minutes)
        wait_minutes = queue_wait_minutes or self.stale_minutes
        queue_cutoff = now - timedelta(minutes=wait_minutes)

        query = self.db.query(AgentJob).filter(
            AgentJob.status.in_(list(ACTIVE_STATUSES)),
            or_(
                and_(AgentJob.started_at.isnot(None), AgentJob.started_at < cutoff),
                and_(AgentJob.started_at.is_(None), AgentJob.created_at < queue_cutoff),
                AgentJob.created_at > now,
            ),
        )
        if script_id is not None:
            query = query.filter(AgentJob.script_id == script_id)

        reclaimed = 0
        for job in query.all():
            created_at = as_utc(job.created_at)
            in_future = created_at is not None and created_at > now
            if in_future:
                message = FUTURE_JOB_MESSAGE
            elif job.started_at is None:
                message = QUEUED_JOB_MESSAGE.format(minutes=wait_minutes)
            else:
                message = STALE_JOB_MESSAGE.format(minutes=self.stale_minutes)
            previous_status = job.status

            started_at = as_utc(job.started_at)
            processing_time_ms = (
                int((now - started_at).total_seconds() * 1000) if started_at else None
            )

            if self.update_job(
                job.id,
                {
                    "status": AgentJobStatus.FAILED,
                    "error_message": message,
                    "error_details": {
                        "reason": "stale",
                        "previous_status": previous_status.value,
                        "stale_minutes": self.stale_minutes,
                        "clock_skew": in_future,
                        "unclaimed": started_at is None,
                    },
                    "step_description": describe_status(AgentJobStatus.FAILED),
                    "completed_at": now,
                    "processing_time_ms": processing_time_ms,
                },
                operation="reclaim stale job",
            ):
                reclaimed += 1
                logger.warning(
                    "job.stale_reclaimed",
                    extra={
                        "job_id": job.id,
                        "script_id": job.script_id,
                        "previous_status": previous_status.value,
                        "clock_skew": in_future,
                    },
                )

        return reclaimed

    def cleanup_old_jobs(self) -> int:
        """
        Delete terminal jobs that finished more than retention_days ago.

        Chunks of deleted jobs are removed first.

        Returns:
            Number of jobs deleted
        """
        cutoff = utcnow() - timedelta(days=self.retention_days)

        job_ids = [
            row.id for row in (
                self.db.query(AgentJob.id)
                .filter(
                    AgentJob.status.in_(list(TERMINAL_STATUSES)),
                    or_(
                        AgentJob.completed_at < cutoff,
                        and_(AgentJob.completed_at.is_(None), AgentJob.created_at < cutoff),
                    ),
                )
                .all()
            )
        ]
        if not job_ids:
            return 0

        self.db.query(ScriptChunk).filter(ScriptChunk.job_id.in_(job_ids)).delete(
            synchronize_session=False
        )
        deleted = self.db.query(AgentJob).filter(AgentJob.id.in_(job_ids)).delete(
            synchronize_session=False
        )
        self._commit("clean up old agent jobs")

        logger.info(
            "Deleted old agent jobs",
            extra={"deleted": deleted, "retention_days": self.retention_days},
        )
        return deleted

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def build_chunk_records(
        self,
        job_id: str,
        script_id: str,
        chunks: Iterable[TextChunk],
    ) -> List[ScriptChunk]:
        """Unsaved, unprocessed chunk records for a job."""
        return [
            ScriptChunk(
                id=make_chunk_id(job_id, chunk.index),
                script_id=script_id,
                job_id=job_id,
                chunk_index=chunk.index,
                chunk_text=sanitize_for_storage(chunk.text),
                page_start=chunk.page_start,
                page_end=chunk.page_end,
                scene_count=chunk.scene_count,
                processed=False,
            )
            for chunk in chunks
        ]

    def save_chunks(self, job_id: str, script_id: str, chunks: Iterable[TextChunk]) -> List[ScriptChunk]:
        """Persist chunks for a job."""
        records = self.build_chunk_records(job_id, script_id, chunks)
        self.db.add_all(records)
        self._commit("save script chunks")
        return records

    def get_chunks(self, job_id: str) -> List[ScriptChunk]:
        return (
            self.db.query(ScriptChunk)
            .filter(ScriptChunk.job_id == job_id)
            .order_by(ScriptChunk.chunk_index.asc())
            .all()
        )

    def update_chunk(
        self,
        chunk_id: str,
        processed: Optional[bool] = None,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        """Record a chunk's processing outcome."""
        values: Dict[str, Any] = {}
        if processed is not None:
            values["processed"] = processed
            if processed:
                values["processed_at"] = utcnow()
        if result is not None:
            values["result"] = sanitize_for_storage(result)
        if error is not None:
            values["error"] = sanitize_for_storage(error)
        if not values:
            return

        self.db.query(ScriptChunk).filter(ScriptChunk.id == chunk_id).update(
            values, synchronize_session="fetch"
        )
        self._commit("update script chunk")
