"""
Agent job and script chunk models.

Defines:
- AgentJob: one run of an agent pipeline over one script
- ScriptChunk: a contiguous slice of the script scoped to one job

CRITICAL: Only ONE active job per script. This is enforced cooperatively via
JobManager.has_active_job + JobManager.cancel_stale_jobs before dispatch.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from src.db_base import Base
from src.agents.constants import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    AgentJobStatus,
    AgentJobType,
)

# Use JSONB for PostgreSQL, JSON for other databases (testing)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AgentJob(Base):
    """
    Tracks one agent pipeline run.

    Attributes:
        id: Primary key (job_<12 chars>)
        project_id: Owning project
        script_id: Script being analyzed
        user_id: User who requested the job
        job_type: Kind of agent job
        status: Current status (pending, a pipeline step, or terminal)
        current_step: 1-based index of the running step (0 while pending)
        total_steps: Number of steps in the pipeline
        progress_percent: 0-100, never decreases while active
        step_description: Human-readable progress text
        result: Aggregate result (completed jobs)
        error_message: Failure message (failed jobs)
        error_details: Structured failure details, incl. last successful step
        context: Serialized AnalysisContext for resumption
    """

    __tablename__ = "agent_jobs"

    id = Column(String(64), primary_key=True, comment="Primary key (job_<id>)")

    project_id = Column(String(255), nullable=False, index=True)
    script_id = Column(String(255), nullable=True, index=True)
    user_id = Column(String(255), nullable=False, index=True)

    job_type = Column(
        Enum(AgentJobType),
        nullable=False,
        comment="Job kind: script_analysis, schedule_planning, ...",
    )
    status = Column(
        Enum(AgentJobStatus),
        default=AgentJobStatus.PENDING,
        nullable=False,
        index=True,
    )

    # Progress tracking
    current_step = Column(Integer, default=0, nullable=False)
    total_steps = Column(Integer, default=1, nullable=False)
    progress_percent = Column(Integer, default=0, nullable=False)
    step_description = Column(Text, nullable=True)

    # Results and errors
    result = Column(JSONType, nullable=True)
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)

    # Timing
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    processing_time_ms = Column(Integer, nullable=True)

    # Cross-chunk context for recovery
    context = Column(JSONType, nullable=True)

    chunks = relationship(
        "ScriptChunk",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ScriptChunk.chunk_index",
    )

    __table_args__ = (
        Index("ix_agent_jobs_script_status", "script_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<AgentJob("
            f"id={self.id}, "
            f"script_id={self.script_id}, "
            f"status={self.status.value if self.status else None}, "
            f"progress={self.progress_percent}"
            f")>"
        )

    @property
    def is_active(self) -> bool:
        """Check if job is pending or running a step."""
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        """Check if job is completed, failed or cancelled."""
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        """Snapshot for status polling."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "script_id": self.script_id,
            "user_id": self.user_id,
            "job_type": self.job_type.value if self.job_type else None,
            "status": self.status.value if self.status else None,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "progress_percent": self.progress_percent,
            "step_description": self.step_description,
            "result": self.result,
            "error_message": self.error_message,
            "error_details": self.error_details,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
            "started_at": as_utc(self.started_at).isoformat() if self.started_at else None,
            "completed_at": as_utc(self.completed_at).isoformat() if self.completed_at else None,
            "processing_time_ms": self.processing_time_ms,
        }


class ScriptChunk(Base):
    """
    A bounded slice of a script assigned to one job.

    Chunks of a job are gap-free and ordered by chunk_index.
    """

    __tablename__ = "script_chunks"

    id = Column(String(128), primary_key=True, comment="<job_id>-chunk-<index>")
    script_id = Column(String(255), nullable=False, index=True)
    job_id = Column(
        String(64),
        ForeignKey("agent_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    chunk_index = Column(Integer, nullable=False)
    chunk_text = Column(Text, nullable=False)
    page_start = Column(Integer, nullable=True)
    page_end = Column(Integer, nullable=True)
    scene_count = Column(Integer, default=0, nullable=False)

    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    result = Column(JSONType, nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    job = relationship("AgentJob", back_populates="chunks")

    __table_args__ = (
        Index("ix_script_chunks_job_index", "job_id", "chunk_index", unique=True),
    )

    def __repr__(self) -> str:
        return (
            f"<ScriptChunk(id={self.id}, job_id={self.job_id}, "
            f"chunk_index={self.chunk_index}, processed={self.processed})>"
        )
