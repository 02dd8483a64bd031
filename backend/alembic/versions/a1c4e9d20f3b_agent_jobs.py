"""agent_jobs and script_chunks

Revision ID: a1c4e9d20f3b
Revises: 
Create Date: 2026-10-18 09:12:40.118201

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from src.agents.constants import AgentJobStatus, AgentJobType


# revision identifiers, used by Alembic.
revision: str = 'a1c4e9d20f3b'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

json_type = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "agent_jobs",
        sa.Column("id", sa.String(64), primary_key=True, comment="Primary key (job_<id>)"),
        sa.Column("project_id", sa.String(255), nullable=False),
        sa.Column("script_id", sa.String(255), nullable=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column(
            "job_type",
            sa.Enum(AgentJobType, name="agentjobtype"),
            nullable=False,
            comment="Job kind: script_analysis, schedule_planning, ...",
        ),
        sa.Column("status", sa.Enum(AgentJobStatus, name="agentjobstatus"), nullable=False),
        sa.Column("current_step", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_steps", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("progress_percent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("step_description", sa.Text(), nullable=True),
        sa.Column("result", json_type, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_details", json_type, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("context", json_type, nullable=True),
    )
    op.create_index("ix_agent_jobs_project_id", "agent_jobs", ["project_id"])
    op.create_index("ix_agent_jobs_script_id", "agent_jobs", ["script_id"])
    op.create_index("ix_agent_jobs_user_id", "agent_jobs", ["user_id"])
    op.create_index("ix_agent_jobs_status", "agent_jobs", ["status"])
    op.create_index("ix_agent_jobs_created_at", "agent_jobs", ["created_at"])
    op.create_index("ix_agent_jobs_script_status", "agent_jobs", ["script_id", "status"])

    op.create_table(
        "script_chunks",
        sa.Column("id", sa.String(128), primary_key=True, comment="<job_id>-chunk-<index>"),
        sa.Column("script_id", sa.String(255), nullable=False),
        sa.Column(
            "job_id",
            sa.String(64),
            sa.ForeignKey("agent_jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("chunk_text", sa.Text(), nullable=False),
        sa.Column("page_start", sa.Integer(), nullable=True),
        sa.Column("page_end", sa.Integer(), nullable=True),
        sa.Column("scene_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result", json_type, nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_script_chunks_script_id", "script_chunks", ["script_id"])
    op.create_index("ix_script_chunks_job_id", "script_chunks", ["job_id"])
    op.create_index(
        "ix_script_chunks_job_index", "script_chunks", ["job_id", "chunk_index"], unique=True
    )


def downgrade() -> None:
    op.drop_table("script_chunks")
    op.drop_table("agent_jobs")
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute("DROP TYPE IF EXISTS agentjobstatus")
        op.execute("DROP TYPE IF EXISTS agentjobtype")
