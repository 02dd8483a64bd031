"""
Pydantic schemas for the agent job API.

Request/response models for:
- Starting an agent job (POST /api/agents/start)
- Polling job status (GET /api/agents/status)
- Cancelling a job (POST /api/agents/cancel)
- Retrying a failed job (POST /api/agents/retry)
- Listing a project's jobs (GET /api/agents/jobs)
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from src.agents.constants import AgentJobStatus, AgentJobType


class StartAgentJobRequest(BaseModel):
    """Request body for starting an agent job."""

    project_id: str = Field(..., min_length=1, description="Owning project")
    script_id: Optional[str] = Field(
        None,
        min_length=1,
        description="Script to analyze (required for script_analysis)",
    )
    user_id: str = Field(..., min_length=1, description="Requesting user")
    job_type: AgentJobType = Field(
        AgentJobType.SCRIPT_ANALYSIS,
        description="Kind of agent job",
        examples=["script_analysis"],
    )

    @model_validator(mode="after")
    def validate_script_id(self):
        if self.job_type == AgentJobType.SCRIPT_ANALYSIS and not self.script_id:
            raise ValueError("script_id is required for script_analysis jobs")
        return self


class StartAgentJobResponse(BaseModel):
    """Response after a job is enqueued."""

    job_id: str
    status: AgentJobStatus
    message: str


class AgentJobStatusResponse(BaseModel):
    """Snapshot of one job for status polling."""

    id: str
    project_id: str
    script_id: Optional[str] = None
    user_id: str
    job_type: AgentJobType
    status: AgentJobStatus
    current_step: int
    total_steps: int
    progress_percent: int = Field(..., ge=0, le=100)
    step_description: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    processing_time_ms: Optional[int] = None
    is_active: bool
    is_terminal: bool


class CancelAgentJobRequest(BaseModel):
    """Request body for cancelling a job."""

    job_id: str = Field(..., min_length=1)


class CancelAgentJobResponse(BaseModel):
    """Response after a job is cancelled."""

    job_id: str
    status: AgentJobStatus
    message: str


class RetryAgentJobRequest(BaseModel):
    """Request body for retrying a failed job."""

    job_id: str = Field(..., min_length=1, description="Failed job to resume")


class AgentJobListResponse(BaseModel):
    """Jobs for one project, newest first."""

    jobs: List[AgentJobStatusResponse]
    total: int
