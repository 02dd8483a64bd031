"""
Agent job API.

Starts, polls, cancels and retries agent jobs. Jobs are only enqueued here;
the script analysis worker (src.jobs.script_analysis_worker) runs them.

Endpoints:
- POST /api/agents/start: enqueue a job (409 if the script has one running)
- GET /api/agents/status: latest state of a job, by job or by script
- POST /api/agents/cancel: cancel a running job
- POST /api/agents/retry: resume a failed job as a new job
- GET /api/agents/jobs: a project's jobs, newest first
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from src.agents.constants import AgentJobStatus, AgentJobType
from src.agents.errors import (
    AgentError,
    AgentErrorCode,
    JobAlreadyActiveError,
    JobNotFoundError,
)
from src.agents.job_manager import JobManager
from src.agents.script_analysis.agent import enqueue_retry, enqueue_script_analysis
from src.api.schemas.agents import (
    AgentJobListResponse,
    AgentJobStatusResponse,
    CancelAgentJobRequest,
    CancelAgentJobResponse,
    RetryAgentJobRequest,
    StartAgentJobRequest,
    StartAgentJobResponse,
)
from src.database.session import get_db_session
from src.models.agent_job import AgentJob

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/agents",
    tags=["agents"],
)


def _status_response(job: AgentJob) -> AgentJobStatusResponse:
    return AgentJobStatusResponse(
        **job.to_dict(),
        is_active=job.is_active,
        is_terminal=job.is_terminal,
    )


def _conflict(error: JobAlreadyActiveError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            "message": error.message,
            "existing_job_id": error.existing_job_id,
        },
    )


@router.post(
    "/start",
    response_model=StartAgentJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start an agent job",
    responses={
        409: {"description": "An analysis job is already in progress for this script"},
        501: {"description": "Job type not implemented"},
    },
)
async def start_agent_job(
    request: StartAgentJobRequest,
    db: Session = Depends(get_db_session),
):
    """Enqueue a job; poll /status with the returned job_id."""
    if request.job_type != AgentJobType.SCRIPT_ANALYSIS:
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail=f"Job type '{request.job_type.value}' is not implemented",
        )

    jobs = JobManager(db)
    try:
        job = enqueue_script_analysis(
            jobs,
            project_id=request.project_id,
            script_id=request.script_id,
            user_id=request.user_id,
        )
    except JobAlreadyActiveError as e:
        raise _conflict(e)

    logger.info(
        "Agent job enqueued",
        extra={
            "job_id": job.id,
            "job_type": job.job_type.value,
            "script_id": job.script_id,
            "user_id": job.user_id,
        },
    )

    return StartAgentJobResponse(
        job_id=job.id,
        status=job.status,
        message="Script analysis started",
    )


@router.get(
    "/status",
    response_model=AgentJobStatusResponse,
    summary="Get agent job status",
    responses={
        400: {"description": "Neither job_id nor script_id given"},
        404: {"description": "Job not found"},
    },
)
async def get_agent_job_status(
    job_id: Optional[str] = Query(None, description="Job to look up"),
    script_id: Optional[str] = Query(None, description="Latest job for this script"),
    db: Session = Depends(get_db_session),
):
    """Look up by job_id, or the latest job for script_id."""
    if not job_id and not script_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="job_id or script_id is required",
        )

    jobs = JobManager(db)
    job = jobs.get_job(job_id) if job_id else jobs.get_latest_job_for_script(script_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )

    return _status_response(job)


@router.post(
    "/cancel",
    response_model=CancelAgentJobResponse,
    summary="Cancel an agent job",
    responses={
        400: {"description": "Job already finished"},
        404: {"description": "Job not found"},
    },
)
async def cancel_agent_job(
    request: CancelAgentJobRequest,
    db: Session = Depends(get_db_session),
):
    """Cancel a running job. The worker stops at its next step boundary."""
    jobs = JobManager(db)
    job = jobs.get_job(request.job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )

    # cancel_job is guarded, so a job finishing concurrently is not overwritten
    if job.is_terminal or not jobs.cancel_job(job.id):
        current = jobs.require_job(job.id)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Job is already {current.status.value}",
        )

    return CancelAgentJobResponse(
        job_id=job.id,
        status=AgentJobStatus.CANCELLED,
        message="Job cancelled",
    )


@router.post(
    "/retry",
    response_model=StartAgentJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Retry a failed agent job",
    responses={
        400: {"description": "Job has not failed"},
        404: {"description": "Job not found"},
        409: {"description": "An analysis job is already in progress for this script"},
    },
)
async def retry_agent_job(
    request: RetryAgentJobRequest,
    db: Session = Depends(get_db_session),
):
    """Enqueue a new job that resumes after the failed job's last successful step."""
    jobs = JobManager(db)
    try:
        job = enqueue_retry(jobs, request.job_id)
    except JobNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    except JobAlreadyActiveError as e:
        raise _conflict(e)
    except AgentError as e:
        if e.code != AgentErrorCode.VALIDATION_ERROR:
            raise
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.message,
        )

    return StartAgentJobResponse(
        job_id=job.id,
        status=job.status,
        message="Script analysis retry started",
    )


@router.get(
    "/jobs",
    response_model=AgentJobListResponse,
    summary="List a project's agent jobs",
)
async def list_agent_jobs(
    project_id: str = Query(..., min_length=1, description="Owning project"),
    db: Session = Depends(get_db_session),
):
    """All jobs for a project, newest first."""
    results = JobManager(db).get_jobs_for_project(project_id)
    return AgentJobListResponse(
        jobs=[_status_response(job) for job in results],
        total=len(results),
    )
