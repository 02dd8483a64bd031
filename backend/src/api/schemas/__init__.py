"""
API schemas package.

Contains Pydantic models for request/response validation.
"""

from src.api.schemas.agents import (
    AgentJobListResponse,
    AgentJobStatusResponse,
    CancelAgentJobRequest,
    CancelAgentJobResponse,
    RetryAgentJobRequest,
    StartAgentJobRequest,
    StartAgentJobResponse,
)

__all__ = [
    "AgentJobListResponse",
    "AgentJobStatusResponse",
    "CancelAgentJobRequest",
    "CancelAgentJobResponse",
    "RetryAgentJobRequest",
    "StartAgentJobRequest",
    "StartAgentJobResponse",
]
