"""
Database models for agent jobs.

Importing this package registers every table on src.db_base.Base.
"""

from src.models.agent_job import AgentJob, ScriptChunk

__all__ = [
    "AgentJob",
    "ScriptChunk",
]
