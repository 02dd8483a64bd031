"""
Agent Job Maintenance.

Periodic job that keeps the agent_jobs table healthy:
- Fails active jobs whose worker stopped (stale after AGENT_JOB_STALE_MINUTES)
- Fails queued jobs nobody picked up within AGENT_JOB_QUEUE_WAIT_MINUTES
- Deletes terminal jobs and their chunks after AGENT_JOB_RETENTION_DAYS

Run as a cron job:
    python -m src.jobs.agent_job_maintenance
"""

import os
import sys
import logging
from datetime import datetime, timezone
from typing import Dict

# Add the backend directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.agents.constants import JOB_RETENTION_DAYS, QUEUE_WAIT_MINUTES, STALE_JOB_MINUTES
from src.agents.errors import AgentError
from src.agents.job_manager import JobManager
from src.database.session import get_db_session_sync

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class AgentJobMaintenance:
    """Reclaims stale jobs and enforces job retention."""

    def __init__(
        self,
        db_session,
        stale_minutes: int = STALE_JOB_MINUTES,
        retention_days: int = JOB_RETENTION_DAYS,
        queue_wait_minutes: int = QUEUE_WAIT_MINUTES,
    ):
        """
        Initialize maintenance job.

        Args:
            db_session: Database session
            stale_minutes: Age after which an active job is reclaimed
            retention_days: Age after which terminal jobs are deleted
            queue_wait_minutes: Age after which an unclaimed pending job is reclaimed
        """
        self.queue_wait_minutes = queue_wait_minutes
        self.jobs = JobManager(
            db_session,
            stale_minutes=stale_minutes,
            retention_days=retention_days,
        )
        self.stats = {
            "stale_reclaimed": 0,
            "jobs_deleted": 0,
            "errors": 0,
        }

    def reclaim_stale_jobs(self) -> int:
        try:
            self.stats["stale_reclaimed"] = self.jobs.cancel_stale_jobs(
                queue_wait_minutes=self.queue_wait_minutes,
            )
        except AgentError as e:
            self.stats["errors"] += 1
            logger.error("Stale job reclamation failed", extra={"error": e.message})
        return self.stats["stale_reclaimed"]

    def cleanup_old_jobs(self) -> int:
        try:
            self.stats["jobs_deleted"] = self.jobs.cleanup_old_jobs()
        except AgentError as e:
            self.stats["errors"] += 1
            logger.error("Old job cleanup failed", extra={"error": e.message})
        return self.stats["jobs_deleted"]

    def run(self) -> Dict:
        """
        Run all maintenance operations.

        Returns:
            Statistics dictionary
        """
        start_time = datetime.now(timezone.utc)
        logger.info(
            "Starting agent job maintenance",
            extra={
                "stale_minutes": self.jobs.stale_minutes,
                "retention_days": self.jobs.retention_days,
            },
        )

        self.reclaim_stale_jobs()
        self.cleanup_old_jobs()

        self.stats["duration_seconds"] = (datetime.now(timezone.utc) - start_time).total_seconds()

        logger.info("Agent job maintenance completed", extra=self.stats)
        return self.stats


def main():
    """Main entry point for the maintenance job."""
    logger.info("Agent Job Maintenance starting")

    try:
        for session in get_db_session_sync():
            maintenance = AgentJobMaintenance(session)
            stats = maintenance.run()
            logger.info("Agent Job Maintenance stats", extra=stats)
    except Exception as e:
        logger.error("Agent Job Maintenance failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)

    logger.info("Agent Job Maintenance finished")


if __name__ == "__main__":
    main()
