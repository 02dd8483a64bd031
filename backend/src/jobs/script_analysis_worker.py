"""
Script Analysis Worker.

Background worker that runs pending script analysis jobs:
- Reclaims stale jobs left behind by crashed workers; unclaimed queued jobs
  are only reclaimed after the longer AGENT_JOB_QUEUE_WAIT_MINUTES
- Picks up unclaimed PENDING jobs, oldest first
- Runs each job's pipeline with bounded concurrency
- Fails jobs whose saved context cannot be restored

Run as a cron job or background worker:
    python -m src.jobs.script_analysis_worker

Configuration:
- AGENT_WORKER_BATCH_SIZE: Pending jobs picked up per run (default: 10)
- AGENT_WORKER_MAX_CONCURRENT: Jobs run at the same time (default: 2)
- AGENT_JOB_QUEUE_WAIT_MINUTES: Queue wait before an unclaimed job is reclaimed (default: 1440)
- SCRIPT_ANALYSIS_SERVICE_URL: Extraction service (see HttpScriptAnalysisBackend)

Each job runs in its own database session; a job is claimed before it runs,
so two workers never run the same job.
"""

import os
import sys
import logging
import asyncio
import uuid
from datetime import datetime, timezone
from typing import Dict, List

from sqlalchemy.orm import sessionmaker

# Add the backend directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.agents.constants import (
    QUEUE_WAIT_MINUTES,
    AgentJobStatus,
    describe_status,
    read_positive_int_from_env,
)
from src.agents.errors import (
    AgentError,
    JobAlreadyActiveError,
    JobCancelledError,
    JobReclaimedError,
    StepFailedError,
)
from src.agents.job_manager import JobManager
from src.agents.script_analysis.agent import ScriptAnalysisAgent
from src.agents.script_analysis.backend import HttpScriptAnalysisBackend, ScriptAnalysisBackend
from src.database.session import get_session_factory, session_scope
from src.models.agent_job import utcnow

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Configuration
AGENT_WORKER_BATCH_SIZE = read_positive_int_from_env("AGENT_WORKER_BATCH_SIZE", 10)
AGENT_WORKER_MAX_CONCURRENT = read_positive_int_from_env("AGENT_WORKER_MAX_CONCURRENT", 2)


class ScriptAnalysisWorker:
    """
    Background worker for script analysis jobs.

    One run drains up to batch_size pending jobs and returns run statistics.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        backend: ScriptAnalysisBackend,
        batch_size: int = AGENT_WORKER_BATCH_SIZE,
        max_concurrent: int = AGENT_WORKER_MAX_CONCURRENT,
        queue_wait_minutes: int = QUEUE_WAIT_MINUTES,
    ):
        """
        Initialize worker.

        Args:
            session_factory: Creates one session per job
            backend: Extraction and persistence collaborator shared by all jobs
            batch_size: Pending jobs picked up per run
            max_concurrent: Jobs run at the same time
            queue_wait_minutes: Age after which an unclaimed pending job is reclaimed
        """
        self.session_factory = session_factory
        self.backend = backend
        self.batch_size = batch_size
        self.max_concurrent = max_concurrent
        self.queue_wait_minutes = queue_wait_minutes
        self.run_id = str(uuid.uuid4())
        self.stats = {
            "stale_reclaimed": 0,
            "jobs_found": 0,
            "jobs_completed": 0,
            "jobs_failed": 0,
            "jobs_cancelled": 0,
            "jobs_skipped": 0,
            "errors": 0,
        }

    def _prepare(self) -> List[str]:
        """Reclaim stale jobs, then list pending job ids."""
        with session_scope(self.session_factory) as session:
            jobs = JobManager(session)
            self.stats["stale_reclaimed"] = jobs.cancel_stale_jobs(
                queue_wait_minutes=self.queue_wait_minutes,
            )
            return [job.id for job in jobs.get_pending_jobs(limit=self.batch_size)]

    def _fail_unrunnable(self, jobs: JobManager, job_id: str, error: AgentError) -> None:
        """Fail a pending job whose agent could not be built."""
        jobs.update_job(
            job_id,
            {
                "status": AgentJobStatus.FAILED,
                "error_message": f"Job could not be started: {error.message}",
                "error_details": {"code": error.code.value, "last_successful_step": 0},
                "step_description": describe_status(AgentJobStatus.FAILED),
                "completed_at": utcnow(),
            },
            allowed_statuses=[AgentJobStatus.PENDING],
            operation="fail unrunnable job",
        )

    async def process_job(self, job_id: str) -> None:
        """Run one job to a terminal state and record the outcome."""
        with session_scope(self.session_factory) as session:
            jobs = JobManager(session)
            job = jobs.get_job(job_id)
            if job is None or job.status != AgentJobStatus.PENDING:
                self.stats["jobs_skipped"] += 1
                return

            try:
                agent = ScriptAnalysisAgent.for_job(job, jobs, self.backend)
            except AgentError as e:
                logger.error(
                    "Job context could not be restored",
                    extra={"run_id": self.run_id, "job_id": job_id, "error": e.message},
                )
                self._fail_unrunnable(jobs, job_id, e)
                self.stats["jobs_failed"] += 1
                return

            try:
                result = await agent.run()
                self.stats["jobs_completed"] += 1
                logger.info(
                    "Job completed",
                    extra={
                        "run_id": self.run_id,
                        "job_id": job_id,
                        "scenes_created": result.scenes_created,
                        "warnings": len(result.warnings),
                    },
                )
            except JobAlreadyActiveError:
                # Another worker claimed it first
                self.stats["jobs_skipped"] += 1
            except JobCancelledError:
                self.stats["jobs_cancelled"] += 1
            except JobReclaimedError as e:
                # Failed elsewhere (e.g. reclaimed as stale); the record already says so
                self.stats["jobs_failed"] += 1
                logger.warning(
                    "Job stopped: no longer active",
                    extra={"run_id": self.run_id, "job_id": job_id, "status": e.status},
                )
            except StepFailedError as e:
                self.stats["jobs_failed"] += 1
                logger.warning(
                    "Job failed",
                    extra={"run_id": self.run_id, "job_id": job_id, "step": e.step, "error": e.message},
                )
            except Exception as e:
                # The orchestrator has already persisted the failure
                self.stats["jobs_failed"] += 1
                self.stats["errors"] += 1
                logger.error(
                    "Error running job",
                    extra={"run_id": self.run_id, "job_id": job_id, "error": str(e)},
                    exc_info=True,
                )

    async def run(self) -> Dict:
        """
        Run the worker once.

        Returns run statistics.
        """
        start_time = datetime.now(timezone.utc)
        logger.info("Starting script analysis worker", extra={"run_id": self.run_id})

        try:
            job_ids = self._prepare()
            self.stats["jobs_found"] = len(job_ids)
            logger.info(
                f"Found {len(job_ids)} pending jobs to process",
                extra={"run_id": self.run_id},
            )

            semaphore = asyncio.Semaphore(self.max_concurrent)

            async def bounded(job_id: str) -> None:
                async with semaphore:
                    await self.process_job(job_id)

            await asyncio.gather(*(bounded(job_id) for job_id in job_ids))

        except Exception as e:
            self.stats["errors"] += 1
            logger.error(
                "Script analysis worker failed",
                extra={"run_id": self.run_id, "error": str(e)},
                exc_info=True,
            )

        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        self.stats["duration_seconds"] = duration
        self.stats["run_id"] = self.run_id

        logger.info(
            "Script analysis worker completed",
            extra={"run_id": self.run_id, **self.stats},
        )
        return self.stats


async def main():
    """Main entry point for the script analysis worker."""
    logger.info("Script Analysis Worker starting")

    try:
        async with HttpScriptAnalysisBackend() as backend:
            worker = ScriptAnalysisWorker(get_session_factory(), backend)
            stats = await worker.run()
            logger.info("Script Analysis Worker stats", extra=stats)
    except Exception as e:
        logger.error("Script Analysis Worker failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)

    logger.info("Script Analysis Worker finished")


if __name__ == "__main__":
    asyncio.run(main())
