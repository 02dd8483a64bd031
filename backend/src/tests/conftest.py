"""
Root test configuration and fixtures.

Provides database fixtures that can be used by all tests, plus factories
for agent jobs.
"""

import os
from datetime import timedelta
from typing import Callable, Generator

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")


def _get_test_database_url() -> str:
    """Get database URL for tests."""
    database_url = os.getenv("DATABASE_URL")

    if database_url:
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    # Default to SQLite for unit tests if no PostgreSQL available
    return "sqlite:///:memory:"


def _is_postgres() -> bool:
    """Check if using PostgreSQL."""
    return _get_test_database_url().startswith("postgresql")


@pytest.fixture(scope="session")
def db_engine():
    """
    Create database engine for tests.

    Uses PostgreSQL if DATABASE_URL is set, otherwise SQLite in-memory.
    """
    database_url = _get_test_database_url()

    if _is_postgres():
        try:
            engine = create_engine(database_url, pool_pre_ping=True)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            pytest.skip(
                f"PostgreSQL not available. Set DATABASE_URL or use SQLite. Error: {e}"
            )
    else:
        # SQLite in-memory for fast unit tests
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    from src.db_base import Base
    import src.models  # noqa: F401 - registers agent_jobs and script_chunks

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create database session with table cleanup for test isolation.

    JobManager commits after every write, so rows are deleted after each
    test instead of rolling back a wrapping transaction.
    """
    from src.db_base import Base

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()

    yield session

    session.close()
    with db_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def session_factory(db_session) -> Callable[[], Session]:
    """Factory handing out the test session (for code that opens its own sessions)."""
    return lambda: db_session


@pytest.fixture
def job_manager(db_session):
    from src.agents.job_manager import JobManager

    return JobManager(db_session)


@pytest.fixture
def make_job(job_manager, db_session):
    """
    Factory fixture that creates an agent job.

    Usage:
        job = make_job(status=AgentJobStatus.EXTRACTING_SCENES, started_minutes_ago=15)
    """
    from src.agents.constants import AgentJobStatus
    from src.agents.job_manager import CreateJobInput
    from src.models.agent_job import utcnow

    def _make(
        script_id: str = "script-1",
        project_id: str = "project-1",
        user_id: str = "user-1",
        status: AgentJobStatus = AgentJobStatus.PENDING,
        started_minutes_ago=None,
        created_minutes_ago=None,
        completed_days_ago=None,
        **kwargs,
    ):
        job = job_manager.create_job(CreateJobInput(
            project_id=project_id,
            script_id=script_id,
            user_id=user_id,
            **kwargs,
        ))

        now = utcnow()
        values = {}
        if status != AgentJobStatus.PENDING:
            values["status"] = status
        if started_minutes_ago is not None:
            values["started_at"] = now - timedelta(minutes=started_minutes_ago)
        if created_minutes_ago is not None:
            values["created_at"] = now - timedelta(minutes=created_minutes_ago)
        if completed_days_ago is not None:
            values["completed_at"] = now - timedelta(days=completed_days_ago)

        if values:
            for key, value in values.items():
                setattr(job, key, value)
            db_session.commit()
            db_session.refresh(job)
        return job

    return _make


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow-running")
