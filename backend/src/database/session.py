"""
Database session management for the agent job service.

The API, the script analysis worker and the maintenance job all share one
engine per process. Job state is written by the worker and polled by the
API, so every JobManager write commits immediately; sessions here never
hold long transactions.

Configuration:
- DATABASE_URL: SQLAlchemy URL (postgres:// is normalized to postgresql://)
- DATABASE_POOL_SIZE: Pooled connections per process (default: 5)
- DATABASE_MAX_OVERFLOW: Extra connections under load (default: 10)

Usage:
    from src.database.session import get_db_session

    @router.get("/status")
    async def get_status(db: Session = Depends(get_db_session)):
        return JobManager(db).get_job(job_id)
"""

import os
import logging
from contextlib import contextmanager
from typing import Generator, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from fastapi import HTTPException, status

from src.agents.constants import read_positive_int_from_env

logger = logging.getLogger(__name__)

POOL_SIZE = read_positive_int_from_env("DATABASE_POOL_SIZE", 5)
MAX_OVERFLOW = read_positive_int_from_env("DATABASE_MAX_OVERFLOW", 10)

# Module-level engine singleton
_engine = None
_SessionLocal = None


def get_database_url() -> str:
    """
    Get and normalize the database URL from environment.

    Raises:
        ValueError: If DATABASE_URL is not set
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    # SQLAlchemy requires postgresql://
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def build_engine(database_url: str) -> Engine:
    """
    Create an engine for the given URL.

    SQLite (local runs and tests) gets a single shared connection; every
    other backend gets a pre-pinged, recycled connection pool.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_recycle=1800,
    )


def get_engine() -> Engine:
    """Get or create the database engine singleton."""
    global _engine
    if _engine is None:
        try:
            _engine = build_engine(get_database_url())
            logger.info(
                "Database engine created",
                extra={"pool_size": POOL_SIZE, "max_overflow": MAX_OVERFLOW},
            )
        except ValueError as e:
            logger.error("Failed to create database engine", extra={"error": str(e)})
            raise
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory singleton."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine(),
        )
    return _SessionLocal


async def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency for database sessions.

    Raises HTTP 503 if the database is not configured.
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured"
        )

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def get_db_session_sync() -> Generator[Session, None, None]:
    """
    Synchronous session for jobs run outside the API.

    Usage:
        for session in get_db_session_sync():
            # use session
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError as e:
        raise RuntimeError(f"Database not configured: {e}")

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """One session per unit of work (one job run in the worker)."""
    session = factory()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
