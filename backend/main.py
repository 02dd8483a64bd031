"""
FastAPI application entry point for the script analysis agent service.

The API enqueues and tracks agent jobs; src.jobs.script_analysis_worker
runs them.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from src.agents.errors import AgentError, AgentErrorCode
from src.api.routes import agents
from src.database.readiness import check_required_tables
from src.database.session import get_db_session_sync

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting agent job API")

    # Database connectivity check: surface misconfigurations in deploy logs
    database_url = os.getenv("DATABASE_URL")
    app.state.database_configured = bool(database_url)
    app.state.agent_schema_ready = False

    if not database_url:
        logger.error(
            "DATABASE_URL is not set; get_db_session will answer agent requests "
            "with 503 'Database not configured'"
        )
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else "(no @ found, URL may be malformed)"
        logger.info("DATABASE_URL configured", extra={"host_db": masked})

        try:
            for db in get_db_session_sync():
                readiness = check_required_tables(db)
                app.state.agent_schema_ready = readiness.ready
                if readiness.ready:
                    logger.info(
                        "Agent schema readiness check passed",
                        extra={"required_tables": readiness.checked_tables},
                    )
                else:
                    logger.error(
                        "Agent schema readiness check failed; run migrations",
                        extra={"missing_tables": readiness.missing_tables},
                    )
        except Exception as e:
            logger.exception("Agent schema readiness check errored", extra={"error": str(e)})

    yield

    logger.info("Shutting down agent job API")


app = FastAPI(
    title="Script Analysis Agent API",
    description="Starts, tracks and cancels script analysis jobs",
    version="1.0.0",
    lifespan=lifespan
)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(agents.router)


@app.get("/health", tags=["health"])
async def health(request: Request):
    return {
        "status": "ok",
        "database_configured": getattr(request.app.state, "database_configured", False),
        "agent_schema_ready": getattr(request.app.state, "agent_schema_ready", False),
    }


@app.exception_handler(AgentError)
async def agent_error_handler(request: Request, exc: AgentError):
    """Agent errors that escaped a route; database outages map to 503."""
    status_code = (
        status.HTTP_503_SERVICE_UNAVAILABLE
        if exc.code == AgentErrorCode.DATABASE_ERROR
        else status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    logger.error(
        "Agent error",
        extra={
            "code": exc.code.value,
            "error": exc.message,
            "path": request.url.path,
        },
    )
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code.value, "detail": exc.message},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
