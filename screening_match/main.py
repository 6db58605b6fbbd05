"""Screening Match service — FastAPI entry point.

Exposes the waitlist matching trigger and the execution history used by
admins and monitoring. Scheduled runs go through `screening_match.cli`.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from screening_match.config.settings import get_settings
from screening_match.config.logging_config import setup_logging, get_logger
from screening_match.storage.database import get_db, init_db
from screening_match.api.responses import HealthCheckResponse
from screening_match.api.routes import matching

settings = get_settings()
setup_logging(log_level=settings.log_level, log_file=settings.log_file or None)
logger = get_logger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan — database init only."""
    logger.info("Starting Screening Match service", env=settings.app_env)

    await init_db()

    yield

    logger.info("Shutting down Screening Match service")


app = FastAPI(
    title="Screening Match",
    description="Matches waitlisted patients to donor-funded screening campaigns",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "X-Requested-With"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    error_id = str(uuid.uuid4())[:8]
    logger.error("Unhandled exception", error_id=error_id, error=str(exc), path=request.url.path, exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error", "error_id": error_id})


# Routes
app.include_router(matching.router, prefix="/api/v1")


@app.get("/health", response_model=HealthCheckResponse)
async def health_check():
    database_ok = True
    try:
        async with get_db() as db:
            await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning("Database health check failed", error=str(e))
        database_ok = False

    return HealthCheckResponse(
        status="healthy" if database_ok else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=VERSION,
        components={"database": database_ok},
    )


@app.get("/")
async def root():
    return {
        "name": "Screening Match",
        "version": VERSION,
        "description": "Matches waitlisted patients to donor-funded screening campaigns",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("screening_match.main:app", host="0.0.0.0", port=8000, reload=True)
