"""
FastAPI application for the Repository Compliance Analyzer.

Provides REST endpoints for snapshots, analysis runs, findings and
remediation tasks.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..core.audit import DatabaseAuditLog
from ..core.config import Settings, get_settings
from ..core.errors import AppError
from ..core.findings import FindingsService
from ..core.orchestrator import AnalysisOrchestrator
from ..core.snapshots import SnapshotService
from ..storage.database import Database
from ..utils.secure_logging import get_secure_logger, mask_mapping
from .routes import router

logger = get_secure_logger(__name__)


def build_services(app: FastAPI, settings: Settings) -> None:
    """Create the database and services and attach them to ``app.state``."""
    db = Database(settings.database.path)
    audit = DatabaseAuditLog(db)
    findings = FindingsService(db, audit)

    app.state.settings = settings
    app.state.db = db
    app.state.audit = audit
    app.state.snapshots = SnapshotService(db, audit)
    app.state.findings = findings
    app.state.orchestrator = AnalysisOrchestrator(db, findings, audit, settings=settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings: Settings = app.state.settings
    logger.info("Using SQLite database: %s", settings.database.path)
    build_services(app, settings)

    reconciled = app.state.orchestrator.reconcile_stale_runs()
    if reconciled:
        logger.warning("Marked %d stale analysis run(s) as failed", len(reconciled))

    yield

    await app.state.orchestrator.shutdown()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    application = FastAPI(
        title="Repository Compliance Analyzer API",
        description="REST API for repository compliance analysis",
        version=__version__,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )
    application.state.settings = settings

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Organization-Id", "X-User-Id"],
        max_age=600,
    )

    @application.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with sanitized headers."""
        start_time = datetime.now()
        logger.info(
            "Request: %s %s headers=%s",
            request.method,
            request.url.path,
            mask_mapping(dict(request.headers)),
        )

        response = await call_next(request)

        duration = (datetime.now() - start_time).total_seconds()
        logger.info("Response: %s duration=%.3fs", response.status_code, duration)
        return response

    @application.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    application.include_router(router)
    return application
