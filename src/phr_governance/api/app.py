"""
PHR Governance API

FastAPI application factory wiring the consent routes, the error mapping
and the background expiry sweeper.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
import structlog

from phr_governance import __version__
from phr_governance.api.routes import (
    audit_router, emergency_router, governance_error_handler, router,
)
from phr_governance.config import get_settings
from phr_governance.errors import GovernanceError
from phr_governance.observability import configure_logging
from phr_governance.service import ConsentService
from phr_governance.sweeper import ExpirySweeper

logger = structlog.get_logger(__name__)


def create_app(service: ConsentService, run_sweeper: bool = True) -> FastAPI:
    """Build the HTTP adapter around an already-wired ConsentService."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager for startup/shutdown events."""
        logger.info("Starting PHR governance API", env=service.settings.env,
                    patient_id=service.patient_id)
        sweeper = ExpirySweeper(service) if run_sweeper else None
        app.state.sweeper = sweeper
        if sweeper:
            await sweeper.start()

        yield

        logger.info("Shutting down PHR governance API")
        if sweeper:
            await sweeper.stop()

    app = FastAPI(
        title="PHR Governance API",
        description="Consent lifecycle, break-glass emergency access and audit trail",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service
    app.add_exception_handler(GovernanceError, governance_error_handler)

    app.include_router(router)
    app.include_router(emergency_router)
    app.include_router(audit_router)

    @app.get("/health", tags=["Health"])
    def health_check():
        report = service.verify_audit_trail()
        return {
            "status": "healthy" if report.intact else "degraded",
            "version": __version__,
            "audit_entries": report.total,
            "audit_intact": report.intact,
        }

    return app


def build_default_app() -> FastAPI:
    """
    Application factory for ``uvicorn --factory``.

    Configures logging from settings and serves an in-memory service for
    the patient named by ``PHR_PATIENT_ID``.
    """
    settings = get_settings()
    configure_logging(settings)
    service = ConsentService.in_memory(settings.patient_id, settings=settings)
    return create_app(service)
