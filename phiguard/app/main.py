"""
PHIGuard - FastAPI Application

Access-control and accountability core for hospital patient records.

Security Hardening:
- JWT-based authentication required for all protected endpoints
- Policy-gated routes with an audit record for every decision
- Rate limiting to prevent abuse (can be disabled in test mode)
- Custom exception handling to prevent PHI leakage
- Database security validation on startup
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from phiguard.app.config import Settings
from phiguard.app.db.migrate import check_db_security, ensure_schema
from phiguard.app.logging_config import configure_logging
from phiguard.app.routes import audit_logs, health, patients
from phiguard.app.security.errors import PHIGuardError
from phiguard.app.security.rate_limit import limiter
from phiguard.app.services.container import Services, build_services
from phiguard.app.services.interceptor import audit_interceptor

logger = logging.getLogger(__name__)


def sanitize_error_detail(detail: Any) -> dict:
    """
    Sanitize error details to prevent PHI leakage.

    Dict details are produced by our own code and are assumed pre-sanitized;
    anything else is replaced by a generic message.
    """
    if isinstance(detail, dict):
        return detail

    return {
        "error": "internal_error",
        "message": "An error occurred processing your request",
    }


def register_exception_handlers(app: FastAPI) -> None:
    """Install the PHI-safe exception handlers."""

    @app.exception_handler(PHIGuardError)
    async def phiguard_exception_handler(request: Request, exc: PHIGuardError):
        """Core errors carry their own status and a stable, PHI-free body."""
        if exc.status_code >= 500:
            logger.error("%s on %s %s", type(exc).__name__, request.method, request.url.path)
        return JSONResponse(status_code=exc.status_code, content=exc.to_detail())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions without leaking PHI."""
        return JSONResponse(
            status_code=exc.status_code,
            content=sanitize_error_detail(exc.detail),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """
        Handle validation errors without leaking request body.

        Pydantic validation errors can include parts of the request body,
        which might contain PHI. Only field names and error types are returned.
        """
        errors = []
        for error in exc.errors():
            field_path = " -> ".join(str(loc) for loc in error["loc"])
            errors.append({
                "field": field_path,
                "type": error["type"],
            })

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": "validation_error",
                "message": "Request validation failed",
                "details": errors,
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """
        Catch-all exception handler to prevent stack traces with PHI.

        Only the exception type is logged; messages may embed request data.
        """
        logger.error("Unhandled exception: %s", type(exc).__name__)

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_error",
                "message": "An unexpected error occurred",
            },
        )


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    Services (encryption key, audit trail, patient directory, decision
    engine, break-glass protocol) are constructed here, once per app.
    """
    settings = settings or Settings.from_env()
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        On startup:
        - Configure logging
        - Bring the database schema to head (Alembic)
        - Validate database security configuration
        """
        configure_logging(settings)
        ensure_schema(settings.db_path, settings.sqlalchemy_url)

        if settings.sqlalchemy_url.startswith("sqlite"):
            security_status = check_db_security(settings.db_path)
            if not security_status.get("wal_enabled"):
                logger.warning("Database WAL mode not enabled")
            if not security_status.get("permissions_secure"):
                logger.warning("Database file permissions may not be secure")

        logger.info("PHIGuard started (env=%s)", settings.environment)
        yield

    app = FastAPI(
        title="PHIGuard",
        description="Access-control and accountability core for hospital patient records",
        version="0.1.0",
        lifespan=lifespan,
        # Disable debug mode in production
        debug=False,
    )

    app.state.settings = settings
    app.state.services = services

    # Register rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    register_exception_handlers(app)

    # One finalizing audit record per audited request
    app.middleware("http")(audit_interceptor)

    app.include_router(health.router)
    app.include_router(patients.router)
    app.include_router(audit_logs.router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "PHIGuard",
            "version": "0.1.0",
            "status": "operational",
        }

    return app


app = create_app()
