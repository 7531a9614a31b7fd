"""
Health check endpoints.
"""

from fastapi import APIRouter, Depends

from phiguard.app.db.migrate import check_db_security
from phiguard.app.services.container import Services, get_services

router = APIRouter()


@router.get("/healthz")
async def health_check():
    """Basic liveness check."""
    return {"ok": True}


@router.get("/v1/health/status")
def health_status(services: Services = Depends(get_services)):
    """Readiness plus database hardening status. No PHI, no audit content."""
    security = check_db_security(services.settings.db_path)
    return {
        "status": "healthy" if security["db_exists"] else "degraded",
        "service": "phiguard",
        "database": security,
    }
