"""
Audit reporting endpoints.

Read-only views over the audit ledger. There is no route that
updates or deletes audit records.

Access:
- listing, break-glass listing, stats, chain verification: admin
- per-user activity: admin, or the user themself
- per-patient activity: admin, or anyone passing the relationship gate
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from phiguard.app.models.access import (
    REASON_NOT_SELF,
    AccessPolicy,
    Gate,
    RelationshipGate,
    ResourceRef,
    Role,
    RoleGate,
)
from phiguard.app.models.audit import (
    AuditAction,
    AuditPage,
    AuditQuery,
    AuditStats,
    AuditStatus,
    ChainVerification,
    ResourceType,
)
from phiguard.app.security.errors import AuthorizationDenied
from phiguard.app.security.guard import AccessGrant, guard
from phiguard.app.security.rate_limit import limiter
from phiguard.app.services.container import Services, get_services

router = APIRouter(prefix="/v1/audit-logs", tags=["audit-logs"])

ADMIN_ONLY = AccessPolicy(role=RoleGate.of(Role.ADMIN))
AUTHENTICATED = AccessPolicy()
PATIENT_RELATIONSHIP = AccessPolicy(relationship=RelationshipGate())


@router.get("", response_model=AuditPage)
@limiter.limit("100/minute")
def list_audit_logs(
    request: Request,  # Required for rate limiting
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, description="Capped at 1000"),
    user_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    resource_type: Optional[ResourceType] = None,
    status: Optional[AuditStatus] = None,
    break_glass: Optional[bool] = None,
    start_date: Optional[str] = Query(None, description="ISO 8601 date or datetime"),
    end_date: Optional[str] = Query(None, description="ISO 8601 date or datetime"),
    grant: AccessGrant = Depends(guard(ADMIN_ONLY, patient_param=None)),
    services: Services = Depends(get_services),
) -> AuditPage:
    """Filtered audit log listing, newest first."""
    filters = AuditQuery(
        actor_id=user_id,
        patient_id=patient_id,
        action=action,
        resource_type=resource_type,
        status=status,
        break_glass=break_glass,
        start_date=start_date,
        end_date=end_date,
    )
    return services.audit_trail.query(filters, page=page, limit=limit)


@router.get("/break-glass", response_model=AuditPage)
@limiter.limit("100/minute")
def list_break_glass_logs(
    request: Request,  # Required for rate limiting
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    grant: AccessGrant = Depends(guard(ADMIN_ONLY, patient_param=None)),
    services: Services = Depends(get_services),
) -> AuditPage:
    """Every record written under an emergency override."""
    return services.audit_trail.query(AuditQuery(break_glass=True), page=page, limit=limit)


@router.get("/stats/summary", response_model=AuditStats)
@limiter.limit("30/minute")
def audit_stats(
    request: Request,  # Required for rate limiting
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    grant: AccessGrant = Depends(guard(ADMIN_ONLY, patient_param=None)),
    services: Services = Depends(get_services),
) -> AuditStats:
    return services.audit_trail.stats(start_date=start_date, end_date=end_date)


@router.get("/verify", response_model=ChainVerification)
@limiter.limit("10/minute")
def verify_audit_chain(
    request: Request,  # Required for rate limiting
    grant: AccessGrant = Depends(guard(ADMIN_ONLY, patient_param=None)),
    services: Services = Depends(get_services),
) -> ChainVerification:
    """Recompute the hash chain over the whole ledger."""
    return services.audit_trail.verify_chain()


@router.get("/user/{user_id}", response_model=AuditPage)
@limiter.limit("100/minute")
def user_activity(
    request: Request,  # Required for rate limiting
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    grant: AccessGrant = Depends(guard(AUTHENTICATED, patient_param=None)),
    services: Services = Depends(get_services),
) -> AuditPage:
    """Activity of one user. Non-admins may only read their own."""
    identity = grant.identity
    if identity.role != Role.ADMIN and identity.id != user_id:
        decision = services.engine.deny(
            identity,
            Gate.RELATIONSHIP,
            REASON_NOT_SELF,
            grant.context,
            ResourceRef(ResourceType.USER, user_id),
        )
        raise AuthorizationDenied(decision.reason, "Not authorized to view these logs")

    return services.audit_trail.query(AuditQuery(actor_id=user_id), page=page, limit=limit)


@router.get("/patient/{patient_ref}", response_model=AuditPage)
@limiter.limit("100/minute")
def patient_activity(
    request: Request,  # Required for rate limiting
    patient_ref: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    grant: AccessGrant = Depends(guard(PATIENT_RELATIONSHIP, allow_break_glass=False)),
    services: Services = Depends(get_services),
) -> AuditPage:
    """Access history of one patient, resolved from UUID or P- code."""
    return services.audit_trail.query(
        AuditQuery(patient_id=grant.patient.id), page=page, limit=limit
    )
