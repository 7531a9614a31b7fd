"""
Response interceptor: one finalizing audit record per audited request.

The middleware opens an AuditScope on ``request.state.audit`` before the
route runs. The access guard fills it in once access is granted (identity,
action, canonical resource id, break-glass context, before-state); the
route may add the changed field names. After the route returns:

    2xx -> SUCCESS      4xx -> DENIED      anything else -> FAILURE

The record is written as a background task after the response body is
sent. If the route raises (or the request is cancelled) the record is
written inline with FAILURE before the exception propagates.

Requests whose scope was never bound (no identity, denied at a gate,
unaudited routes) are not finalized here. Denials are recorded by the
decision engine at the point of denial.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import Request
from starlette.background import BackgroundTask, BackgroundTasks

from phiguard.app.models.access import BreakGlassContext, RequestContext
from phiguard.app.models.audit import (
    AccessMethod,
    AuditAction,
    AuditActor,
    AuditDetails,
    AuditEvent,
    AuditStatus,
    BreakGlassInfo,
    ResourceType,
)
from phiguard.app.security.auth import Identity
from phiguard.app.security.ip import client_ip

logger = logging.getLogger(__name__)


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        path=request.url.path,
        method=request.method,
    )


@dataclass
class AuditScope:
    """Request-scoped audit state. Mutable until the request finishes."""

    identity: Optional[Identity] = None
    context: Optional[RequestContext] = None
    action: Optional[AuditAction] = None
    resource_type: ResourceType = ResourceType.SYSTEM
    resource_id: Optional[str] = None
    patient_id: Optional[str] = None
    break_glass: Optional[BreakGlassContext] = None
    before_state: Optional[Dict[str, Any]] = None
    changes: List[str] = field(default_factory=list)
    finalized: bool = False

    @property
    def bound(self) -> bool:
        return self.identity is not None and self.action is not None

    def build_event(self, status: AuditStatus, error_message: Optional[str] = None) -> AuditEvent:
        details = None
        if self.action.is_mutation:
            details = AuditDetails(
                before_state=self.before_state,
                changes=list(self.changes),
                error_message=error_message,
            )
        elif error_message:
            details = AuditDetails(error_message=error_message)

        return AuditEvent(
            actor=AuditActor(
                id=self.identity.id,
                email=self.identity.email,
                role=self.identity.role.value,
            ),
            action=self.action,
            resource_type=self.resource_type,
            resource_id=self.resource_id,
            patient_id=self.patient_id,
            ip_address=self.context.ip_address,
            user_agent=self.context.user_agent,
            access_method=AccessMethod.EMERGENCY if self.break_glass else AccessMethod.NORMAL,
            status=status,
            break_glass=(
                BreakGlassInfo(justification=self.break_glass.justification)
                if self.break_glass else None
            ),
            details=details,
            hospital_id=self.identity.hospital_id,
            department=self.identity.department,
        )


def audit_scope(request: Request) -> AuditScope:
    """Scope for this request; created on first access outside the middleware."""
    scope = getattr(request.state, "audit", None)
    if scope is None:
        scope = AuditScope()
        request.state.audit = scope
    return scope


def _finalize(audit_trail, scope: AuditScope, status: AuditStatus, error_message: Optional[str] = None):
    if scope.finalized or not scope.bound:
        return
    scope.finalized = True
    audit_trail.record(scope.build_event(status, error_message))


async def audit_interceptor(request: Request, call_next):
    """HTTP middleware registered by create_app()."""
    scope = AuditScope()
    request.state.audit = scope
    audit_trail = request.app.state.services.audit_trail

    try:
        response = await call_next(request)
    except BaseException as exc:
        # Covers route exceptions and cancellation; write now, then re-raise
        logger.error(
            "Request failed: %s %s (%s)",
            request.method, request.url.path, type(exc).__name__,
        )
        _finalize(audit_trail, scope, AuditStatus.FAILURE, error_message=type(exc).__name__)
        raise

    if scope.bound and not scope.finalized:
        status = AuditStatus.from_status_code(response.status_code)
        task = BackgroundTask(_finalize, audit_trail, scope, status)
        if response.background is None:
            response.background = task
        else:
            response.background = BackgroundTasks(tasks=[response.background, task])

    return response
