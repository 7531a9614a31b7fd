"""
Access guard: the FastAPI dependency that puts a route behind the core.

Usage:
    @router.get("/v1/patients/{patient_ref}")
    async def view_patient(
        grant: AccessGrant = Depends(guard(
            VIEW_POLICY, action=AuditAction.VIEW_PATIENT,
        )),
    ):
        ...

Order per request:
    identity (JWT) -> gates 1-2 -> break-glass (JSON body with
    emergency_access) -> gates 3-4 -> before-state capture -> route

Blocking sqlite work runs in the threadpool so the event loop is never
held by a gate lookup or an audit append.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Depends, Request
from starlette.concurrency import run_in_threadpool

from phiguard.app.models.access import (
    AccessDecision,
    AccessPolicy,
    BreakGlassContext,
    PatientSnapshot,
    RequestContext,
    ResourceRef,
)
from phiguard.app.models.audit import AuditAction, ResourceType
from phiguard.app.security.auth import Identity, get_current_identity
from phiguard.app.security.errors import AuthorizationDenied, BreakGlassRejected
from phiguard.app.services.container import Services, get_services
from phiguard.app.services.interceptor import audit_scope, request_context

logger = logging.getLogger("phiguard.audit")


@dataclass(frozen=True)
class AccessGrant:
    """What a route receives once access is granted."""

    identity: Identity
    decision: AccessDecision
    context: RequestContext
    break_glass: Optional[BreakGlassContext] = None

    @property
    def patient(self) -> Optional[PatientSnapshot]:
        return self.decision.patient


async def _json_body(request: Request) -> Any:
    body = await request.body()
    if not body:
        return None
    try:
        return await request.json()
    except ValueError:
        return None


def guard(
    policy: AccessPolicy,
    action: Optional[AuditAction] = None,
    resource_type: ResourceType = ResourceType.PATIENT,
    patient_param: Optional[str] = "patient_ref",
    capture_before: bool = False,
    allow_break_glass: bool = True,
):
    """
    Dependency factory for policy-gated routes.

    Args:
        policy: gates that apply to the route
        action: audit action finalized by the interceptor; None for routes
            that are not audited per request (denials are still recorded)
        resource_type: type recorded for the resource
        patient_param: path parameter carrying the resource reference
        capture_before: store the stored row as before-state (UPDATE/DELETE)
        allow_break_glass: honour an emergency_access opt-in in the JSON body

    Raises (from the returned dependency):
        AuthorizationDenied: a gate denied access (403)
        BreakGlassRejected: override requested with a short justification (400)
        AuditPersistenceFailure: override record could not be written (503)
        ResourceNotFound: referenced patient does not exist (404)
    """

    async def access_guard(
        request: Request,
        identity: Identity = Depends(get_current_identity),
        services: Services = Depends(get_services),
    ) -> AccessGrant:
        context = request_context(request)
        ref = request.path_params.get(patient_param) if patient_param else None
        resource = ResourceRef(resource_type, ref) if ref else None

        break_glass: Optional[BreakGlassContext] = None
        if allow_break_glass and resource is not None:
            payload = await _json_body(request)
            if payload is not None:
                screened = await run_in_threadpool(
                    services.engine.screen, identity, policy, context, resource
                )
                if not screened.granted:
                    raise AuthorizationDenied(screened.reason)

                try:
                    override = services.break_glass.parse(payload)
                except BreakGlassRejected:
                    justification = payload.get("justification")
                    logger.warning(
                        "Break-glass rejected: actor=%s path=%s justification_length=%d",
                        identity.id, context.path,
                        len(justification) if isinstance(justification, str) else 0,
                    )
                    raise
                if override is not None:
                    break_glass = await run_in_threadpool(
                        services.break_glass.activate, identity, override, resource, context
                    )

        decision = await run_in_threadpool(
            services.engine.evaluate, identity, policy, context, resource, break_glass
        )
        if not decision.granted:
            raise AuthorizationDenied(decision.reason)

        if action is not None:
            scope = audit_scope(request)
            scope.identity = identity
            scope.context = context
            scope.action = action
            scope.resource_type = resource_type
            scope.resource_id = decision.resource_id or ref
            scope.patient_id = decision.patient.id if decision.patient else None
            scope.break_glass = break_glass

            if capture_before and decision.patient is not None:
                scope.before_state = await run_in_threadpool(
                    services.patients.stored_state, decision.patient.id
                )

        return AccessGrant(
            identity=identity,
            decision=decision,
            context=context,
            break_glass=break_glass,
        )

    return access_guard
