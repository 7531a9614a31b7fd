"""
Break-glass emergency override.

Lifecycle per request:

    INACTIVE --parse()--> validated request --activate()--> ACTIVE --> (request ends)

A request opts in by sending ``{"emergency_access": true, "justification": "..."}``
in its JSON body. The justification must be at least 20 characters after
trimming. Activation writes the BREAK_GLASS_ACCESS record synchronously,
before the wrapped operation runs; if that record cannot be persisted the
override does not take effect.

The justification is stored in the audit record only. It is never logged.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from phiguard.app.db.patient_store import PatientStore
from phiguard.app.models.access import (
    BreakGlassContext,
    BreakGlassRequest,
    RequestContext,
    ResourceRef,
)
from phiguard.app.models.audit import (
    AccessMethod,
    AuditAction,
    AuditActor,
    AuditDetails,
    AuditEvent,
    AuditStatus,
    BreakGlassInfo,
)
from phiguard.app.security.auth import Identity
from phiguard.app.security.errors import AuditPersistenceFailure, BreakGlassRejected
from phiguard.app.services.audit_trail import AuditTrail

logger = logging.getLogger(__name__)

MIN_JUSTIFICATION_LENGTH = 20


class BreakGlassProtocol:
    """Validates and activates emergency overrides."""

    def __init__(self, directory: PatientStore, audit_trail: AuditTrail):
        self.directory = directory
        self.audit_trail = audit_trail

    @staticmethod
    def parse(payload: Any) -> Optional[BreakGlassRequest]:
        """
        Extract an override request from a parsed JSON body.

        Returns:
            None when the body does not ask for emergency access

        Raises:
            BreakGlassRejected: emergency access requested without an
                adequate justification
        """
        if not isinstance(payload, dict) or not payload.get("emergency_access"):
            return None

        justification = payload.get("justification")
        if not isinstance(justification, str) or len(justification.strip()) < MIN_JUSTIFICATION_LENGTH:
            raise BreakGlassRejected(
                f"Break-glass access requires a justification of at least "
                f"{MIN_JUSTIFICATION_LENGTH} characters"
            )

        return BreakGlassRequest(justification=justification.strip())

    def activate(
        self,
        identity: Identity,
        request: BreakGlassRequest,
        resource: ResourceRef,
        context: RequestContext,
    ) -> BreakGlassContext:
        """
        Persist the BREAK_GLASS_ACCESS record and return the active context.

        Raises:
            ResourceNotFound: the referenced patient does not exist
            AuditPersistenceFailure: the record could not be written
        """
        patient_id = None
        resource_id = resource.resource_id
        if resource.resource_type.is_patient_scoped:
            patient_id = self.directory.resolve(resource.resource_id).id
            resource_id = patient_id

        record = self.audit_trail.record(AuditEvent(
            actor=AuditActor(id=identity.id, email=identity.email, role=identity.role.value),
            action=AuditAction.BREAK_GLASS_ACCESS,
            resource_type=resource.resource_type,
            resource_id=resource_id,
            patient_id=patient_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            access_method=AccessMethod.EMERGENCY,
            status=AuditStatus.SUCCESS,
            break_glass=BreakGlassInfo(justification=request.justification),
            details=AuditDetails(requested_path=context.path),
            hospital_id=identity.hospital_id,
            department=identity.department,
        ))

        if record is None:
            logger.error(
                "Break-glass activation refused: audit record not persisted (actor=%s)",
                identity.id,
            )
            raise AuditPersistenceFailure(
                "Emergency access is unavailable: the audit record could not be written"
            )

        return BreakGlassContext(
            justification=request.justification,
            activated_at=datetime.now(timezone.utc),
            record_id=record.record_id,
            resource_id=resource_id,
        )
