"""
Access Decision Engine.

Evaluates an AccessPolicy for one request in a fixed pipeline:

    1. RoleGate          role in allowed set
    2. AttributeGate     identity attributes match requirements
    3. RelationshipGate  admin / nurse_hospital_scope / assignment
    4. ConsentGate       patient consent flag granted

An active break-glass context turns a denial at gates 3-4 into a grant for
that request only. Gates 1-2 are never overridden.

Every DENIED decision writes an ACCESS_DENIED audit record before the
decision is returned.
"""

import logging
from dataclasses import replace
from typing import Optional

from phiguard.app.db.patient_store import PatientStore
from phiguard.app.models.access import (
    REASON_ATTRIBUTE,
    REASON_CHECK_FAILED,
    REASON_CONSENT,
    REASON_NOT_ASSIGNED,
    REASON_NURSE_HOSPITAL,
    REASON_ROLE,
    AccessDecision,
    AccessPolicy,
    BreakGlassContext,
    Gate,
    PatientSnapshot,
    RequestContext,
    ResourceRef,
    Role,
)
from phiguard.app.models.audit import (
    AuditAction,
    AuditActor,
    AuditDetails,
    AuditEvent,
    AuditStatus,
    ResourceType,
)
from phiguard.app.security.auth import Identity
from phiguard.app.security.errors import ResourceNotFound
from phiguard.app.services.audit_trail import AuditTrail

logger = logging.getLogger(__name__)


class AccessDecisionEngine:
    """
    Stateless per call; holds references to its collaborators only.

    Args:
        directory: resolves patient references for gates 3-4
        audit_trail: receives ACCESS_DENIED records
    """

    def __init__(self, directory: PatientStore, audit_trail: AuditTrail):
        self.directory = directory
        self.audit_trail = audit_trail

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    def screen(
        self,
        identity: Identity,
        policy: AccessPolicy,
        context: RequestContext,
        resource: Optional[ResourceRef] = None,
    ) -> AccessDecision:
        """Gates 1-2 only. Run before break-glass is considered."""
        denial = self._identity_gates(identity, policy)
        if denial is not None:
            denial = self._attach_patient(denial, resource)
            self._record_denial(identity, denial, context, resource)
            return denial
        return AccessDecision.grant()

    def evaluate(
        self,
        identity: Identity,
        policy: AccessPolicy,
        context: RequestContext,
        resource: Optional[ResourceRef] = None,
        break_glass: Optional[BreakGlassContext] = None,
    ) -> AccessDecision:
        """
        Run the full pipeline.

        Raises:
            ResourceNotFound: the referenced patient does not exist
        """
        denial = self._identity_gates(identity, policy)
        if denial is not None:
            denial = self._attach_patient(denial, resource)
            self._record_denial(identity, denial, context, resource)
            return denial

        patient: Optional[PatientSnapshot] = None
        if resource is not None and resource.resource_type.is_patient_scoped:
            try:
                patient = self.directory.resolve(resource.resource_id)
            except ResourceNotFound:
                raise
            except Exception as e:
                logger.error(
                    "Access check failed during patient lookup: actor=%s error=%s",
                    identity.id, type(e).__name__,
                )
                denial = AccessDecision.deny(Gate.RELATIONSHIP, REASON_CHECK_FAILED)
                self._record_denial(identity, denial, context, resource)
                return denial
        elif policy.needs_resource:
            # A relationship or consent gate with nothing to check against
            denial = AccessDecision.deny(Gate.RELATIONSHIP, REASON_CHECK_FAILED)
            self._record_denial(identity, denial, context, resource)
            return denial

        denial = self._resource_gates(identity, policy, patient)
        if denial is not None:
            if break_glass is not None:
                logger.warning(
                    "Break-glass override: actor=%s gate=%s patient=%s",
                    identity.id, denial.gate.value, patient.id if patient else None,
                )
                return AccessDecision.grant(patient, overridden=True)
            self._record_denial(identity, denial, context, resource)
            return denial

        return AccessDecision.grant(patient)

    def deny(
        self,
        identity: Identity,
        gate: Gate,
        reason: str,
        context: RequestContext,
        resource: Optional[ResourceRef] = None,
    ) -> AccessDecision:
        """Record a denial decided outside the gate pipeline (e.g. self-only routes)."""
        decision = AccessDecision.deny(gate, reason)
        self._record_denial(identity, decision, context, resource)
        return decision

    # ========================================================================
    # GATES
    # ========================================================================

    @staticmethod
    def _identity_gates(identity: Identity, policy: AccessPolicy) -> Optional[AccessDecision]:
        if policy.role is not None and identity.role not in policy.role.allowed_roles:
            return AccessDecision.deny(
                Gate.ROLE,
                REASON_ROLE,
                detail=f"role '{identity.role.value}' not authorized",
            )

        if policy.attributes is not None:
            failed = [name for name, _, _ in policy.attributes.mismatches(identity.attributes())]
            if failed:
                return AccessDecision.deny(
                    Gate.ATTRIBUTE,
                    REASON_ATTRIBUTE,
                    detail=f"attribute mismatch: {', '.join(failed)}",
                )

        return None

    @staticmethod
    def _resource_gates(
        identity: Identity,
        policy: AccessPolicy,
        patient: Optional[PatientSnapshot],
    ) -> Optional[AccessDecision]:
        if patient is None:
            return None

        relationship = policy.relationship
        if relationship is not None and identity.role != Role.ADMIN:
            if identity.role == Role.NURSE and relationship.nurse_hospital_scope:
                if patient.hospital_id != identity.hospital_id:
                    return AccessDecision.deny(
                        Gate.RELATIONSHIP, REASON_NURSE_HOSPITAL, patient=patient
                    )
            elif not identity.is_assigned(patient.id):
                return AccessDecision.deny(Gate.RELATIONSHIP, REASON_NOT_ASSIGNED, patient=patient)

        if policy.consent is not None and not patient.has_consent(policy.consent.flag):
            return AccessDecision.deny(
                Gate.CONSENT,
                REASON_CONSENT,
                detail=f"consent '{policy.consent.flag.value}' not granted",
                patient=patient,
            )

        return None

    # ========================================================================
    # AUDIT
    # ========================================================================

    def _attach_patient(
        self,
        denial: AccessDecision,
        resource: Optional[ResourceRef],
    ) -> AccessDecision:
        """
        Resolve the patient behind an attribute-gate denial so the record
        carries the canonical id. Role-gate denials are recorded as requested.
        """
        if denial.gate != Gate.ATTRIBUTE:
            return denial
        if resource is None or not resource.resource_type.is_patient_scoped:
            return denial

        try:
            patient = self.directory.resolve(resource.resource_id)
        except ResourceNotFound:
            return denial
        except Exception as e:
            logger.warning(
                "Patient lookup failed while recording denial: error=%s", type(e).__name__
            )
            return denial

        return replace(denial, resource_id=patient.id, patient=patient)

    def _record_denial(
        self,
        identity: Identity,
        decision: AccessDecision,
        context: RequestContext,
        resource: Optional[ResourceRef],
    ) -> None:
        logger.info(
            "Access denied: actor=%s role=%s gate=%s reason=%s",
            identity.id, identity.role.value, decision.gate.value, decision.reason,
        )

        resource_type = resource.resource_type if resource else None
        resource_id = decision.resource_id or (resource.resource_id if resource else None)

        self.audit_trail.record(AuditEvent(
            actor=AuditActor(id=identity.id, email=identity.email, role=identity.role.value),
            action=AuditAction.ACCESS_DENIED,
            resource_type=resource_type or ResourceType.SYSTEM,
            resource_id=resource_id,
            patient_id=decision.patient.id if decision.patient else None,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            status=AuditStatus.DENIED,
            details=AuditDetails(
                denial_reason=decision.reason,
                requested_path=context.path,
                gate=decision.gate.value,
                detail=decision.detail,
                method=context.method,
            ),
            hospital_id=identity.hospital_id,
            department=identity.department,
        ))
