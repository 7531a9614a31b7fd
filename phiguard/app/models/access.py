"""
Access-control models: policy gates, decisions, and request-scoped context.

The policy is a closed set of four gate types evaluated in a fixed order by
AccessDecisionEngine:

    RoleGate -> AttributeGate -> RelationshipGate -> ConsentGate

A route declares an AccessPolicy by picking which gates apply; it never
supplies its own comparison logic.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, FrozenSet, Mapping, Optional, Union

from phiguard.app.models.audit import ResourceType


class Role(str, Enum):
    ADMIN = "admin"
    DOCTOR = "doctor"
    NURSE = "nurse"
    STAFF = "staff"
    PATIENT = "patient"


class AccessOutcome(str, Enum):
    GRANTED = "GRANTED"
    DENIED = "DENIED"


class Gate(str, Enum):
    ROLE = "role"
    ATTRIBUTE = "attribute"
    RELATIONSHIP = "relationship"
    CONSENT = "consent"


class ConsentFlag(str, Enum):
    DATA_SHARING = "data_sharing"
    RESEARCH = "research"
    EMERGENCY_ACCESS = "emergency_access"


# Stable denial reasons returned to callers. Never include other users' data.
REASON_ROLE = "role not authorized"
REASON_ATTRIBUTE = "attribute mismatch"
REASON_NURSE_HOSPITAL = "not in nurse's hospital"
REASON_NOT_ASSIGNED = "not assigned"
REASON_CONSENT = "consent not granted"
REASON_CHECK_FAILED = "access check failed"
REASON_NOT_SELF = "not own activity"


# ============================================================================
# POLICY GATES
# ============================================================================


@dataclass(frozen=True)
class RoleGate:
    """Gate 1: the identity's role must be one of ``allowed_roles``."""
    allowed_roles: FrozenSet[Role]

    @classmethod
    def of(cls, *roles: Union[Role, str]) -> "RoleGate":
        return cls(frozenset(Role(r) for r in roles))


@dataclass(frozen=True)
class AttributeGate:
    """
    Gate 2: every listed identity attribute must match.

    Each requirement is either a single required value or a frozenset of
    acceptable values, e.g. ``{"department": "cardiology",
    "access_level": frozenset({3, 4, 5})}``.
    """
    requirements: Mapping[str, Union[Any, FrozenSet[Any]]]

    def mismatches(self, attributes: Mapping[str, Any]):
        """Yield (attribute, expected, actual) for every failed requirement."""
        for attribute, expected in self.requirements.items():
            actual = attributes.get(attribute)
            if isinstance(expected, (frozenset, set)):
                if actual not in expected:
                    yield attribute, expected, actual
            elif actual != expected:
                yield attribute, expected, actual


@dataclass(frozen=True)
class RelationshipGate:
    """
    Gate 3: role-dependent relationship to a patient-scoped resource.

    admin  -> always granted
    nurse  -> same hospital as the patient (rule: nurse_hospital_scope)
    others -> patient must be in the identity's assigned set
    """
    nurse_hospital_scope: bool = True


@dataclass(frozen=True)
class ConsentGate:
    """Gate 4: the patient must have granted ``flag``."""
    flag: ConsentFlag


@dataclass(frozen=True)
class AccessPolicy:
    """The gates that apply to one operation. Evaluated in fixed order."""
    role: Optional[RoleGate] = None
    attributes: Optional[AttributeGate] = None
    relationship: Optional[RelationshipGate] = None
    consent: Optional[ConsentGate] = None

    @property
    def needs_resource(self) -> bool:
        return self.relationship is not None or self.consent is not None


# ============================================================================
# REQUEST-SCOPED VALUES
# ============================================================================


@dataclass(frozen=True)
class ResourceRef:
    """(resource_type, resource_id) as supplied by the request."""
    resource_type: ResourceType
    resource_id: str


@dataclass(frozen=True)
class RequestContext:
    """HTTP request metadata needed for logging."""
    ip_address: str
    user_agent: Optional[str] = None
    path: Optional[str] = None
    method: str = "GET"


@dataclass(frozen=True)
class PatientSnapshot:
    """What the gates need to know about a patient (no PHI)."""
    id: str
    patient_code: str
    hospital_id: str
    consent: Mapping[str, bool] = field(default_factory=dict)
    is_active: bool = True

    def has_consent(self, flag: ConsentFlag) -> bool:
        return bool(self.consent.get(flag.value, False))


@dataclass(frozen=True)
class AccessDecision:
    """Result of one evaluation. Never persisted directly."""
    outcome: AccessOutcome
    reason: Optional[str] = None
    gate: Optional[Gate] = None
    detail: Optional[str] = None
    resource_id: Optional[str] = None
    patient: Optional[PatientSnapshot] = None
    overridden: bool = False

    @property
    def granted(self) -> bool:
        return self.outcome == AccessOutcome.GRANTED

    @classmethod
    def grant(cls, patient: Optional[PatientSnapshot] = None, overridden: bool = False) -> "AccessDecision":
        return cls(
            outcome=AccessOutcome.GRANTED,
            resource_id=patient.id if patient else None,
            patient=patient,
            overridden=overridden,
        )

    @classmethod
    def deny(
        cls,
        gate: Gate,
        reason: str,
        detail: Optional[str] = None,
        patient: Optional[PatientSnapshot] = None,
    ) -> "AccessDecision":
        return cls(
            outcome=AccessOutcome.DENIED,
            reason=reason,
            gate=gate,
            detail=detail or reason,
            resource_id=patient.id if patient else None,
            patient=patient,
        )


@dataclass(frozen=True)
class BreakGlassRequest:
    """A validated, not yet activated, emergency override request."""
    justification: str


@dataclass(frozen=True)
class BreakGlassContext:
    """Attached to the request once the override is ACTIVE."""
    justification: str
    activated_at: datetime
    record_id: str
    resource_id: Optional[str] = None
