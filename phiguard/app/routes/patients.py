"""
Patient record endpoints.

These are the operations the access-control core wraps. Each route declares
its AccessPolicy and audit action through ``guard(...)``; the handler body
only reads or writes the encrypted row.

SECURITY:
- Identity, hospital and assignments come from the verified JWT only
- Every granted request produces one finalizing audit record
- Every denial produces one ACCESS_DENIED record
- Responses carry decrypted PHI; logs never do
"""

from fastapi import APIRouter, Depends, Request, status

from phiguard.app.models.access import (
    AccessPolicy,
    AttributeGate,
    ConsentFlag,
    ConsentGate,
    RelationshipGate,
    Role,
    RoleGate,
)
from phiguard.app.models.audit import AccessMethod, AuditAction
from phiguard.app.models.patients import (
    BreakGlassAccessRequest,
    ChangeResponse,
    ConsentUpdateRequest,
    PatientCreateRequest,
    PatientResponse,
    PatientUpdateRequest,
    ResearchExportResponse,
)
from phiguard.app.security.errors import ValidationFailure
from phiguard.app.security.guard import AccessGrant, guard
from phiguard.app.security.rate_limit import limiter
from phiguard.app.services.container import Services, get_services
from phiguard.app.services.interceptor import audit_scope

router = APIRouter(prefix="/v1/patients", tags=["patients"])


# ============================================================================
# POLICIES
# ============================================================================

CARE_TEAM = RoleGate.of(Role.ADMIN, Role.DOCTOR, Role.NURSE)

CREATE_POLICY = AccessPolicy(role=CARE_TEAM)
VIEW_POLICY = AccessPolicy(role=CARE_TEAM, relationship=RelationshipGate())
UPDATE_POLICY = AccessPolicy(role=CARE_TEAM, relationship=RelationshipGate())
DELETE_POLICY = AccessPolicy(role=RoleGate.of(Role.ADMIN))
RESEARCH_EXPORT_POLICY = AccessPolicy(
    role=RoleGate.of(Role.ADMIN, Role.DOCTOR),
    attributes=AttributeGate({"access_level": frozenset({3, 4, 5})}),
    relationship=RelationshipGate(),
    consent=ConsentGate(ConsentFlag.RESEARCH),
)


def _patient_response(patient: dict, grant: AccessGrant) -> PatientResponse:
    if grant.break_glass is not None:
        return PatientResponse(
            **patient,
            access_method=AccessMethod.EMERGENCY.value,
            break_glass_record_id=grant.break_glass.record_id,
        )
    return PatientResponse(**patient)


# ============================================================================
# ROUTES
# ============================================================================


@router.post("", response_model=PatientResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_patient(
    request: Request,  # Required for rate limiting
    body: PatientCreateRequest,
    grant: AccessGrant = Depends(guard(
        CREATE_POLICY, action=AuditAction.CREATE_PATIENT, patient_param=None,
    )),
    services: Services = Depends(get_services),
) -> PatientResponse:
    """
    Register a patient in the caller's hospital.

    Admins may place the patient in another hospital via ``hospital_id``.
    """
    identity = grant.identity
    hospital_id = identity.hospital_id
    if body.hospital_id and body.hospital_id != identity.hospital_id:
        if identity.role != Role.ADMIN:
            raise ValidationFailure("Only administrators may create patients in another hospital")
        hospital_id = body.hospital_id
    if not hospital_id:
        raise ValidationFailure("hospital_id is required")

    fields = body.model_dump(include={"first_name", "last_name", "date_of_birth", "ssn", "phone", "email"})
    patient = services.patients.create(
        hospital_id=hospital_id,
        fields=fields,
        department=body.department or identity.department,
        consent=body.consent.model_dump() if body.consent else None,
    )

    scope = audit_scope(request)
    scope.resource_id = patient["id"]
    scope.patient_id = patient["id"]

    return PatientResponse(**patient)


@router.get("/{patient_ref}", response_model=PatientResponse)
@limiter.limit("100/minute")
def view_patient(
    request: Request,  # Required for rate limiting
    patient_ref: str,
    grant: AccessGrant = Depends(guard(VIEW_POLICY, action=AuditAction.VIEW_PATIENT)),
    services: Services = Depends(get_services),
) -> PatientResponse:
    """Read one patient. ``patient_ref`` may be the UUID or the P- code."""
    return _patient_response(services.patients.read(grant.patient.id), grant)


@router.post("/{patient_ref}/break-glass", response_model=PatientResponse)
@limiter.limit("10/minute")
def break_glass_view_patient(
    request: Request,  # Required for rate limiting
    patient_ref: str,
    body: BreakGlassAccessRequest,
    grant: AccessGrant = Depends(guard(VIEW_POLICY, action=AuditAction.VIEW_PATIENT)),
    services: Services = Depends(get_services),
) -> PatientResponse:
    """
    Emergency read of a patient outside the caller's normal relationship.

    The body is evaluated by the access guard: with ``emergency_access`` and
    a justification of at least 20 characters, relationship and consent
    denials are overridden for this request and a BREAK_GLASS_ACCESS record
    is written before the read happens.
    """
    return _patient_response(services.patients.read(grant.patient.id), grant)


@router.put("/{patient_ref}", response_model=ChangeResponse)
@limiter.limit("30/minute")
def update_patient(
    request: Request,  # Required for rate limiting
    patient_ref: str,
    body: PatientUpdateRequest,
    grant: AccessGrant = Depends(guard(
        UPDATE_POLICY, action=AuditAction.UPDATE_PATIENT, capture_before=True,
    )),
    services: Services = Depends(get_services),
) -> ChangeResponse:
    """Update demographic fields. The audit record lists changed field names only."""
    changes = services.patients.update(grant.patient.id, body.changes())
    audit_scope(request).changes = changes
    return ChangeResponse(id=grant.patient.id, changes=changes)


@router.put("/{patient_ref}/consent", response_model=ChangeResponse)
@limiter.limit("30/minute")
def update_consent(
    request: Request,  # Required for rate limiting
    patient_ref: str,
    body: ConsentUpdateRequest,
    grant: AccessGrant = Depends(guard(
        UPDATE_POLICY, action=AuditAction.UPDATE_PATIENT, capture_before=True,
    )),
    services: Services = Depends(get_services),
) -> ChangeResponse:
    """Update the patient's consent flags."""
    changes = services.patients.update_consent(grant.patient.id, body.changes())
    audit_scope(request).changes = changes
    return ChangeResponse(id=grant.patient.id, changes=changes)


@router.delete("/{patient_ref}", response_model=ChangeResponse)
@limiter.limit("30/minute")
def deactivate_patient(
    request: Request,  # Required for rate limiting
    patient_ref: str,
    grant: AccessGrant = Depends(guard(
        DELETE_POLICY, action=AuditAction.DELETE_PATIENT, capture_before=True,
    )),
    services: Services = Depends(get_services),
) -> ChangeResponse:
    """Soft-delete a patient (admin only)."""
    services.patients.deactivate(grant.patient.id)
    changes = ["is_active"]
    audit_scope(request).changes = changes
    return ChangeResponse(id=grant.patient.id, changes=changes)


@router.post("/{patient_ref}/research-export", response_model=ResearchExportResponse)
@limiter.limit("10/minute")
def research_export(
    request: Request,  # Required for rate limiting
    patient_ref: str,
    grant: AccessGrant = Depends(guard(
        RESEARCH_EXPORT_POLICY, action=AuditAction.EXPORT_DATA, allow_break_glass=False,
    )),
    services: Services = Depends(get_services),
) -> ResearchExportResponse:
    """
    De-identified extract for research.

    Requires doctor/admin, access level 3+, a care relationship and the
    patient's research consent.
    """
    return ResearchExportResponse(**services.patients.research_extract(grant.patient.id))
