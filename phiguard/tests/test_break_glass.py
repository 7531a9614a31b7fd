"""
Tests for the break-glass emergency override.

Unit level: parse()/activate(). API level: the override is validated
before any effect, the BREAK_GLASS_ACCESS record precedes the request's own
outcome record, and a failed record write keeps the glass unbroken.
"""

import logging

import pytest

from phiguard.app.models.access import BreakGlassRequest, RequestContext, ResourceRef
from phiguard.app.models.audit import (
    AccessMethod,
    AuditAction,
    AuditQuery,
    AuditStatus,
    ResourceType,
)
from phiguard.app.security.auth import Identity
from phiguard.app.security.errors import AuditPersistenceFailure, BreakGlassRejected, ResourceNotFound
from phiguard.app.services.break_glass import MIN_JUSTIFICATION_LENGTH, BreakGlassProtocol
from phiguard.tests.auth_helpers import create_doctor_headers, create_nurse_headers, create_staff_headers
from phiguard.tests.test_helpers import HOSPITAL_A, HOSPITAL_B

VALID_JUSTIFICATION = "Patient unresponsive in ED, allergy history required"

CONTEXT = RequestContext(ip_address="10.9.9.9", user_agent="pytest", path="/v1/patients/x/break-glass")


def nurse_identity() -> Identity:
    return Identity(
        id="nurse-7", email="nurse-7@hospital.example", role="nurse",
        hospital_id=HOSPITAL_A, department="emergency",
    )


def break_glass_records(audit_trail):
    return audit_trail.query(AuditQuery(action=AuditAction.BREAK_GLASS_ACCESS)).records


# ============================================================================
# parse()
# ============================================================================


@pytest.mark.parametrize(
    "payload",
    [None, [], "text", {}, {"emergency_access": False, "justification": VALID_JUSTIFICATION}],
)
def test_parse_without_opt_in_is_inactive(payload):
    assert BreakGlassProtocol.parse(payload) is None


@pytest.mark.parametrize(
    "justification",
    [None, "", "too short", " " * 40, "x" * (MIN_JUSTIFICATION_LENGTH - 1), 12345],
)
def test_parse_rejects_inadequate_justification(justification):
    with pytest.raises(BreakGlassRejected):
        BreakGlassProtocol.parse({"emergency_access": True, "justification": justification})


def test_parse_trims_before_measuring():
    padded = "   " + "x" * (MIN_JUSTIFICATION_LENGTH - 1) + "   "
    with pytest.raises(BreakGlassRejected):
        BreakGlassProtocol.parse({"emergency_access": True, "justification": padded})

    request = BreakGlassProtocol.parse({
        "emergency_access": True,
        "justification": "  " + "x" * MIN_JUSTIFICATION_LENGTH + "  ",
    })
    assert request.justification == "x" * MIN_JUSTIFICATION_LENGTH


# ============================================================================
# activate()
# ============================================================================


def test_activate_writes_emergency_record(services, patient_b):
    ref = ResourceRef(ResourceType.PATIENT, patient_b["patient_code"])

    context = services.break_glass.activate(
        nurse_identity(), BreakGlassRequest(VALID_JUSTIFICATION), ref, CONTEXT
    )

    records = break_glass_records(services.audit_trail)
    assert len(records) == 1
    record = records[0]
    assert record.record_id == context.record_id
    assert record.access_method == AccessMethod.EMERGENCY
    assert record.status == AuditStatus.SUCCESS
    assert record.break_glass.justification == VALID_JUSTIFICATION
    assert record.patient_id == patient_b["id"]
    assert record.resource_id == patient_b["id"]
    assert record.details.requested_path == CONTEXT.path
    assert context.resource_id == patient_b["id"]


def test_activate_unknown_patient(services):
    ref = ResourceRef(ResourceType.PATIENT, "P-0-NOPE")

    with pytest.raises(ResourceNotFound):
        services.break_glass.activate(
            nurse_identity(), BreakGlassRequest(VALID_JUSTIFICATION), ref, CONTEXT
        )

    assert break_glass_records(services.audit_trail) == []


def test_activate_fails_closed_when_record_not_persisted(services, patient_b, monkeypatch):
    monkeypatch.setattr(services.audit_trail, "record", lambda event: None)
    ref = ResourceRef(ResourceType.PATIENT, patient_b["id"])

    with pytest.raises(AuditPersistenceFailure):
        services.break_glass.activate(
            nurse_identity(), BreakGlassRequest(VALID_JUSTIFICATION), ref, CONTEXT
        )


# ============================================================================
# API
# ============================================================================


def test_api_break_glass_overrides_nurse_hospital_scope(client, services, patient_b):
    headers = create_nurse_headers(hospital_id=HOSPITAL_A)
    body = {"emergency_access": True, "justification": VALID_JUSTIFICATION}

    response = client.post(f"/v1/patients/{patient_b['id']}/break-glass", json=body, headers=headers)

    assert response.status_code == 200
    data = response.json()
    assert data["first_name"] == "John"
    assert data["hospital_id"] == HOSPITAL_B
    assert data["access_method"] == "emergency"

    # Oldest first: the override record precedes the request's own outcome
    records = services.audit_trail.query(sort_order="asc").records
    assert [r.action for r in records] == [AuditAction.BREAK_GLASS_ACCESS, AuditAction.VIEW_PATIENT]
    override, outcome = records
    assert data["break_glass_record_id"] == override.record_id
    assert outcome.access_method == AccessMethod.EMERGENCY
    assert outcome.status == AuditStatus.SUCCESS
    assert outcome.break_glass.justification == VALID_JUSTIFICATION
    assert outcome.patient_id == patient_b["id"]


def test_api_short_justification_rejected_without_record(client, services, patient_b, caplog):
    headers = create_nurse_headers(hospital_id=HOSPITAL_A)
    body = {"emergency_access": True, "justification": "urgent"}

    with caplog.at_level(logging.WARNING, logger="phiguard.audit"):
        response = client.post(f"/v1/patients/{patient_b['id']}/break-glass", json=body, headers=headers)

    assert response.status_code == 400
    assert response.json()["error"] == "break_glass_rejected"
    assert break_glass_records(services.audit_trail) == []
    # No override took effect and nothing was read
    assert services.audit_trail.query(AuditQuery(action=AuditAction.VIEW_PATIENT)).total == 0

    rejected = [
        r for r in caplog.records
        if r.name == "phiguard.audit" and "Break-glass rejected" in r.getMessage()
    ]
    assert len(rejected) == 1
    assert rejected[0].levelno == logging.WARNING
    assert "test-nurse" in rejected[0].getMessage()
    assert "justification_length=6" in rejected[0].getMessage()
    assert "urgent" not in caplog.text


def test_api_without_opt_in_is_normal_evaluation(client, services, patient_b):
    headers = create_nurse_headers(hospital_id=HOSPITAL_A)

    response = client.post(
        f"/v1/patients/{patient_b['id']}/break-glass",
        json={"justification": VALID_JUSTIFICATION},
        headers=headers,
    )

    assert response.status_code == 403
    assert response.json()["reason"] == "not in nurse's hospital"
    assert break_glass_records(services.audit_trail) == []


def test_api_break_glass_cannot_bypass_role_gate(client, services, patient_b):
    body = {"emergency_access": True, "justification": VALID_JUSTIFICATION}

    response = client.post(
        f"/v1/patients/{patient_b['id']}/break-glass", json=body, headers=create_staff_headers()
    )

    assert response.status_code == 403
    assert response.json()["reason"] == "role not authorized"
    assert break_glass_records(services.audit_trail) == []


def test_api_break_glass_on_update_records_before_state(client, services, patient_b):
    headers = create_doctor_headers(assigned_patients=[])
    body = {
        "emergency_access": True,
        "justification": VALID_JUSTIFICATION,
        "phone": "555-0199",
    }

    response = client.put(f"/v1/patients/{patient_b['id']}", json=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["changes"] == ["phone"]

    update = services.audit_trail.query(AuditQuery(action=AuditAction.UPDATE_PATIENT)).records[0]
    assert update.access_method == AccessMethod.EMERGENCY
    assert update.details.changes == ["phone"]
    assert update.details.before_state["id"] == patient_b["id"]
    assert len(break_glass_records(services.audit_trail)) == 1


def test_api_break_glass_unavailable_when_audit_fails(client, services, patient_b, monkeypatch):
    monkeypatch.setattr(services.audit_trail, "record", lambda event: None)
    headers = create_nurse_headers(hospital_id=HOSPITAL_A)
    body = {"emergency_access": True, "justification": VALID_JUSTIFICATION}

    response = client.post(f"/v1/patients/{patient_b['id']}/break-glass", json=body, headers=headers)

    assert response.status_code == 503
    assert response.json()["error"] == "audit_unavailable"
    assert "John" not in response.text
