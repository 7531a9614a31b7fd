"""
Tests for the append-only audit trail.

Covers:
- record() assigns id, timestamp and chain hashes
- record() never raises (invalid event, broken database)
- immutability in the service API and in the database
- query filters, pagination and the page-size cap
- stats
- hash chain verification and tamper detection
"""

import logging
import sqlite3
from datetime import datetime

import pytest

from phiguard.app.db.migrate import get_connection
from phiguard.app.models.audit import (
    AccessMethod,
    AuditAction,
    AuditActor,
    AuditDetails,
    AuditEvent,
    AuditQuery,
    AuditStatus,
    BreakGlassInfo,
    ResourceType,
)
from phiguard.app.security.errors import AuditImmutabilityError, ValidationFailure
from phiguard.app.services.audit_trail import MAX_PAGE_SIZE, AuditTrail, normalize_bound


def make_event(**overrides) -> AuditEvent:
    values = dict(
        actor=AuditActor(id="user-1", email="user-1@hospital.example", role="doctor"),
        action=AuditAction.VIEW_PATIENT,
        resource_type=ResourceType.PATIENT,
        resource_id="patient-1",
        patient_id="patient-1",
        ip_address="10.0.0.1",
        user_agent="pytest",
        status=AuditStatus.SUCCESS,
        hospital_id="hospital-a",
        department="cardiology",
    )
    values.update(overrides)
    return AuditEvent(**values)


# ============================================================================
# WRITE
# ============================================================================


def test_record_assigns_identity_and_chains(audit_trail):
    first = audit_trail.record(make_event())
    second = audit_trail.record(make_event(action=AuditAction.UPDATE_PATIENT))

    assert first is not None and second is not None
    assert first.record_id != second.record_id
    assert first.prev_record_hash is None
    assert second.prev_record_hash == first.record_hash
    assert first.timestamp.endswith("Z")
    assert first.timestamp <= second.timestamp


def test_record_round_trips_through_get(audit_trail):
    stored = audit_trail.record(make_event(
        action=AuditAction.BREAK_GLASS_ACCESS,
        access_method=AccessMethod.EMERGENCY,
        break_glass=BreakGlassInfo(justification="Patient unresponsive in the ED"),
        details=AuditDetails(requested_path="/v1/patients/p/break-glass"),
    ))

    fetched = audit_trail.get(stored.record_id)

    assert fetched == stored
    assert fetched.is_break_glass
    assert fetched.access_method == AccessMethod.EMERGENCY
    assert fetched.details.requested_path == "/v1/patients/p/break-glass"


def test_record_accepts_mapping(audit_trail):
    record = audit_trail.record({
        "actor": {"id": "user-2", "email": "u2@hospital.example", "role": "nurse"},
        "action": "LOGIN",
        "resource_type": "System",
        "ip_address": "127.0.0.1",
        "status": "SUCCESS",
    })

    assert record is not None
    assert record.action == AuditAction.LOGIN


def test_record_keeps_supplied_timestamp(audit_trail):
    supplied = audit_trail.record(make_event(timestamp="2020-01-01T08:30:00Z"))
    naive = audit_trail.record(make_event(timestamp=datetime(2021, 6, 1, 12, 0)))
    server = audit_trail.record(make_event())

    assert supplied.timestamp.startswith("2020-01-01T08:30:00")
    assert naive.timestamp.startswith("2021-06-01T12:00:00")
    assert server.timestamp > naive.timestamp
    assert audit_trail.get(supplied.record_id).timestamp == supplied.timestamp
    assert audit_trail.verify_chain().valid


def test_get_unknown_record_returns_none(audit_trail):
    assert audit_trail.get("does-not-exist") is None


@pytest.mark.parametrize("missing", ["actor", "action", "status", "ip_address"])
def test_invalid_event_returns_none_and_logs(audit_trail, caplog, missing):
    event = {
        "actor": {"id": "user-1", "email": "u@hospital.example", "role": "doctor"},
        "action": "VIEW_PATIENT",
        "resource_type": "Patient",
        "ip_address": "10.0.0.1",
        "status": "SUCCESS",
    }
    del event[missing]

    with caplog.at_level(logging.ERROR, logger="phiguard.audit"):
        assert audit_trail.record(event) is None

    assert any(r.name == "phiguard.audit" and r.levelno == logging.ERROR for r in caplog.records)
    assert audit_trail.query().total == 0


def test_write_failure_returns_none_and_logs(tmp_path, caplog):
    # No schema: the INSERT fails
    broken = AuditTrail(tmp_path / "empty.db")

    with caplog.at_level(logging.ERROR, logger="phiguard.audit"):
        result = broken.record(make_event())

    assert result is None
    assert "Audit write failed" in caplog.text


# ============================================================================
# IMMUTABILITY
# ============================================================================


def test_service_api_rejects_mutation(audit_trail):
    record = audit_trail.record(make_event())

    with pytest.raises(AuditImmutabilityError):
        audit_trail.update(record.record_id, {"status": "FAILURE"})
    with pytest.raises(AuditImmutabilityError):
        audit_trail.update_many({"actor_id": "user-1"}, {"status": "FAILURE"})
    with pytest.raises(AuditImmutabilityError):
        audit_trail.delete(record.record_id)
    with pytest.raises(AuditImmutabilityError):
        audit_trail.delete_many({"actor_id": "user-1"})

    assert audit_trail.get(record.record_id) == record


def test_database_rejects_update_and_delete(audit_trail, settings):
    record = audit_trail.record(make_event())

    conn = get_connection(settings.db_path)
    try:
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute(
                "UPDATE audit_logs SET status = 'FAILURE' WHERE record_id = ?",
                (record.record_id,),
            )
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("DELETE FROM audit_logs WHERE record_id = ?", (record.record_id,))
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("DELETE FROM audit_logs")
    finally:
        conn.close()

    assert audit_trail.get(record.record_id) == record


# ============================================================================
# QUERY
# ============================================================================


def test_query_filters(audit_trail):
    audit_trail.record(make_event())
    audit_trail.record(make_event(
        actor=AuditActor(id="user-2", email="u2@hospital.example", role="nurse"),
        patient_id="patient-2",
        resource_id="patient-2",
    ))
    audit_trail.record(make_event(action=AuditAction.ACCESS_DENIED, status=AuditStatus.DENIED))
    audit_trail.record(make_event(
        action=AuditAction.BREAK_GLASS_ACCESS,
        access_method=AccessMethod.EMERGENCY,
        break_glass=BreakGlassInfo(justification="Cardiac arrest, chart needed now"),
    ))

    assert audit_trail.query().total == 4
    assert audit_trail.query(AuditQuery(actor_id="user-2")).total == 1
    assert audit_trail.query(AuditQuery(patient_id="patient-2")).total == 1
    assert audit_trail.query(AuditQuery(status=AuditStatus.DENIED)).total == 1
    assert audit_trail.query(AuditQuery(action=AuditAction.ACCESS_DENIED)).total == 1
    assert audit_trail.query(AuditQuery(break_glass=True)).total == 1
    assert audit_trail.query(AuditQuery(break_glass=False)).total == 3
    assert audit_trail.query(AuditQuery(resource_type=ResourceType.USER)).total == 0


def test_query_date_range(audit_trail):
    audit_trail.record(make_event())

    assert audit_trail.query(AuditQuery(start_date="2000-01-01")).total == 1
    assert audit_trail.query(AuditQuery(end_date="2000-01-01")).total == 0
    assert audit_trail.query(AuditQuery(start_date="2999-01-01T00:00:00Z")).total == 0


def test_query_pagination_newest_first(audit_trail):
    ids = [audit_trail.record(make_event(resource_id=f"p-{i}")).record_id for i in range(5)]

    page_one = audit_trail.query(page=1, limit=2)
    page_three = audit_trail.query(page=3, limit=2)

    assert page_one.total == 5
    assert page_one.pages == 3
    assert [r.record_id for r in page_one.records] == [ids[4], ids[3]]
    assert [r.record_id for r in page_three.records] == [ids[0]]

    oldest_first = audit_trail.query(limit=5, sort_order="asc")
    assert [r.record_id for r in oldest_first.records] == ids


def test_query_limit_is_capped(audit_trail):
    audit_trail.record(make_event())

    page = audit_trail.query(limit=MAX_PAGE_SIZE * 10)

    assert page.limit == MAX_PAGE_SIZE


@pytest.mark.parametrize(
    "kwargs",
    [{"page": 0}, {"limit": 0}, {"sort_order": "sideways"}],
)
def test_query_rejects_bad_paging(audit_trail, kwargs):
    with pytest.raises(ValidationFailure):
        audit_trail.query(**kwargs)


def test_query_rejects_bad_date(audit_trail):
    with pytest.raises(ValidationFailure):
        audit_trail.query(AuditQuery(start_date="yesterday"))


def test_normalize_bound_covers_whole_day():
    assert normalize_bound("2026-03-01") == "2026-03-01T00:00:00.000000Z"
    assert normalize_bound("2026-03-01", end=True) == "2026-03-01T23:59:59.999999Z"
    assert normalize_bound("2026-03-01T10:00:00+02:00") == "2026-03-01T08:00:00.000000Z"
    assert normalize_bound(None) is None


# ============================================================================
# STATS
# ============================================================================


def test_stats(audit_trail):
    for _ in range(3):
        audit_trail.record(make_event())
    audit_trail.record(make_event(action=AuditAction.ACCESS_DENIED, status=AuditStatus.DENIED))
    audit_trail.record(make_event(
        actor=AuditActor(id="user-9", email="u9@hospital.example", role="nurse"),
        action=AuditAction.BREAK_GLASS_ACCESS,
        access_method=AccessMethod.EMERGENCY,
        break_glass=BreakGlassInfo(justification="Trauma bay, unconscious patient"),
    ))

    stats = audit_trail.stats()

    assert stats.total_records == 5
    assert stats.break_glass_count == 1
    assert stats.denied_count == 1
    assert stats.top_actions[0].action == "VIEW_PATIENT"
    assert stats.top_actions[0].count == 3
    assert stats.top_actors[0].actor_id == "user-1"
    assert stats.top_actors[0].count == 4
    assert stats.top_actors[0].actor_email == "user-1@hospital.example"


def test_stats_top_lists_limited_to_ten(audit_trail):
    for i in range(12):
        audit_trail.record(make_event(
            actor=AuditActor(id=f"user-{i:02d}", email=f"u{i}@hospital.example", role="staff"),
        ))

    stats = audit_trail.stats()

    assert stats.total_records == 12
    assert len(stats.top_actors) == 10


def test_stats_date_range_excludes_everything(audit_trail):
    audit_trail.record(make_event())

    stats = audit_trail.stats(end_date="2000-01-01")

    assert stats.total_records == 0
    assert stats.top_actions == []


# ============================================================================
# INTEGRITY
# ============================================================================


def test_verify_chain_on_intact_ledger(audit_trail):
    for i in range(4):
        audit_trail.record(make_event(resource_id=f"p-{i}"))

    result = audit_trail.verify_chain()

    assert result.valid
    assert result.total_records == 4
    assert result.errors == []


def test_verify_chain_on_empty_ledger(audit_trail):
    result = audit_trail.verify_chain()

    assert result.valid
    assert result.total_records == 0


def test_verify_chain_detects_tampered_row(audit_trail, settings):
    records = [audit_trail.record(make_event(resource_id=f"p-{i}")) for i in range(3)]

    # Simulate an attacker with file access who drops the triggers first
    conn = sqlite3.connect(settings.db_path)
    try:
        conn.execute("DROP TRIGGER audit_logs_reject_update")
        conn.execute(
            "UPDATE audit_logs SET status = 'DENIED' WHERE record_id = ?",
            (records[1].record_id,),
        )
        conn.commit()
    finally:
        conn.close()

    result = audit_trail.verify_chain()

    assert not result.valid
    assert [(e.record_id, e.error) for e in result.errors] == [
        (records[1].record_id, "hash_mismatch"),
    ]


def test_verify_chain_detects_deleted_row(audit_trail, settings):
    records = [audit_trail.record(make_event(resource_id=f"p-{i}")) for i in range(3)]

    conn = sqlite3.connect(settings.db_path)
    try:
        conn.execute("DROP TRIGGER audit_logs_reject_delete")
        conn.execute("DELETE FROM audit_logs WHERE record_id = ?", (records[1].record_id,))
        conn.commit()
    finally:
        conn.close()

    result = audit_trail.verify_chain()

    assert not result.valid
    assert result.errors[0].record_id == records[2].record_id
    assert result.errors[0].error == "chain_break"
