"""
Append-only, hash-chained audit trail.

Every access decision, break-glass activation and finalized request lands
here as one AuditRecord. Records are written once and never changed:

- the service API refuses update/delete (single and bulk) with
  AuditImmutabilityError
- the database rejects UPDATE/DELETE on audit_logs through triggers
- each record carries SHA-256(prev_record_hash || timestamp || body), so a
  row altered behind the triggers' back breaks verify_chain()

record() never raises. A failed write is logged at ERROR on the
``phiguard.audit`` logger and returns None; callers that must not proceed
without a record (break-glass) check the return value.
"""

import json
import logging
import math
import sqlite3
import threading
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from phiguard.app.db.ledger_hashing import canonical_json, compute_record_hash
from phiguard.app.db.migrate import get_connection
from phiguard.app.models.audit import (
    ActionCount,
    ActorCount,
    AuditActor,
    AuditDetails,
    AuditEvent,
    AuditPage,
    AuditQuery,
    AuditRecord,
    AuditStats,
    AuditStatus,
    BreakGlassInfo,
    ChainError,
    ChainVerification,
)
from phiguard.app.security.errors import AuditImmutabilityError, ValidationFailure
from phiguard.app.services.uuid7 import generate_uuid7

logger = logging.getLogger("phiguard.audit")

MAX_PAGE_SIZE = 1000
DEFAULT_PAGE_SIZE = 50
TOP_N = 10
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

HASHED_COLUMNS = (
    "record_id",
    "occurred_at_utc",
    "actor_id",
    "actor_email",
    "actor_role",
    "action",
    "resource_type",
    "resource_id",
    "patient_id",
    "ip_address",
    "user_agent",
    "access_method",
    "status",
    "is_break_glass",
    "break_glass_json",
    "details_json",
    "hospital_id",
    "department",
)


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """Fixed-width UTC timestamp; lexicographic order equals time order."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def normalize_bound(value: Optional[str], end: bool = False) -> Optional[str]:
    """
    Turn a user-supplied date or datetime into a comparable timestamp.

    A bare date (YYYY-MM-DD) covers the whole day: start of day for a lower
    bound, end of day for an upper bound.

    Raises:
        ValidationFailure: value is not ISO 8601
    """
    if not value:
        return None
    try:
        if len(value) == 10:
            day = date.fromisoformat(value)
            moment = datetime.combine(day, time.max if end else time.min, tzinfo=timezone.utc)
        else:
            moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
            if moment.tzinfo is None:
                moment = moment.replace(tzinfo=timezone.utc)
    except ValueError:
        raise ValidationFailure(f"Invalid date: '{value}'. Expected ISO 8601")
    return utc_timestamp(moment)


def _hash_body(columns: Mapping[str, Any]) -> Dict[str, Any]:
    body = {name: columns[name] for name in HASHED_COLUMNS}
    body["is_break_glass"] = bool(body["is_break_glass"])
    return body


def _row_to_record(row: sqlite3.Row) -> AuditRecord:
    break_glass = json.loads(row["break_glass_json"]) if row["break_glass_json"] else None
    details = json.loads(row["details_json"]) if row["details_json"] else None
    return AuditRecord(
        record_id=row["record_id"],
        timestamp=row["occurred_at_utc"],
        actor=AuditActor(id=row["actor_id"], email=row["actor_email"], role=row["actor_role"]),
        action=row["action"],
        resource_type=row["resource_type"],
        resource_id=row["resource_id"],
        patient_id=row["patient_id"],
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        access_method=row["access_method"],
        status=row["status"],
        break_glass=BreakGlassInfo(**break_glass) if break_glass else None,
        details=AuditDetails(**details) if details else None,
        hospital_id=row["hospital_id"],
        department=row["department"],
        prev_record_hash=row["prev_record_hash"],
        record_hash=row["record_hash"],
    )


class AuditTrail:
    """Single writer of the audit_logs table."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        # Serializes the read-prev-hash / insert pair within this process;
        # BEGIN IMMEDIATE covers other processes sharing the file.
        self._append_lock = threading.Lock()

    # ========================================================================
    # WRITE
    # ========================================================================

    def record(self, event: Union[AuditEvent, Mapping[str, Any]]) -> Optional[AuditRecord]:
        """
        Persist one audit record.

        Returns:
            The stored AuditRecord, or None if the event was invalid or the
            write failed. Never raises.
        """
        try:
            if not isinstance(event, AuditEvent):
                event = AuditEvent.model_validate(event)
        except ValidationError as e:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
            logger.error("Audit record rejected: invalid fields %s", fields)
            return None

        try:
            return self._append(event)
        except Exception as e:
            logger.error(
                "Audit write failed: action=%s actor=%s error=%s",
                event.action.value, event.actor.id, type(e).__name__,
            )
            return None

    def _append(self, event: AuditEvent) -> AuditRecord:
        columns: Dict[str, Any] = {
            "record_id": generate_uuid7(),
            "occurred_at_utc": utc_timestamp(event.timestamp),
            "actor_id": event.actor.id,
            "actor_email": event.actor.email,
            "actor_role": event.actor.role,
            "action": event.action.value,
            "resource_type": event.resource_type.value,
            "resource_id": event.resource_id,
            "patient_id": event.patient_id,
            "ip_address": event.ip_address,
            "user_agent": event.user_agent,
            "access_method": event.access_method.value,
            "status": event.status.value,
            "is_break_glass": event.break_glass is not None,
            "break_glass_json": (
                canonical_json(event.break_glass.model_dump(exclude_none=True))
                if event.break_glass else None
            ),
            "details_json": (
                canonical_json(event.details.model_dump(exclude_none=True))
                if event.details else None
            ),
            "hospital_id": event.hospital_id,
            "department": event.department,
        }

        with self._append_lock:
            conn = get_connection(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        "SELECT record_hash FROM audit_logs ORDER BY seq DESC LIMIT 1"
                    ).fetchone()
                    prev_hash = row["record_hash"] if row else None
                    columns["prev_record_hash"] = prev_hash
                    columns["record_hash"] = compute_record_hash(
                        prev_hash, columns["occurred_at_utc"], _hash_body(columns)
                    )

                    names = ", ".join(columns)
                    placeholders = ", ".join("?" for _ in columns)
                    conn.execute(
                        f"INSERT INTO audit_logs ({names}) VALUES ({placeholders})",
                        tuple(columns.values()),
                    )
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
            finally:
                conn.close()

        if event.break_glass is not None:
            logger.warning(
                "Break-glass access recorded: record=%s actor=%s patient=%s",
                columns["record_id"], event.actor.id, event.patient_id,
            )

        return AuditRecord(
            **event.model_dump(exclude={"timestamp"}),
            record_id=columns["record_id"],
            timestamp=columns["occurred_at_utc"],
            prev_record_hash=columns["prev_record_hash"],
            record_hash=columns["record_hash"],
        )

    # ========================================================================
    # IMMUTABILITY
    # ========================================================================

    def _refuse(self, operation: str, target: Any) -> None:
        logger.warning("Rejected audit %s attempt on %s", operation, target)
        raise AuditImmutabilityError("Audit logs cannot be modified or deleted")

    def update(self, record_id: str, changes: Mapping[str, Any]) -> None:
        self._refuse("update", record_id)

    def update_many(self, filters: Mapping[str, Any], changes: Mapping[str, Any]) -> None:
        self._refuse("update_many", sorted(filters))

    def delete(self, record_id: str) -> None:
        self._refuse("delete", record_id)

    def delete_many(self, filters: Mapping[str, Any]) -> None:
        self._refuse("delete_many", sorted(filters))

    # ========================================================================
    # READ
    # ========================================================================

    def get(self, record_id: str) -> Optional[AuditRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM audit_logs WHERE record_id = ?", (record_id,)
            ).fetchone()
        finally:
            conn.close()
        return _row_to_record(row) if row else None

    @staticmethod
    def _where(filters: AuditQuery):
        clauses: List[str] = []
        params: List[Any] = []

        simple = (
            ("actor_id", filters.actor_id),
            ("patient_id", filters.patient_id),
            ("action", filters.action.value if filters.action else None),
            ("resource_type", filters.resource_type.value if filters.resource_type else None),
            ("status", filters.status.value if filters.status else None),
        )
        for column, value in simple:
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)

        if filters.break_glass is not None:
            clauses.append("is_break_glass = ?")
            params.append(1 if filters.break_glass else 0)

        start = normalize_bound(filters.start_date)
        if start:
            clauses.append("occurred_at_utc >= ?")
            params.append(start)
        end = normalize_bound(filters.end_date, end=True)
        if end:
            clauses.append("occurred_at_utc <= ?")
            params.append(end)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def query(
        self,
        filters: Optional[AuditQuery] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        sort_order: str = "desc",
    ) -> AuditPage:
        """
        Filtered, paginated listing, newest first by default.

        Raises:
            ValidationFailure: bad page/limit/sort_order or unparseable dates
        """
        if page < 1:
            raise ValidationFailure("page must be >= 1")
        if limit < 1:
            raise ValidationFailure("limit must be >= 1")
        limit = min(limit, MAX_PAGE_SIZE)

        direction = sort_order.lower()
        if direction not in ("asc", "desc"):
            raise ValidationFailure("sort_order must be 'asc' or 'desc'")

        where, params = self._where(filters or AuditQuery())

        conn = get_connection(self.db_path)
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM audit_logs {where}", params).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT * FROM audit_logs {where}
                ORDER BY occurred_at_utc {direction.upper()}, seq {direction.upper()}
                LIMIT ? OFFSET ?
                """,
                (*params, limit, (page - 1) * limit),
            ).fetchall()
        finally:
            conn.close()

        return AuditPage(
            records=[_row_to_record(row) for row in rows],
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit) if total else 0,
        )

    def stats(self, start_date: Optional[str] = None, end_date: Optional[str] = None) -> AuditStats:
        where, params = self._where(AuditQuery(start_date=start_date, end_date=end_date))
        joiner = "AND" if where else "WHERE"

        conn = get_connection(self.db_path)
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM audit_logs {where}", params).fetchone()[0]
            break_glass = conn.execute(
                f"SELECT COUNT(*) FROM audit_logs {where} {joiner} is_break_glass = 1", params
            ).fetchone()[0]
            denied = conn.execute(
                f"SELECT COUNT(*) FROM audit_logs {where} {joiner} status = ?",
                (*params, AuditStatus.DENIED.value),
            ).fetchone()[0]
            actions = conn.execute(
                f"""
                SELECT action, COUNT(*) AS n FROM audit_logs {where}
                GROUP BY action ORDER BY n DESC, action ASC LIMIT ?
                """,
                (*params, TOP_N),
            ).fetchall()
            actors = conn.execute(
                f"""
                SELECT actor_id, MAX(actor_email) AS actor_email, COUNT(*) AS n
                FROM audit_logs {where}
                GROUP BY actor_id ORDER BY n DESC, actor_id ASC LIMIT ?
                """,
                (*params, TOP_N),
            ).fetchall()
        finally:
            conn.close()

        return AuditStats(
            total_records=total,
            break_glass_count=break_glass,
            denied_count=denied,
            top_actions=[ActionCount(action=r["action"], count=r["n"]) for r in actions],
            top_actors=[
                ActorCount(actor_id=r["actor_id"], actor_email=r["actor_email"], count=r["n"])
                for r in actors
            ],
        )

    # ========================================================================
    # INTEGRITY
    # ========================================================================

    def verify_chain(self) -> ChainVerification:
        """
        Recompute every record hash in insertion order.

        Detects rows whose content was altered and rows removed or inserted
        out of band (broken prev_record_hash linkage).
        """
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("SELECT * FROM audit_logs ORDER BY seq ASC").fetchall()
        finally:
            conn.close()

        errors: List[ChainError] = []
        expected_prev: Optional[str] = None
        for index, row in enumerate(rows):
            if row["prev_record_hash"] != expected_prev:
                errors.append(ChainError(
                    record_id=row["record_id"], index=index, error="chain_break",
                ))

            recomputed = compute_record_hash(
                row["prev_record_hash"], row["occurred_at_utc"], _hash_body(row)
            )
            if recomputed != row["record_hash"]:
                errors.append(ChainError(
                    record_id=row["record_id"], index=index, error="hash_mismatch",
                ))

            expected_prev = row["record_hash"]

        if errors:
            logger.error("Audit chain verification failed: %d error(s)", len(errors))

        return ChainVerification(valid=not errors, total_records=len(rows), errors=errors)
