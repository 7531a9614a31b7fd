"""
Patient directory backed by the ``patients`` table.

This is the lookup collaborator for the access gates: it resolves a patient
reference (canonical UUID or human-facing ``P-...`` code) to the canonical
record with its hospital affiliation and consent flags. It also carries the
thin create/read/update operations the HTTP surface wraps.

PHI columns are stored as encryption envelopes. Plaintext exists only in
the dicts returned by ``read()``/``create()``; nothing here logs field values.
"""

import logging
import os
import re
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from phiguard.app.db.migrate import get_connection
from phiguard.app.models.access import ConsentFlag, PatientSnapshot
from phiguard.app.security.errors import EncryptionError, ResourceNotFound, ValidationFailure
from phiguard.app.services.encryption import EncryptionService
from phiguard.app.services.uuid7 import generate_uuid7

logger = logging.getLogger(__name__)

PHI_FIELDS = ("first_name", "last_name", "date_of_birth", "ssn", "phone", "email")
REQUIRED_PHI_FIELDS = ("first_name", "last_name", "date_of_birth")

CONSENT_COLUMNS = {
    ConsentFlag.DATA_SHARING: "consent_data_sharing",
    ConsentFlag.RESEARCH: "consent_research",
    ConsentFlag.EMERGENCY_ACCESS: "consent_emergency_access",
}

DEFAULT_CONSENT = {
    ConsentFlag.DATA_SHARING: False,
    ConsentFlag.RESEARCH: False,
    ConsentFlag.EMERGENCY_ACCESS: True,
}

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def generate_patient_code() -> str:
    """Human-facing secondary id: P-<epoch ms>-<8 hex>."""
    return f"P-{int(time.time() * 1000)}-{os.urandom(4).hex().upper()}"


def _consent_from_row(row: sqlite3.Row) -> Dict[str, bool]:
    return {flag.value: bool(row[column]) for flag, column in CONSENT_COLUMNS.items()}


class PatientStore:
    """
    Record directory for patients.

    Args:
        db_path: SQLite database file
        encryption: shared EncryptionService
        decrypt_failure_policy: "raise" propagates EncryptionError on read;
            "redact" returns None for the failed field and logs at ERROR.
            Ciphertext is never handed back as if it were plaintext.
    """

    def __init__(
        self,
        db_path: Path,
        encryption: EncryptionService,
        decrypt_failure_policy: str = "raise",
    ):
        self.db_path = db_path
        self.encryption = encryption
        self.decrypt_failure_policy = decrypt_failure_policy

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _fetch(self, ref: str, include_inactive: bool = False) -> sqlite3.Row:
        if UUID_PATTERN.match(ref):
            sql, param = "SELECT * FROM patients WHERE id = ?", ref.lower()
        else:
            sql, param = "SELECT * FROM patients WHERE patient_code = ?", ref

        conn = get_connection(self.db_path)
        try:
            row = conn.execute(sql, (param,)).fetchone()
        finally:
            conn.close()

        if row is None or (not include_inactive and not row["is_active"]):
            raise ResourceNotFound("Patient not found")
        return row

    def resolve(self, ref: str) -> PatientSnapshot:
        """
        Resolve a canonical id or secondary code to a PatientSnapshot.

        Raises:
            ResourceNotFound: no active patient matches ``ref``
        """
        row = self._fetch(ref)
        return PatientSnapshot(
            id=row["id"],
            patient_code=row["patient_code"],
            hospital_id=row["hospital_id"],
            consent=_consent_from_row(row),
            is_active=bool(row["is_active"]),
        )

    def stored_state(self, patient_id: str) -> Dict[str, Any]:
        """
        The row exactly as stored (PHI still enveloped).

        Used as the before-state of UPDATE/DELETE audit records so the
        ledger never receives plaintext PHI.
        """
        row = self._fetch(patient_id, include_inactive=True)
        return {key: row[key] for key in row.keys()}

    def read(self, ref: str) -> Dict[str, Any]:
        """Decrypted view of one active patient."""
        return self._to_view(self._fetch(ref))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        hospital_id: str,
        fields: Mapping[str, Optional[str]],
        department: Optional[str] = None,
        consent: Optional[Mapping[str, bool]] = None,
    ) -> Dict[str, Any]:
        missing = [name for name in REQUIRED_PHI_FIELDS if not fields.get(name)]
        if missing:
            raise ValidationFailure(f"Missing required fields: {', '.join(missing)}")

        flags = {flag: DEFAULT_CONSENT[flag] for flag in ConsentFlag}
        for name, value in (consent or {}).items():
            flags[ConsentFlag(name)] = bool(value)

        patient_id = generate_uuid7()
        now = _utc_now()
        search_hash = self.encryption.hash(
            f"{fields['first_name']}{fields['last_name']}{fields['date_of_birth']}"
        )

        columns = {
            "id": patient_id,
            "patient_code": generate_patient_code(),
            "hospital_id": hospital_id,
            "department": department,
            "search_hash": search_hash,
            "is_active": True,
            "created_at_utc": now,
            "updated_at_utc": now,
        }
        for name in PHI_FIELDS:
            columns[name] = self.encryption.encrypt(fields.get(name))
        for flag, column in CONSENT_COLUMNS.items():
            columns[column] = flags[flag]

        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT INTO patients ({names}) VALUES ({placeholders})",
                tuple(columns.values()),
            )
        finally:
            conn.close()

        logger.info("Patient created: id=%s hospital=%s", patient_id, hospital_id)
        return self.read(patient_id)

    def update(self, patient_id: str, changes: Mapping[str, Optional[str]]) -> List[str]:
        """
        Re-encrypt and store the supplied PHI fields.

        Returns:
            Names of the fields that were written (never their values)
        """
        unknown = sorted(set(changes) - set(PHI_FIELDS) - {"department"})
        if unknown:
            raise ValidationFailure(f"Unknown fields: {', '.join(unknown)}")

        current = self._fetch(patient_id)
        assignments: Dict[str, Any] = {}
        for name, value in changes.items():
            if name == "department":
                assignments[name] = value
            else:
                if name in REQUIRED_PHI_FIELDS and not value:
                    raise ValidationFailure(f"Field '{name}' cannot be empty")
                assignments[name] = self.encryption.encrypt(value)

        if not assignments:
            return []

        plain = {
            name: changes.get(name) if name in changes else self._decrypt_field(current, name)
            for name in REQUIRED_PHI_FIELDS
        }
        if any(name in changes for name in REQUIRED_PHI_FIELDS) and all(plain.values()):
            assignments["search_hash"] = self.encryption.hash(
                f"{plain['first_name']}{plain['last_name']}{plain['date_of_birth']}"
            )

        self._write(current["id"], assignments)
        return sorted(changes)

    def update_consent(self, patient_id: str, consent: Mapping[str, bool]) -> List[str]:
        current = self._fetch(patient_id)
        assignments = {
            CONSENT_COLUMNS[ConsentFlag(name)]: bool(value) for name, value in consent.items()
        }
        if not assignments:
            return []
        self._write(current["id"], assignments)
        return sorted(f"consent.{ConsentFlag(name).value}" for name in consent)

    def deactivate(self, patient_id: str) -> None:
        """Soft delete. The row stays so historical audit records still resolve."""
        current = self._fetch(patient_id)
        self._write(current["id"], {"is_active": False})
        logger.info("Patient deactivated: id=%s", current["id"])

    def research_extract(self, patient_id: str) -> Dict[str, Any]:
        """De-identified extract: no direct identifiers, birth year only."""
        row = self._fetch(patient_id)
        date_of_birth = self._decrypt_field(row, "date_of_birth")
        return {
            "subject_token": self.encryption.hash(row["id"]),
            "hospital_id": row["hospital_id"],
            "department": row["department"],
            "birth_year": date_of_birth[:4] if date_of_birth else None,
        }

    def _write(self, patient_id: str, assignments: Mapping[str, Any]) -> None:
        values = dict(assignments)
        values["updated_at_utc"] = _utc_now()
        set_clause = ", ".join(f"{column} = ?" for column in values)

        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"UPDATE patients SET {set_clause} WHERE id = ?",
                (*values.values(), patient_id),
            )
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Decryption
    # ------------------------------------------------------------------

    def _decrypt_field(self, row: sqlite3.Row, name: str) -> Optional[str]:
        try:
            return self.encryption.decrypt(row[name])
        except EncryptionError as e:
            if self.decrypt_failure_policy == "redact":
                logger.error(
                    "Decryption failed for patient=%s field=%s (%s); value redacted",
                    row["id"], name, e.error_code,
                )
                return None
            raise

    def _to_view(self, row: sqlite3.Row) -> Dict[str, Any]:
        view = {
            "id": row["id"],
            "patient_code": row["patient_code"],
            "hospital_id": row["hospital_id"],
            "department": row["department"],
            "consent": _consent_from_row(row),
            "is_active": bool(row["is_active"]),
            "created_at_utc": row["created_at_utc"],
            "updated_at_utc": row["updated_at_utc"],
        }
        for name in PHI_FIELDS:
            view[name] = self._decrypt_field(row, name)
        return view
