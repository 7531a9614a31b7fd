"""access_audit_baseline

Revision ID: b7e41c9a2d10
Revises:
Create Date: 2026-10-18 09:12:37.114203

Baseline schema for PHIGuard.

Key design rules that MUST NOT change:
  - audit_logs is append-only: UPDATE and DELETE are rejected by triggers
  - record_hash is computed over: prev_record_hash || occurred_at_utc ||
    canonical_json(body)  (see phiguard/app/db/ledger_hashing.py)
  - occurred_at_utc is fixed-width ISO 8601 UTC text so lexicographic order
    equals chronological order
  - PHI columns on patients hold envelopes, never plaintext
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "b7e41c9a2d10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


SQLITE_IMMUTABILITY_TRIGGERS = [
    """
    CREATE TRIGGER audit_logs_reject_update
    BEFORE UPDATE ON audit_logs
    BEGIN
        SELECT RAISE(ABORT, 'audit logs cannot be modified');
    END
    """,
    """
    CREATE TRIGGER audit_logs_reject_delete
    BEFORE DELETE ON audit_logs
    BEGIN
        SELECT RAISE(ABORT, 'audit logs cannot be deleted');
    END
    """,
]

POSTGRES_IMMUTABILITY_TRIGGERS = [
    """
    CREATE OR REPLACE FUNCTION audit_logs_reject_mutation() RETURNS trigger AS $$
    BEGIN
        RAISE EXCEPTION 'audit logs cannot be modified or deleted';
    END;
    $$ LANGUAGE plpgsql
    """,
    """
    CREATE TRIGGER audit_logs_reject_mutation
    BEFORE UPDATE OR DELETE ON audit_logs
    FOR EACH ROW EXECUTE FUNCTION audit_logs_reject_mutation()
    """,
]


def upgrade() -> None:
    """Create patients and audit_logs."""

    # ------------------------------------------------------------------ #
    # 1. PATIENT DIRECTORY (lookup collaborator for the access gates)     #
    # ------------------------------------------------------------------ #

    op.create_table(
        "patients",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("patient_code", sa.Text, nullable=False, unique=True),
        sa.Column("hospital_id", sa.Text, nullable=False),
        sa.Column("department", sa.Text, nullable=True),
        # Encrypted envelopes (iv:tag:ciphertext)
        sa.Column("first_name", sa.Text, nullable=False),
        sa.Column("last_name", sa.Text, nullable=False),
        sa.Column("date_of_birth", sa.Text, nullable=False),
        sa.Column("ssn", sa.Text, nullable=True),
        sa.Column("phone", sa.Text, nullable=True),
        sa.Column("email", sa.Text, nullable=True),
        sa.Column("search_hash", sa.Text, nullable=False),
        # Consent flags
        sa.Column("consent_data_sharing", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("consent_research", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("consent_emergency_access", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at_utc", sa.Text, nullable=False),
        sa.Column("updated_at_utc", sa.Text, nullable=False),
    )
    op.create_index("idx_patients_hospital", "patients", ["hospital_id"])
    op.create_index("idx_patients_search_hash", "patients", ["search_hash"])

    # ------------------------------------------------------------------ #
    # 2. AUDIT LEDGER (append-only compliance record)                     #
    #                                                                     #
    # WARNING: any application-layer UPDATE or DELETE on this table is a  #
    # violation. details_json / break_glass_json stay TEXT so the hash     #
    # canonicalization is stable across SQLite and Postgres.               #
    # ------------------------------------------------------------------ #

    op.create_table(
        "audit_logs",
        sa.Column("seq", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("record_id", sa.Text, nullable=False, unique=True),
        sa.Column("occurred_at_utc", sa.Text, nullable=False),
        sa.Column("actor_id", sa.Text, nullable=False),
        sa.Column("actor_email", sa.Text, nullable=False),
        sa.Column("actor_role", sa.Text, nullable=False),
        sa.Column("action", sa.Text, nullable=False),
        sa.Column("resource_type", sa.Text, nullable=False),
        sa.Column("resource_id", sa.Text, nullable=True),
        sa.Column("patient_id", sa.Text, nullable=True),
        sa.Column("ip_address", sa.Text, nullable=False),
        sa.Column("user_agent", sa.Text, nullable=True),
        sa.Column("access_method", sa.Text, nullable=False, server_default="normal"),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("is_break_glass", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("break_glass_json", sa.Text, nullable=True),
        sa.Column("details_json", sa.Text, nullable=True),
        sa.Column("hospital_id", sa.Text, nullable=True),
        sa.Column("department", sa.Text, nullable=True),
        sa.Column("prev_record_hash", sa.Text, nullable=True),
        sa.Column("record_hash", sa.Text, nullable=False),
    )
    op.create_index("idx_audit_logs_occurred", "audit_logs", ["occurred_at_utc"])
    op.create_index("idx_audit_logs_actor", "audit_logs", ["actor_id", "occurred_at_utc"])
    op.create_index("idx_audit_logs_patient", "audit_logs", ["patient_id", "occurred_at_utc"])
    op.create_index("idx_audit_logs_action", "audit_logs", ["action", "occurred_at_utc"])
    op.create_index("idx_audit_logs_resource", "audit_logs", ["resource_type", "resource_id"])
    op.create_index("idx_audit_logs_break_glass", "audit_logs", ["is_break_glass"])
    op.create_index("idx_audit_logs_status", "audit_logs", ["status"])
    op.create_index("idx_audit_logs_hospital", "audit_logs", ["hospital_id", "occurred_at_utc"])

    dialect = op.get_bind().dialect.name
    if dialect == "sqlite":
        for statement in SQLITE_IMMUTABILITY_TRIGGERS:
            op.execute(statement)
    elif dialect == "postgresql":
        for statement in POSTGRES_IMMUTABILITY_TRIGGERS:
            op.execute(statement)


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS audit_logs_reject_mutation ON audit_logs")
        op.execute("DROP FUNCTION IF EXISTS audit_logs_reject_mutation()")
    op.drop_table("audit_logs")
    op.drop_table("patients")
