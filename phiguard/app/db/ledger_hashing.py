"""
Single-source canonical hashing for the audit ledger.

All record hashes MUST be computed here. The writer (AuditTrail.record) and
the verifier (AuditTrail.verify_chain) both import from this module so the
canonical form cannot drift between them.

Hash policy
-----------
  input  = (prev_record_hash or '') + occurred_at_utc + canonical_json(body)
  digest = SHA-256(input.encode("utf-8")).hexdigest()

``body`` is every persisted column except record_hash and prev_record_hash.
Canonical JSON: sorted keys, no whitespace, UTF-8, NaN/Infinity rejected.

Ordering used by verifier
-------------------------
  ORDER BY seq ASC
"""

import json
from typing import Any, Dict, Optional

from phiguard.app.services.hashing import sha256_hex

HASH_POLICY = "SHA-256(prev_record_hash||occurred_at_utc||canonical_json(body))"
ORDERING = "seq ASC"


def canonical_json(obj: Any) -> str:
    """Deterministic JSON text for hashing and storage."""
    return json.dumps(
        obj,
        separators=(",", ":"),
        ensure_ascii=False,
        sort_keys=True,
        allow_nan=False,
        default=str,
    )


def compute_record_hash(
    prev_record_hash: Optional[str],
    occurred_at_utc: str,
    body: Dict[str, Any],
) -> str:
    """
    Compute the canonical hash for one audit record.

    This is the SINGLE authoritative implementation used by both the
    ledger writer and the integrity verifier.
    """
    hash_input = f"{prev_record_hash or ''}{occurred_at_utc}{canonical_json(body)}"
    return sha256_hex(hash_input.encode("utf-8"))
