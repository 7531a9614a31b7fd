#!/usr/bin/env python3
"""
PHIGuard Audit Ledger Integrity Verifier

Recomputes every audit record hash and checks the prev_record_hash linkage,
offline, against a SQLite database file.

Usage:
    python tools/verify_audit_chain.py --db PATH [--json] [--verbose]

Exit codes:
    0  PASS  - ledger is intact
    1  FAIL  - tampering or chain break detected
    2  ERROR - database missing or unreadable
"""

import argparse
import json
import os
import sqlite3
import sys
from pathlib import Path
from typing import List, Optional

# Allow running as `python tools/verify_audit_chain.py` without setting
# PYTHONPATH manually: insert the repo root so phiguard imports resolve.
_REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)

from phiguard.app.db.ledger_hashing import HASH_POLICY, ORDERING  # noqa: E402
from phiguard.app.services.audit_trail import AuditTrail  # noqa: E402


def run(db_path: Path) -> dict:
    if not db_path.exists():
        return {"status": "ERROR", "error": f"Database not found: {db_path}"}

    try:
        result = AuditTrail(db_path).verify_chain()
    except sqlite3.Error as e:
        return {"status": "ERROR", "error": f"Query failed: {type(e).__name__}"}

    report = result.model_dump()
    report.update({
        "status": "PASS" if result.valid else "FAIL",
        "hash_policy": HASH_POLICY,
        "ordering": ORDERING,
    })
    return report


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Verify the PHIGuard audit hash chain")
    parser.add_argument("--db", required=True, help="Path to the SQLite database")
    parser.add_argument("--json", action="store_true", help="Indented JSON output")
    parser.add_argument("--verbose", action="store_true", help="List each error on stderr")
    args = parser.parse_args(argv)

    report = run(Path(args.db))

    if args.verbose:
        for error in report.get("errors", []):
            print(f"  [{error['index']}] {error['record_id']}: {error['error']}", file=sys.stderr)

    print(json.dumps(report, indent=2 if args.json else None, sort_keys=True))

    return {"PASS": 0, "FAIL": 1}.get(report["status"], 2)


if __name__ == "__main__":
    sys.exit(main())
