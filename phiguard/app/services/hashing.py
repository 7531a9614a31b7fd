"""
Hashing utilities.

SHA-256 is used for two things in PHIGuard:
- one-way search tokens over PHI (EncryptionService.hash)
- the audit ledger hash chain (db/ledger_hashing.py)
"""

import hashlib


def sha256_hex(data: bytes) -> str:
    """
    Compute SHA-256 hash and return as lowercase hexadecimal string.

    Example:
        >>> sha256_hex(b"hello")
        '2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824'
    """
    return hashlib.sha256(data).hexdigest()
