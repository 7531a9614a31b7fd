"""
Field-level encryption for PII/PHI at rest.

Algorithm: AES-256-GCM (authenticated encryption).
Key: derived once from the master secret with scrypt (n=2**14, r=8, p=1),
held in process memory for the lifetime of the service.

Envelope format (one encrypted value, as stored):

    <hex iv>:<hex authTag>:<hex ciphertext>

Every call to encrypt() draws a fresh random IV, so the same plaintext never
produces the same envelope twice. The flip side is that encrypted columns
cannot be searched; use hash() to build a deterministic search token.
"""

import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from phiguard.app.security.errors import (
    EncryptionError,
    EnvelopeFormatError,
    EnvelopeIntegrityError,
)
from phiguard.app.services.hashing import sha256_hex

logger = logging.getLogger(__name__)

ENVELOPE_DELIMITER = ":"
KEY_LENGTH = 32  # AES-256
IV_LENGTH = 12  # 96-bit GCM nonce
TAG_LENGTH = 16

SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1


def derive_key(master_secret: str, salt: str) -> bytes:
    """Derive the 256-bit field key from the master secret (memory-hard KDF)."""
    if not master_secret:
        raise EncryptionError("Master secret is required for key derivation")
    kdf = Scrypt(
        salt=salt.encode("utf-8"),
        length=KEY_LENGTH,
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
    )
    return kdf.derive(master_secret.encode("utf-8"))


class EncryptionService:
    """
    Encrypts, decrypts and hashes individual scalar field values.

    Construct once per process and share it; the derived key is read-only
    so concurrent use needs no locking.
    """

    def __init__(self, master_secret: str, salt: str):
        self._aead = AESGCM(derive_key(master_secret, salt))

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """
        Encrypt one value into an envelope.

        Empty values (None or "") are returned unchanged so optional fields
        stay empty rather than becoming encrypted empty strings.
        """
        if not plaintext:
            return plaintext

        iv = os.urandom(IV_LENGTH)
        try:
            sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        except (TypeError, ValueError, OverflowError) as e:
            logger.error("Field encryption failed: %s", type(e).__name__)
            raise EncryptionError("Encryption failed") from e

        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return ENVELOPE_DELIMITER.join((iv.hex(), tag.hex(), ciphertext.hex()))

    def decrypt(self, envelope: Optional[str]) -> Optional[str]:
        """
        Decrypt an envelope produced by encrypt().

        Raises:
            EnvelopeFormatError: envelope is not three hex components
            EnvelopeIntegrityError: authentication tag does not verify
        """
        if not envelope:
            return envelope

        iv, tag, ciphertext = self._parse_envelope(envelope)
        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            logger.error("Field decryption failed: authentication tag mismatch")
            raise EnvelopeIntegrityError("Encrypted value failed integrity verification") from e
        except ValueError as e:
            # e.g. IV length outside what GCM accepts
            raise EnvelopeFormatError("Invalid encrypted data format") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EnvelopeIntegrityError("Decrypted value is not valid UTF-8") from e

    def hash(self, value: str) -> str:
        """One-way SHA-256 digest for search/comparison tokens. Not reversible."""
        return sha256_hex(value.encode("utf-8"))

    @staticmethod
    def is_envelope(value: Optional[str]) -> bool:
        """Cheap shape check used by the data layer; does not verify the tag."""
        if not value:
            return False
        parts = value.split(ENVELOPE_DELIMITER)
        if len(parts) != 3:
            return False
        try:
            for part in parts:
                bytes.fromhex(part)
        except ValueError:
            return False
        return True

    @staticmethod
    def _parse_envelope(envelope: str):
        parts = envelope.split(ENVELOPE_DELIMITER)
        if len(parts) != 3:
            raise EnvelopeFormatError("Invalid encrypted data format")

        try:
            iv, tag, ciphertext = (binascii.unhexlify(part) for part in parts)
        except (binascii.Error, ValueError) as e:
            raise EnvelopeFormatError("Invalid encrypted data format") from e

        if not iv or len(tag) != TAG_LENGTH:
            raise EnvelopeFormatError("Invalid encrypted data format")

        return iv, tag, ciphertext
