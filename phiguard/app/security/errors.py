"""
Error taxonomy for the access-control and accountability core.

Each error carries an HTTP status and a stable, PHI-free error code so the
exception handlers in main.py can translate it without inspecting messages.
"""

from typing import Optional


class PHIGuardError(Exception):
    """Base class for all core errors."""

    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class AuthorizationDenied(PHIGuardError):
    """Expected control-flow outcome of a failed gate. Always audited."""

    status_code = 403
    error_code = "access_denied"

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or reason)
        self.reason = reason

    def to_detail(self) -> dict:
        return {"error": self.error_code, "message": self.message, "reason": self.reason}


class ValidationFailure(PHIGuardError):
    """Malformed input supplied by the caller."""

    status_code = 400
    error_code = "validation_failure"


class BreakGlassRejected(ValidationFailure):
    """Emergency override requested without an adequate justification."""

    error_code = "break_glass_rejected"


class EncryptionError(PHIGuardError):
    """Field encryption failed."""

    error_code = "encryption_error"


class EnvelopeFormatError(ValidationFailure, EncryptionError):
    """Stored envelope is not a well-formed iv:tag:ciphertext triple."""

    status_code = 500
    error_code = "envelope_format_error"


class IntegrityFailure(PHIGuardError):
    """Authenticated data failed verification."""

    error_code = "integrity_failure"


class EnvelopeIntegrityError(IntegrityFailure, EncryptionError):
    """Authentication tag mismatch on decrypt (tampered or wrong key)."""

    error_code = "envelope_integrity_error"


class AuditPersistenceFailure(PHIGuardError):
    """An audit record that must exist could not be written."""

    status_code = 503
    error_code = "audit_unavailable"


class AuditImmutabilityError(PHIGuardError):
    """Attempted update or delete of an audit record."""

    status_code = 409
    error_code = "audit_immutable"


class ResourceNotFound(PHIGuardError):
    """Identity or resource lookup miss. Distinct from a denial."""

    status_code = 404
    error_code = "not_found"
