"""
Pydantic models and policy types for PHIGuard.
"""

from phiguard.app.models.access import AccessDecision, AccessPolicy, Role
from phiguard.app.models.audit import AuditAction, AuditEvent, AuditRecord, AuditStatus

__all__ = [
    "AccessDecision",
    "AccessPolicy",
    "AuditAction",
    "AuditEvent",
    "AuditRecord",
    "AuditStatus",
    "Role",
]
