"""
Process-scoped service wiring.

Everything here is built once by build_services() and attached to
``app.state.services``. Request handlers reach services through the
``get_services`` dependency; nothing is a module-level singleton.
"""

from dataclasses import dataclass

from fastapi import Request

from phiguard.app.config import Settings
from phiguard.app.db.patient_store import PatientStore
from phiguard.app.services.access_engine import AccessDecisionEngine
from phiguard.app.services.audit_trail import AuditTrail
from phiguard.app.services.break_glass import BreakGlassProtocol
from phiguard.app.services.encryption import EncryptionService


@dataclass(frozen=True)
class Services:
    settings: Settings
    encryption: EncryptionService
    audit_trail: AuditTrail
    patients: PatientStore
    engine: AccessDecisionEngine
    break_glass: BreakGlassProtocol


def build_services(settings: Settings) -> Services:
    """Derive the field key and connect the collaborators. Runs once at startup."""
    encryption = EncryptionService(settings.master_key, settings.key_salt)
    audit_trail = AuditTrail(settings.db_path)
    patients = PatientStore(
        settings.db_path,
        encryption,
        decrypt_failure_policy=settings.decrypt_failure_policy,
    )
    return Services(
        settings=settings,
        encryption=encryption,
        audit_trail=audit_trail,
        patients=patients,
        engine=AccessDecisionEngine(patients, audit_trail),
        break_glass=BreakGlassProtocol(patients, audit_trail),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
