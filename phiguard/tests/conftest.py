"""
Pytest configuration for PHIGuard tests.

The environment variables are set at module level (not in pytest_configure)
because they need to be available before any modules are imported during
pytest's collection phase.

Each test gets its own SQLite file under tmp_path, migrated through the same
Alembic path the application uses at startup.
"""

import os

# Set ENV=TEST to disable rate limiting BEFORE any modules are imported
os.environ["ENV"] = "TEST"
os.environ["DISABLE_RATE_LIMITS"] = "1"
os.environ.setdefault("PHIGUARD_DB_PATH", "/tmp/phiguard-test-default.db")

import pytest
from fastapi.testclient import TestClient

from phiguard.app.config import Settings
from phiguard.app.db.migrate import ensure_schema
from phiguard.app.main import create_app
from phiguard.app.services.container import build_services
from phiguard.tests.test_helpers import HOSPITAL_A, HOSPITAL_B


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=tmp_path / "phiguard.db",
        database_url=None,
        master_key="test-master-key",
        key_salt="test-salt",
        environment="TEST",
    )


@pytest.fixture
def services(settings):
    """Migrated database plus the full service graph."""
    ensure_schema(settings.db_path)
    return build_services(settings)


@pytest.fixture
def audit_trail(services):
    return services.audit_trail


@pytest.fixture
def patients(services):
    return services.patients


@pytest.fixture
def app(settings, services):
    return create_app(settings=settings, services=services)


@pytest.fixture
def client(app):
    """
    TestClient without the lifespan context: the schema is already migrated
    and logging is left to pytest's caplog.
    """
    return TestClient(app)


@pytest.fixture
def patient_a(patients):
    """Active patient in HOSPITAL_A. Default consent (research not granted)."""
    return patients.create(
        hospital_id=HOSPITAL_A,
        department="cardiology",
        fields={
            "first_name": "Jane",
            "last_name": "Doe",
            "date_of_birth": "1980-04-12",
            "ssn": "123-45-6789",
            "phone": "555-0100",
            "email": "jane.doe@example.com",
        },
    )


@pytest.fixture
def patient_b(patients):
    """Active patient in HOSPITAL_B who consented to research."""
    return patients.create(
        hospital_id=HOSPITAL_B,
        department="oncology",
        fields={
            "first_name": "John",
            "last_name": "Roe",
            "date_of_birth": "1975-09-30",
        },
        consent={"research": True},
    )
