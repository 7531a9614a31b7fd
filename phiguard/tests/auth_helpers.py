"""
Authorization header helpers for API tests.
"""

from typing import List, Optional

from phiguard.tests.test_helpers import generate_test_jwt


def create_jwt_headers(
    role: str,
    sub: Optional[str] = None,
    hospital_id: Optional[str] = "hospital-a",
    department: Optional[str] = "cardiology",
    access_level: int = 2,
    assigned_patients: Optional[List[str]] = None,
) -> dict:
    """
    Create JWT authentication headers for testing.

    Returns:
        Dictionary with Authorization header
    """
    token = generate_test_jwt(
        sub=sub or f"test-{role}",
        role=role,
        hospital_id=hospital_id,
        department=department,
        access_level=access_level,
        assigned_patients=assigned_patients,
    )
    return {"Authorization": f"Bearer {token}"}


def create_admin_headers(sub: str = "test-admin", hospital_id: str = "hospital-a") -> dict:
    """Admin: passes every relationship gate."""
    return create_jwt_headers("admin", sub=sub, hospital_id=hospital_id, access_level=5)


def create_doctor_headers(
    assigned_patients: Optional[List[str]] = None,
    sub: str = "test-doctor",
    hospital_id: str = "hospital-a",
    access_level: int = 3,
) -> dict:
    """Doctor: assignment-scoped."""
    return create_jwt_headers(
        "doctor",
        sub=sub,
        hospital_id=hospital_id,
        access_level=access_level,
        assigned_patients=assigned_patients,
    )


def create_nurse_headers(hospital_id: str = "hospital-a", sub: str = "test-nurse") -> dict:
    """Nurse: hospital-scoped."""
    return create_jwt_headers("nurse", sub=sub, hospital_id=hospital_id, department="icu")


def create_staff_headers(
    assigned_patients: Optional[List[str]] = None,
    sub: str = "test-staff",
) -> dict:
    """Staff: not part of the care team for patient routes."""
    return create_jwt_headers(
        "staff", sub=sub, department="billing", access_level=1,
        assigned_patients=assigned_patients,
    )
