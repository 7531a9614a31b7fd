"""
Request/response models for the patient record routes.

Write bodies may carry the break-glass opt-in (``emergency_access`` +
``justification``); those two fields are consumed by the access guard and
never stored on the patient.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"


class BreakGlassFields(BaseModel):
    """Optional emergency override opt-in."""
    emergency_access: bool = Field(default=False, description="Request break-glass override")
    justification: Optional[str] = Field(
        default=None, description="Why emergency access is needed (min 20 characters)"
    )


class ConsentFlags(BaseModel):
    data_sharing: bool = Field(default=False, description="Share data with third parties")
    research: bool = Field(default=False, description="Use de-identified data for research")
    emergency_access: bool = Field(default=True, description="Allow emergency access")


class PatientCreateRequest(BaseModel):
    """Body for POST /v1/patients."""
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    date_of_birth: str = Field(..., pattern=DATE_PATTERN, description="YYYY-MM-DD")
    ssn: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    department: Optional[str] = None
    hospital_id: Optional[str] = Field(
        default=None, description="Admin only; other roles create in their own hospital"
    )
    consent: Optional[ConsentFlags] = None


class PatientUpdateRequest(BreakGlassFields):
    """Body for PUT /v1/patients/{patient_ref}. Only supplied fields change."""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[str] = Field(default=None, pattern=DATE_PATTERN)
    ssn: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    department: Optional[str] = None

    def changes(self) -> Dict[str, Optional[str]]:
        return self.model_dump(exclude_unset=True, exclude={"emergency_access", "justification"})


class ConsentUpdateRequest(BreakGlassFields):
    """Body for PUT /v1/patients/{patient_ref}/consent. Only supplied flags change."""
    data_sharing: Optional[bool] = None
    research: Optional[bool] = None
    consent_emergency_access: Optional[bool] = Field(
        default=None, description="Patient's emergency-access consent flag"
    )

    def changes(self) -> Dict[str, bool]:
        flags = {
            "data_sharing": self.data_sharing,
            "research": self.research,
            "emergency_access": self.consent_emergency_access,
        }
        return {name: value for name, value in flags.items() if value is not None}


class BreakGlassAccessRequest(BreakGlassFields):
    """Body for POST /v1/patients/{patient_ref}/break-glass."""


class PatientResponse(BaseModel):
    """Decrypted patient view. Fields that failed to decrypt under the redact policy are null."""
    id: str
    patient_code: str
    hospital_id: str
    department: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    ssn: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    consent: Dict[str, bool]
    is_active: bool
    created_at_utc: str
    updated_at_utc: str
    access_method: str = Field(default="normal", description="normal or emergency")
    break_glass_record_id: Optional[str] = None


class ChangeResponse(BaseModel):
    """Result of an update/consent/deactivate call."""
    id: str
    changes: List[str] = Field(default_factory=list, description="Names of changed fields")


class ResearchExportResponse(BaseModel):
    """De-identified research extract."""
    subject_token: str
    hospital_id: str
    department: Optional[str] = None
    birth_year: Optional[str] = None
