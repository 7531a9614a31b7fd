"""
Audit ledger models.

An AuditRecord is an immutable fact about one access/action event. Records
are created once, at the end of the request they describe (or immediately,
for denials and break-glass activations), and are never updated or deleted.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# ENUMERATIONS
# ============================================================================


class AuditAction(str, Enum):
    """Enumerated verbs recorded in the ledger."""
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    LOGIN_FAILED = "LOGIN_FAILED"
    VIEW_EHR = "VIEW_EHR"
    CREATE_EHR = "CREATE_EHR"
    UPDATE_EHR = "UPDATE_EHR"
    DELETE_EHR = "DELETE_EHR"
    VIEW_PATIENT = "VIEW_PATIENT"
    CREATE_PATIENT = "CREATE_PATIENT"
    UPDATE_PATIENT = "UPDATE_PATIENT"
    DELETE_PATIENT = "DELETE_PATIENT"
    CREATE_USER = "CREATE_USER"
    UPDATE_USER = "UPDATE_USER"
    DELETE_USER = "DELETE_USER"
    UNLOCK_USER = "UNLOCK_USER"
    BREAK_GLASS_ACCESS = "BREAK_GLASS_ACCESS"
    EXPORT_DATA = "EXPORT_DATA"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"
    ROLE_CHANGE = "ROLE_CHANGE"
    ACCESS_DENIED = "ACCESS_DENIED"

    @property
    def is_mutation(self) -> bool:
        """UPDATE/DELETE-class actions carry a before-state diff."""
        return self.value.startswith(("UPDATE_", "DELETE_"))


class ResourceType(str, Enum):
    """Kinds of protected resources."""
    EHR = "EHR"
    PATIENT = "Patient"
    USER = "User"
    SYSTEM = "System"
    REPORT = "Report"

    @property
    def is_patient_scoped(self) -> bool:
        return self in (ResourceType.PATIENT, ResourceType.EHR)


class AccessMethod(str, Enum):
    """How the resource was reached."""
    NORMAL = "normal"
    EMERGENCY = "emergency"


class AuditStatus(str, Enum):
    """Outcome of the recorded action."""
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    PARTIAL = "PARTIAL"
    DENIED = "DENIED"

    @classmethod
    def from_status_code(cls, status_code: int) -> "AuditStatus":
        """2xx -> SUCCESS, 4xx -> DENIED, anything else -> FAILURE."""
        if 200 <= status_code < 300:
            return cls.SUCCESS
        if 400 <= status_code < 500:
            return cls.DENIED
        return cls.FAILURE


# ============================================================================
# RECORD STRUCTURE
# ============================================================================


class AuditActor(BaseModel):
    """Who performed the action."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Identity identifier")
    email: str = Field(..., min_length=1, description="Display email")
    role: str = Field(..., min_length=1, description="Role at the time of the action")


class BreakGlassInfo(BaseModel):
    """Emergency override sub-record."""
    model_config = ConfigDict(frozen=True)

    justification: str = Field(..., description="Free-text justification supplied by the caller")
    approved_by: Optional[str] = Field(None, description="Approver identity (if any)")


class AuditDetails(BaseModel):
    """Structured detail payload."""
    model_config = ConfigDict(frozen=True, extra="allow")

    before_state: Optional[Dict[str, Any]] = Field(None, description="Stored state before a mutation")
    changes: Optional[List[str]] = Field(None, description="Names of changed fields")
    error_message: Optional[str] = Field(None, description="Error text for FAILURE outcomes")
    denial_reason: Optional[str] = Field(None, description="Why access was denied")
    requested_path: Optional[str] = Field(None, description="Original request path")


class AuditEvent(BaseModel):
    """
    Input to AuditTrail.record().

    The trail assigns the record id and the chain hashes. The server
    timestamp is used when the caller supplies none; naive datetimes are UTC.
    """
    timestamp: Optional[datetime] = Field(None, description="When the event occurred")
    actor: AuditActor
    action: AuditAction
    resource_type: ResourceType
    resource_id: Optional[str] = None
    patient_id: Optional[str] = None
    ip_address: str = Field(..., min_length=1, description="Origin network address")
    user_agent: Optional[str] = None
    access_method: AccessMethod = AccessMethod.NORMAL
    status: AuditStatus
    break_glass: Optional[BreakGlassInfo] = None
    details: Optional[AuditDetails] = None
    hospital_id: Optional[str] = None
    department: Optional[str] = None


class AuditRecord(AuditEvent):
    """A persisted, immutable ledger entry."""
    model_config = ConfigDict(frozen=True)

    record_id: str = Field(..., description="UUIDv7 record identifier")
    timestamp: str = Field(..., description="Server timestamp (ISO 8601 UTC), set once")
    prev_record_hash: Optional[str] = Field(None, description="Hash of the previous record")
    record_hash: str = Field(..., description="SHA-256 chain hash of this record")

    @property
    def is_break_glass(self) -> bool:
        return self.break_glass is not None


# ============================================================================
# QUERY & REPORTING
# ============================================================================


class AuditQuery(BaseModel):
    """Filters for AuditTrail.query()."""
    actor_id: Optional[str] = None
    patient_id: Optional[str] = None
    action: Optional[AuditAction] = None
    resource_type: Optional[ResourceType] = None
    status: Optional[AuditStatus] = None
    break_glass: Optional[bool] = None
    start_date: Optional[str] = Field(None, description="Inclusive lower bound (ISO 8601)")
    end_date: Optional[str] = Field(None, description="Inclusive upper bound (ISO 8601)")


class AuditPage(BaseModel):
    """Paginated query result."""
    records: List[AuditRecord]
    page: int
    limit: int
    total: int
    pages: int


class ActionCount(BaseModel):
    action: str
    count: int


class ActorCount(BaseModel):
    actor_id: str
    actor_email: str
    count: int


class AuditStats(BaseModel):
    """Aggregate statistics over an optional date range."""
    total_records: int
    break_glass_count: int
    denied_count: int
    top_actions: List[ActionCount]
    top_actors: List[ActorCount]


class ChainError(BaseModel):
    record_id: str
    index: int
    error: str


class ChainVerification(BaseModel):
    """Result of AuditTrail.verify_chain()."""
    valid: bool
    total_records: int
    errors: List[ChainError] = Field(default_factory=list)
