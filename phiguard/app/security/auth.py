"""
JWT-based identity extraction for PHIGuard.

Credential issuance (password checks, MFA, token minting) belongs to the
external authentication service. This module only verifies the bearer token
and turns its claims into an Identity. The Identity is read-only to the core.

Required claims:
- sub: identity id
- email: display email
- role: admin | doctor | nurse | staff | patient
- exp: expiration (enforced)

Optional claims (ABAC attributes):
- hospital_id, department, access_level (1-5), assigned_patients (list of
  canonical patient ids)
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, Field, ValidationError

from phiguard.app.models.access import Role

# JWT Configuration
# In production, use RS256 with public key from identity provider
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Security scheme
security = HTTPBearer()


class Identity(BaseModel):
    """
    Authenticated caller, derived from a cryptographically validated JWT.

    Client cannot forge this - it never comes from headers or request bodies.
    """

    id: str
    email: str
    role: Role
    hospital_id: Optional[str] = None
    department: Optional[str] = None
    access_level: int = Field(default=1, ge=1, le=5)
    assigned_patients: List[str] = Field(default_factory=list)

    def attributes(self) -> Dict[str, Any]:
        """Attribute view used by the attribute gate."""
        return {
            "role": self.role.value,
            "hospital_id": self.hospital_id,
            "department": self.department,
            "access_level": self.access_level,
        }

    def is_assigned(self, patient_id: str) -> bool:
        return patient_id in self.assigned_patients


def decode_jwt(token: str) -> dict:
    """
    Decode and validate JWT token.

    Raises:
        HTTPException: 401 if token is invalid, expired, or malformed
    """
    try:
        return jwt.decode(
            token,
            JWT_SECRET_KEY,
            algorithms=[JWT_ALGORITHM],
            options={
                "verify_signature": True,
                "verify_exp": True,
                "require_exp": True,
                "require_sub": True,
            },
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "invalid_token",
                "message": "Token validation failed",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )


def identity_from_claims(payload: dict) -> Identity:
    """
    Build an Identity from verified claims.

    Raises:
        HTTPException: 401 if a required claim is missing or invalid
    """
    for claim in ("sub", "email", "role"):
        if not payload.get(claim):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={
                    "error": "missing_claim",
                    "message": f"Token missing '{claim}' claim",
                },
            )

    valid_roles = {r.value for r in Role}
    if payload["role"] not in valid_roles:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "invalid_role",
                "message": f"Invalid role. Must be one of: {sorted(valid_roles)}",
            },
        )

    try:
        return Identity(
            id=str(payload["sub"]),
            email=payload["email"],
            role=payload["role"],
            hospital_id=payload.get("hospital_id"),
            department=payload.get("department"),
            access_level=payload.get("access_level", 1),
            assigned_patients=[str(p) for p in payload.get("assigned_patients") or []],
        )
    except ValidationError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "invalid_claims",
                "message": "Token carries invalid identity attributes",
            },
        )


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Identity:
    """
    Extract and validate identity from the bearer token.

    All routes requiring authentication depend on this function (directly or
    through the access guard).
    """
    payload = decode_jwt(credentials.credentials)
    return identity_from_claims(payload)


# Helper function for generating dev/test tokens
def create_jwt_token(
    sub: str,
    email: str,
    role: str,
    hospital_id: Optional[str] = None,
    department: Optional[str] = None,
    access_level: int = 1,
    assigned_patients: Optional[List[str]] = None,
    expires_in_seconds: int = 3600,
) -> str:
    """
    Create a JWT token for development/testing.

    In production, tokens are issued by the identity provider.
    """
    now = datetime.now(timezone.utc)

    payload = {
        "sub": sub,
        "email": email,
        "role": role,
        "hospital_id": hospital_id,
        "department": department,
        "access_level": access_level,
        "assigned_patients": assigned_patients or [],
        "exp": int(now.timestamp()) + expires_in_seconds,
        "iat": int(now.timestamp()),
    }

    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)
