"""
API request and response models for tenantguard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import LoginResult, UserSummary

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# At least one lowercase, one uppercase, one digit and one special character.
_PASSWORD_RULES = (
    (re.compile(r"[a-z]"), "a lowercase letter"),
    (re.compile(r"[A-Z]"), "an uppercase letter"),
    (re.compile(r"\d"), "a digit"),
    (re.compile(r"[@$!%*?&]"), "a special character (@$!%*?&)"),
)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=8, max_length=128)
    organization_slug: str = Field(min_length=1, max_length=100)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Password strength is checked here, at the transport boundary; the auth
    core only hashes what it is given.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=8, max_length=128)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    organization_slug: str = Field(min_length=1, max_length=100)

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        missing = [label for pattern, label in _PASSWORD_RULES if not pattern.search(value)]
        if missing:
            raise ValueError("Password must contain " + ", ".join(missing) + ".")
        return value


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class RoleAssignmentResponse(BaseModel):
    id: str
    name: str
    description: str
    is_system: bool


class UserSummaryResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    organization_id: str
    roles: list[RoleAssignmentResponse] = Field(default_factory=list)

    @classmethod
    def from_summary(cls, summary: UserSummary) -> "UserSummaryResponse":
        return cls(
            id=summary.id,
            email=summary.email,
            first_name=summary.first_name,
            last_name=summary.last_name,
            organization_id=summary.organization_id,
            roles=[
                RoleAssignmentResponse(id=r.role_id, name=r.name, description=r.description, is_system=r.is_system)
                for r in summary.roles
            ],
        )


class LoginResponse(TokenPairResponse):
    user: UserSummaryResponse

    @classmethod
    def from_result(cls, result: LoginResult, expires_in: int) -> "LoginResponse":
        return cls(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=expires_in,
            user=UserSummaryResponse.from_summary(result.user),
        )


class MeResponse(BaseModel):
    user_id: str
    email: str
    organization_id: str
    organization_slug: str
    permissions: list[str]


class MessageResponse(BaseModel):
    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    correlation_id: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
