"""
API request and response models for the panel auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Identifier and name fields are stripped of surrounding whitespace; password
fields are passed through exactly as sent. New passwords are capped at 72
characters here, and PasswordPolicy enforces the 72-byte bcrypt limit.
Passwords presented for verification are capped at 128 characters so an
oversized body never reaches bcrypt.
"""

from datetime import datetime
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from auth.models import AuthResult, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]{2,63}$"
# Deliberately loose: one "@", something on each side, a dot in the domain.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

StrippedStr = Annotated[str, StringConstraints(strip_whitespace=True)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. identifier is a username or an email."""

    identifier: StrippedStr = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    two_factor_code: Optional[StrippedStr] = Field(default=None, max_length=10)


class RegisterRequest(BaseModel):
    username: StrippedStr = Field(pattern=USERNAME_PATTERN)
    email: StrippedStr = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=72)
    first_name: StrippedStr = Field(default="", max_length=100)
    last_name: StrippedStr = Field(default="", max_length=100)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=128)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=72)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    email: str
    first_name: str
    last_name: str
    is_active: bool
    two_factor_enabled: bool
    last_login_at: Optional[datetime] = None
    roles: list[str] = Field(default_factory=list)

    @classmethod
    def from_user(cls, user: User, roles: Optional[list[str]] = None) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            is_active=user.is_active,
            two_factor_enabled=user.two_factor_enabled,
            last_login_at=user.last_login_at,
            roles=list(roles or []),
        )


class TokenResponse(BaseModel):
    """Response for login and refresh.

    expires_at is the session's absolute expiry -- when the refresh token
    stops working. expires_in is the access token's lifetime in seconds.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    expires_in: int
    session_id: str
    user: UserResponse

    @classmethod
    def from_result(cls, result: AuthResult, expires_in: int) -> "TokenResponse":
        return cls(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_at=result.expires_at,
            expires_in=expires_in,
            session_id=result.session_id,
            user=UserResponse.from_user(result.user, result.roles),
        )


class MeResponse(BaseModel):
    """Claims of the presented access token."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    email: str
    roles: list[str]
    session_id: str
    expires_at: datetime


class PermissionEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource: str
    action: str


class PermissionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    permissions: list[PermissionEntry]


class LogoutResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = "Logged out."
    revoked: bool


class PasswordChangeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = "Password changed."
    revoked_sessions: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
