"""
API request and response models for the Gatekeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models validate and normalize input (trimmed username, lowercased
email, password strength) before any service code runs. Response models never
carry password hashes or raw refresh tokens.
"""

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import SELF_SERVICE_ROLES, AuditLogEntry, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9_]+$"
EMAIL_PATTERN = r"^\S+@\S+\.\S+$"

PASSWORD_SPECIALS = "@$!%*?&"
PASSWORD_RULES_MESSAGE = (
    "Password must contain at least one uppercase letter, one lowercase letter, "
    f"one number, and one special character ({PASSWORD_SPECIALS})"
)

_EMAIL_RE = re.compile(EMAIL_PATTERN)


def _normalize_email(value: str) -> str:
    """Trim, lowercase and shape-check an email address."""
    normalized = str(value).strip().lower()
    if not _EMAIL_RE.match(normalized):
        raise ValueError("Please provide a valid email")
    return normalized


def _check_password_strength(value: str) -> str:
    """Enforce the password composition rules on a new password.

    Pydantic's pattern= uses a regex engine without lookahead, so the four
    character-class checks run here instead.
    """
    if not (
        any(c.islower() for c in value)
        and any(c.isupper() for c in value)
        and any(c.isdigit() for c in value)
        and any(c in PASSWORD_SPECIALS for c in value)
    ):
        raise ValueError(PASSWORD_RULES_MESSAGE)
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    role accepts any JSON value. Anything other than "user" or "moderator"
    becomes None here and the service registers the account as "user".
    """

    username: str = Field(min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: str = Field(max_length=255)
    password: str = Field(min_length=8, max_length=128)
    role: Optional[str] = None

    @field_validator("username", mode="before")
    @classmethod
    def strip_username(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("role", mode="before")
    @classmethod
    def downgrade_role(cls, value):
        return value if isinstance(value, str) and value in SELF_SERVICE_ROLES else None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator("password")
    @classmethod
    def check_strength(cls, value: str) -> str:
        return _check_password_strength(value)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    Only shape is checked here. Strength rules apply to new passwords, not to
    the one being presented.
    """

    email: str = Field(max_length=255)
    password: str = Field(min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)


class RefreshRequest(BaseModel):
    """Optional body for POST /refresh and /logout when the cookie is unavailable."""

    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password."""

    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=8, max_length=128)

    @field_validator("new_password")
    @classmethod
    def check_strength(cls, value: str) -> str:
        return _check_password_strength(value)


class ForgotPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/forgot-password."""

    email: str = Field(max_length=255)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password."""

    token: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=8, max_length=128)

    @field_validator("new_password")
    @classmethod
    def check_strength(cls, value: str) -> str:
        return _check_password_strength(value)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user account."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    role: str
    is_verified: bool
    created_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            is_verified=user.is_verified,
            created_at=user.created_at or "",
        )


class AuthResponse(BaseModel):
    """Response body for register and login. The refresh token travels in a cookie."""

    model_config = ConfigDict(frozen=True)

    message: str
    user: UserResponse
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class TokenResponse(BaseModel):
    """Response body for POST /refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ProfileResponse(BaseModel):
    """Response body for GET /me."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    role: str
    is_verified: bool
    created_at: str
    last_login: Optional[str] = None
    last_login_ip: Optional[str] = None
    session_count: int = 0

    @classmethod
    def from_user(cls, user: User) -> "ProfileResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            is_verified=user.is_verified,
            created_at=user.created_at or "",
            last_login=user.last_login,
            last_login_ip=user.last_login_ip,
            session_count=len(user.sessions),
        )


class SessionResponse(BaseModel):
    """One signed-in device. The refresh token itself is never exposed."""

    model_config = ConfigDict(frozen=True)

    ip: Optional[str]
    user_agent: Optional[str]
    created_at: str
    is_current: bool


class SessionListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    sessions: list[SessionResponse]


class AuditLogRow(BaseModel):
    """Single entry in the audit trail listing."""

    model_config = ConfigDict(frozen=True)

    id: int
    user_id: Optional[int]
    action: str
    status: str
    ip: Optional[str]
    user_agent: Optional[str]
    details: dict
    created_at: str

    @classmethod
    def from_entry(cls, entry: AuditLogEntry) -> "AuditLogRow":
        return cls(
            id=entry.id,
            user_id=entry.user_id,
            action=entry.action,
            status=entry.status,
            ip=entry.ip,
            user_agent=entry.user_agent,
            details=entry.details,
            created_at=entry.created_at,
        )


class AuditLogPage(BaseModel):
    """Paginated audit trail. entries are newest first."""

    model_config = ConfigDict(frozen=True)

    entries: list[AuditLogRow]
    total: int
    page: int
    page_size: int


# ---------------------------------------------------------------------------
# Envelope and health
# ---------------------------------------------------------------------------


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
