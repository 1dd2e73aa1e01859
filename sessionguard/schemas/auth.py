"""Pydantic schemas for authentication API."""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class RegisterRequest(BaseModel):
    """Request for account registration."""

    email: str = Field(..., max_length=320, pattern=EMAIL_PATTERN)
    password: str = Field(
        ...,
        min_length=8,
        max_length=128,
        description="Password (8-128 characters)",
    )
    name: str | None = Field(None, max_length=255)
    restaurant_name: str | None = Field(None, max_length=255)
    profile: dict[str, Any] = Field(default_factory=dict)

    def profile_data(self) -> dict[str, Any]:
        data = dict(self.profile)
        if self.name is not None:
            data["name"] = self.name
        if self.restaurant_name is not None:
            data["restaurant_name"] = self.restaurant_name
        return data


class LoginRequest(BaseModel):
    """Request for login."""

    email: str = Field(..., min_length=1, max_length=320)
    password: str = Field(..., min_length=1, max_length=128)


class TokenResponse(BaseModel):
    """Response with a JWT token pair."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(description="Access token expiry in seconds")
    refresh_expires_in: int = Field(description="Refresh token expiry in seconds")
    session_id: UUID


class RefreshRequest(BaseModel):
    """Request for token refresh."""

    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    """Request to end the session owning a refresh token."""

    refresh_token: str = Field(..., min_length=1)


class ChangePasswordRequest(BaseModel):
    """Request for password change."""

    current_password: str = Field(..., min_length=1)
    new_password: str = Field(
        ...,
        min_length=8,
        max_length=128,
        description="New password (8-128 characters)",
    )


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str


class UserResponse(BaseModel):
    """Response with user information."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    role: str
    status: str
    profile: dict[str, Any]
    last_login_at: datetime | None
    created_at: datetime


class AuthResponse(TokenResponse):
    """Token pair plus the signed-in user, returned by register and login."""

    user: UserResponse


class IdentityResponse(BaseModel):
    """Result of verifying an access token."""

    valid: bool = True
    user_id: UUID
    email: str
    role: str
    session_id: UUID | None
    token_format: str
    expires_at: datetime


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ip_address: str | None
    user_agent: str | None
    device_info: str | None
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    current: bool = False


class SessionListResponse(BaseModel):
    sessions: list[SessionResponse]
    total: int


class LogoutAllResponse(BaseModel):
    message: str
    sessions_terminated: int


class RestrictionCreate(BaseModel):
    """Admin request to add an IP rule for a user."""

    user_id: UUID
    restriction_type: Literal["ip-allow", "ip-block"]
    value: str = Field(..., min_length=1, max_length=64, description="IP address or CIDR network")
    expires_at: datetime | None = None
    notes: str | None = Field(None, max_length=1000)


class RestrictionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    restriction_type: str
    value: str
    active: bool
    expires_at: datetime | None
    notes: str | None
    created_by: UUID | None
    created_at: datetime


class BlockedIPResponse(BaseModel):
    ip_address: str
    blocked_until: datetime
    attempts: int


class UnblockRequest(BaseModel):
    email: str | None = Field(None, max_length=320)
    ip_address: str | None = Field(None, max_length=45)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str | None) -> str | None:
        return v.strip().lower() if v else v


class UnblockResponse(BaseModel):
    message: str
    rows_cleared: int


class UserStatusRequest(BaseModel):
    status: Literal["active", "suspended", "disabled"]


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action: str
    level: str
    ip_address: str | None
    created_at: datetime


class SecurityStatusResponse(BaseModel):
    """Summary of the caller's account security state."""

    active_sessions: int
    failed_logins_24h: int
    restrictions: list[RestrictionResponse]
    recent_events: list[AuditEventResponse]
    last_login_at: datetime | None


class SecurityEventResponse(AuditEventResponse):
    actor_id: UUID | None
    entity_type: str | None
    entity_id: str | None
    details: dict[str, Any] | None


class FailureSummary(BaseModel):
    total: int = 0
    unique_emails: int = 0
    unique_ips: int = 0
    blocked_attempts: int = 0
    last_24h: int = 0


class FailureSource(BaseModel):
    """An email or IP with failed logins.

    ``spread`` is the number of distinct IPs behind an email, or of distinct
    emails tried from an IP.
    """

    value: str
    attempts: int
    spread: int
    last_attempt: datetime


class SecurityStatsResponse(BaseModel):
    """Service-wide security statistics for administrators."""

    period: str
    failed_logins: FailureSummary
    currently_blocked_ips: int = 0
    active_restrictions: int = 0
    blacklisted_tokens: int = 0
    top_failed_emails: list[FailureSource] = Field(default_factory=list)
    top_failed_ips: list[FailureSource] = Field(default_factory=list)
    suspicious_ips: list[FailureSource] = Field(default_factory=list)
    suspicious_emails: list[FailureSource] = Field(default_factory=list)
    recent_warnings: list[SecurityEventResponse] = Field(default_factory=list)
