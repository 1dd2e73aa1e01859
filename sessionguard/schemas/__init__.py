# SessionGuard API Schemas
from sessionguard.schemas.auth import (
    AuthResponse,
    BlockedIPResponse,
    ChangePasswordRequest,
    IdentityResponse,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RestrictionCreate,
    RestrictionResponse,
    SecurityStatsResponse,
    SecurityStatusResponse,
    SessionListResponse,
    SessionResponse,
    TokenResponse,
    UnblockRequest,
    UnblockResponse,
    UserResponse,
    UserStatusRequest,
)

__all__ = [
    "AuthResponse",
    "BlockedIPResponse",
    "ChangePasswordRequest",
    "IdentityResponse",
    "LoginRequest",
    "LogoutAllResponse",
    "LogoutRequest",
    "MessageResponse",
    "RefreshRequest",
    "RegisterRequest",
    "RestrictionCreate",
    "RestrictionResponse",
    "SecurityStatsResponse",
    "SecurityStatusResponse",
    "SessionListResponse",
    "SessionResponse",
    "TokenResponse",
    "UnblockRequest",
    "UnblockResponse",
    "UserResponse",
    "UserStatusRequest",
]
