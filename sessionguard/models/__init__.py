# SessionGuard Models
from sessionguard.models.audit_event import AuditEvent
from sessionguard.models.base import BaseModel
from sessionguard.models.failed_login_attempt import FailedLoginAttempt
from sessionguard.models.refresh_token import RefreshToken
from sessionguard.models.security_restriction import SecurityRestriction
from sessionguard.models.token_blacklist import TokenBlacklist
from sessionguard.models.user import User
from sessionguard.models.user_session import UserSession

__all__ = [
    "AuditEvent",
    "BaseModel",
    "FailedLoginAttempt",
    "RefreshToken",
    "SecurityRestriction",
    "TokenBlacklist",
    "User",
    "UserSession",
]
