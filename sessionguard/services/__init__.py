# SessionGuard Services
from sessionguard.services.audit import AuditAction, AuditLogger, get_audit_logger
from sessionguard.services.auth import AuthService, LoginResult
from sessionguard.services.cleanup import CleanupService
from sessionguard.services.credentials import CredentialStore
from sessionguard.services.failed_attempts import FailedAttemptGuard
from sessionguard.services.restrictions import SecurityRestrictionStore
from sessionguard.services.rotation import RefreshRotator
from sessionguard.services.sessions import SessionRegistry
from sessionguard.services.tokens import Identity, TokenIssuer, TokenPair, TokenValidator

__all__ = [
    "AuditAction",
    "AuditLogger",
    "AuthService",
    "CleanupService",
    "CredentialStore",
    "FailedAttemptGuard",
    "Identity",
    "LoginResult",
    "RefreshRotator",
    "SecurityRestrictionStore",
    "SessionRegistry",
    "TokenIssuer",
    "TokenPair",
    "TokenValidator",
    "get_audit_logger",
]
