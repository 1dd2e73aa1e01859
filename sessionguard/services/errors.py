"""Authentication error taxonomy.

Every error carries the HTTP status and machine-readable code it maps to, so
the API layer renders them with a single exception handler.
"""

from typing import Any


class AuthError(Exception):
    """Base authentication error."""

    status_code: int = 400
    error_code: str = "auth_error"
    default_message: str = "Authentication error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def headers(self) -> dict[str, str]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "error": self.error_code}


class InvalidCredentials(AuthError):
    """Unknown email, wrong password or inactive account.

    The message is identical in every case so responses do not reveal
    whether an email is registered.
    """

    status_code = 401
    error_code = "invalid_credentials"
    default_message = "Invalid email or password"


class EmailTaken(AuthError):
    status_code = 409
    error_code = "email_taken"
    default_message = "An account with this email already exists"


class AccountLocked(AuthError):
    """Too many failed logins for this email or IP."""

    status_code = 429
    error_code = "account_locked"
    default_message = "Too many failed login attempts. Try again later."

    def __init__(self, retry_after: int, message: str | None = None):
        self.retry_after = max(1, int(retry_after))
        super().__init__(message)

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "retry_after": self.retry_after}


class IPBlocked(AuthError):
    status_code = 403
    error_code = "ip_blocked"
    default_message = "Access from this IP address is not allowed"


class PermissionDenied(AuthError):
    status_code = 403
    error_code = "permission_denied"
    default_message = "Administrator privileges required"


class TokenError(AuthError):
    """Base for bearer token failures; all answer 401."""

    status_code = 401
    error_code = "token_error"
    default_message = "Invalid token"

    @property
    def headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class TokenMalformed(TokenError):
    error_code = "token_malformed"
    default_message = "Token is malformed"


class TokenExpired(TokenError):
    error_code = "token_expired"
    default_message = "Token has expired"


class TokenRevoked(TokenError):
    """Unknown, rotated or revoked token, or an ended session.

    ``revocation_reason`` is set when a stored refresh token was found
    already revoked.
    """

    error_code = "token_revoked"
    default_message = "Token has been revoked"

    def __init__(self, message: str | None = None, revocation_reason: str | None = None):
        self.revocation_reason = revocation_reason
        super().__init__(message)


class RateLimited(AuthError):
    status_code = 429
    error_code = "rate_limited"
    default_message = "Rate limit exceeded. Please try again later."

    def __init__(self, retry_after: int = 60, message: str | None = None):
        self.retry_after = max(1, int(retry_after))
        super().__init__(message)

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "retry_after": self.retry_after}


class ValidationFailed(AuthError):
    """Request data failed validation; ``errors`` lists the offending fields."""

    status_code = 400
    error_code = "validation_failed"
    default_message = "Validation failed"

    def __init__(self, message: str | None = None, errors: list[dict[str, str]] | None = None):
        self.errors = errors or []
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "errors": self.errors}
