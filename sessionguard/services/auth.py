"""Authentication service - registration and login orchestration."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.core.config import Settings, settings
from sessionguard.models import User, UserSession
from sessionguard.services.audit import AuditAction, AuditLogger, get_audit_logger
from sessionguard.services.credentials import CredentialStore, normalize_email
from sessionguard.services.errors import AccountLocked, InvalidCredentials, IPBlocked
from sessionguard.services.failed_attempts import FailedAttemptGuard
from sessionguard.services.restrictions import SecurityRestrictionStore
from sessionguard.services.sessions import SessionRegistry
from sessionguard.services.tokens import TokenIssuer, TokenPair

logger = logging.getLogger(__name__)


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair
    session: UserSession


class AuthService:
    """Service for registration and login.

    Login order: lockout check, IP restriction check, password check. The
    password is never evaluated for a locked-out or IP-blocked attempt.
    """

    def __init__(
        self,
        session: AsyncSession,
        config: Settings | None = None,
        audit: AuditLogger | None = None,
    ):
        self.session = session
        self.config = config or settings
        self.audit = audit or get_audit_logger()
        self.credentials = CredentialStore(session)
        self.guard = FailedAttemptGuard(session, self.config.auth_policy)
        self.restrictions = SecurityRestrictionStore(session)
        self.sessions = SessionRegistry(session, self.audit)
        self.issuer = TokenIssuer(self.config)

    async def _start_session(
        self,
        user: User,
        ip_address: str | None,
        user_agent: str | None,
        device_info: str | None,
    ) -> LoginResult:
        pair = self.issuer.issue_token_pair(user.id)
        user_session = await self.sessions.create_session(
            user.id,
            pair,
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=device_info,
        )
        return LoginResult(user=user, tokens=pair, session=user_session)

    async def register(
        self,
        email: str,
        password: str,
        profile: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_info: str | None = None,
    ) -> LoginResult:
        """Create an account and sign it in on the registering device."""
        user = await self.credentials.register(email, password, profile)
        user.last_login_at = datetime.now(UTC)
        result = await self._start_session(user, ip_address, user_agent, device_info)
        await self.session.commit()

        await self.audit.record(
            AuditAction.USER_REGISTER,
            actor_id=user.id,
            entity_type="user",
            entity_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return result

    async def login(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_info: str | None = None,
    ) -> LoginResult:
        """Verify credentials and open a new session.

        Raises:
            AccountLocked: too many recent failures for this email or IP
            IPBlocked: the user's restrictions refuse this IP
            InvalidCredentials: unknown email, wrong password or inactive user
        """
        email = normalize_email(email)

        status = await self.guard.check_blocked(email, ip_address)
        if status.blocked:
            # Persist a freshly stamped lockout before refusing
            await self.session.commit()
            await self.audit.record(
                AuditAction.LOGIN_LOCKED,
                entity_type="email",
                entity_id=email,
                details={"retry_after": status.retry_after},
                ip_address=ip_address,
                user_agent=user_agent,
                level="warning",
            )
            raise AccountLocked(status.retry_after)

        user = await self.credentials.get_by_email(email)
        if user is not None and not await self.restrictions.is_allowed(user.id, ip_address):
            await self.audit.record(
                AuditAction.LOGIN_IP_BLOCKED,
                actor_id=user.id,
                entity_type="user",
                entity_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                level="warning",
            )
            raise IPBlocked()

        try:
            user = await self.credentials.authenticate(email, password)
        except InvalidCredentials:
            reason = "unknown_email" if user is None else (
                "inactive_account" if not user.is_active else "invalid_password"
            )
            await self.guard.record_failure(email, ip_address, reason, user_agent)
            await self.session.commit()
            await self.audit.record(
                AuditAction.LOGIN_FAILED,
                actor_id=user.id if user else None,
                entity_type="email",
                entity_id=email,
                details={"reason": reason},
                ip_address=ip_address,
                user_agent=user_agent,
                level="warning",
            )
            raise

        await self.guard.clear_on_success(email)
        user.last_login_at = datetime.now(UTC)
        result = await self._start_session(user, ip_address, user_agent, device_info)
        await self.session.commit()

        await self.audit.record(
            AuditAction.LOGIN_SUCCESS,
            actor_id=user.id,
            entity_type="session",
            entity_id=result.session.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info(f"User {user.id} logged in (session {result.session.id})")
        return result
