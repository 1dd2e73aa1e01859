"""Refresh token rotation with replay detection."""

import logging
from datetime import UTC, datetime

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.core.config import Settings, settings
from sessionguard.models import RefreshToken, User, UserSession
from sessionguard.services.audit import AuditAction, AuditLogger, get_audit_logger
from sessionguard.services.errors import IPBlocked, TokenRevoked
from sessionguard.services.restrictions import SecurityRestrictionStore
from sessionguard.services.sessions import blacklist_refresh_token, claim_refresh_token
from sessionguard.services.tokens import TokenIssuer, TokenPair, TokenValidator, hash_token

logger = logging.getLogger(__name__)


class RefreshRotator:
    """Exchanges a refresh token for a new pair, at most once per token.

    The old token is claimed with a conditional UPDATE before anything new
    is written. Of two concurrent rotations of the same token exactly one
    claim succeeds; the loser rolls back and gets TokenRevoked.
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
        self.issuer = TokenIssuer(self.config)
        self.validator = TokenValidator(session, self.config, self.audit)
        self.restrictions = SecurityRestrictionStore(session)

    async def rotate(
        self,
        refresh_token: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        """Rotate ``refresh_token`` and return the replacement pair.

        Raises:
            TokenMalformed / TokenExpired: structural failure
            TokenRevoked: unknown, already rotated or revoked, or the session
                ended concurrently
            IPBlocked: the caller's IP is not allowed for this user
        """
        claims = await self.validator.verify_refresh(refresh_token, ip_address=ip_address)

        user = await self.session.get(User, claims.user_id)
        if user is None or not user.is_active:
            raise TokenRevoked("User is no longer active")

        if ip_address and not await self.restrictions.is_allowed(claims.user_id, ip_address):
            await self.audit.record(
                AuditAction.ACCESS_IP_BLOCKED,
                actor_id=claims.user_id,
                entity_type="session",
                entity_id=claims.session_id,
                ip_address=ip_address,
                user_agent=user_agent,
                level="warning",
            )
            raise IPBlocked()

        now = datetime.now(UTC)
        if not await claim_refresh_token(self.session, claims.jti, "rotated", now):
            await self.session.rollback()
            await self.validator.record_reuse(claims, "revoked concurrently", ip_address)
            raise TokenRevoked()

        self.session.add(blacklist_refresh_token(claims, "rotated"))

        pair = self.issuer.issue_token_pair(claims.user_id, claims.session_id)
        self.session.add(
            RefreshToken(
                jti=pair.refresh_jti,
                user_id=claims.user_id,
                session_id=pair.session_id,
                secret_hash=hash_token(pair.refresh_token),
                issued_at=pair.issued_at,
                expires_at=pair.refresh_expires_at,
            )
        )
        moved = await self.session.execute(
            update(UserSession)
            .where(
                UserSession.id == claims.session_id,
                UserSession.refresh_token_id == claims.jti,
                UserSession.active.is_(True),
            )
            .values(
                refresh_token_id=pair.refresh_jti,
                last_used_at=now,
                expires_at=pair.refresh_expires_at,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            await self.session.rollback()
            raise TokenRevoked("Session is no longer active")

        await self.session.commit()

        await self.audit.record(
            AuditAction.TOKEN_ROTATED,
            actor_id=claims.user_id,
            entity_type="session",
            entity_id=claims.session_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return pair
