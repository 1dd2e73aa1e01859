"""Session registry - login sessions and their refresh tokens."""

import logging
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.models import RefreshToken, TokenBlacklist, UserSession
from sessionguard.services.audit import AuditAction, AuditLogger, get_audit_logger
from sessionguard.services.errors import TokenRevoked
from sessionguard.services.tokens import REFRESH, RefreshClaims, TokenPair, hash_token

logger = logging.getLogger(__name__)


async def claim_refresh_token(
    db: AsyncSession, jti: str, reason: str, now: datetime | None = None
) -> bool:
    """Flip a refresh token from live to revoked.

    This conditional UPDATE is the single point where a refresh token leaves
    the active state, whether by rotation or revocation. It returns False
    when another writer got there first.
    """
    result = await db.execute(
        update(RefreshToken)
        .where(RefreshToken.jti == jti, RefreshToken.revoked.is_(False))
        .values(revoked=True, revoked_at=now or datetime.now(UTC), revocation_reason=reason)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def blacklist_refresh_token(record: RefreshToken | RefreshClaims, reason: str) -> TokenBlacklist:
    return TokenBlacklist(
        token_id=record.jti,
        token_type=REFRESH,
        user_id=record.user_id,
        expires_at=record.expires_at,
        reason=reason,
    )


class SessionRegistry:
    """Creates, lists and terminates login sessions."""

    def __init__(self, session: AsyncSession, audit: AuditLogger | None = None):
        self.session = session
        self.audit = audit or get_audit_logger()

    async def create_session(
        self,
        user_id: UUID,
        pair: TokenPair,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_info: str | None = None,
    ) -> UserSession:
        """Persist the refresh token record and the session it belongs to.

        Flushes only; the caller commits together with the rest of the login.
        """
        self.session.add(
            RefreshToken(
                jti=pair.refresh_jti,
                user_id=user_id,
                session_id=pair.session_id,
                secret_hash=hash_token(pair.refresh_token),
                issued_at=pair.issued_at,
                expires_at=pair.refresh_expires_at,
            )
        )
        user_session = UserSession(
            id=pair.session_id,
            user_id=user_id,
            refresh_token_id=pair.refresh_jti,
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=device_info,
            last_used_at=pair.issued_at,
            expires_at=pair.refresh_expires_at,
            active=True,
        )
        self.session.add(user_session)
        await self.session.flush()
        return user_session

    async def get_session(self, session_id: UUID) -> UserSession | None:
        return await self.session.get(UserSession, session_id, populate_existing=True)

    async def list_sessions(self, user_id: UUID) -> list[UserSession]:
        """Active, unexpired sessions, most recently used first."""
        result = await self.session.execute(
            select(UserSession)
            .where(
                UserSession.user_id == user_id,
                UserSession.active.is_(True),
                UserSession.expires_at > datetime.now(UTC),
            )
            .order_by(UserSession.last_used_at.desc())
        )
        return list(result.scalars().all())

    async def _get_refresh_record(self, jti: str) -> RefreshToken | None:
        result = await self.session.execute(select(RefreshToken).where(RefreshToken.jti == jti))
        return result.scalar_one_or_none()

    async def _terminate(self, user_session: UserSession, reason: str) -> bool:
        """Revoke a session's current refresh token and deactivate it.

        Returns True if this call performed the revocation.
        """
        revoked = await claim_refresh_token(self.session, user_session.refresh_token_id, reason)
        if revoked:
            record = await self._get_refresh_record(user_session.refresh_token_id)
            if record is not None:
                self.session.add(blacklist_refresh_token(record, reason))

        result = await self.session.execute(
            update(UserSession)
            .where(UserSession.id == user_session.id, UserSession.active.is_(True))
            .values(active=False, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return revoked or result.rowcount == 1

    async def logout(
        self,
        refresh_token_id: str,
        reason: str = "logout",
        ip_address: str | None = None,
    ) -> UserSession:
        """End the session owning ``refresh_token_id``.

        Raises:
            TokenRevoked: the token was already rotated or revoked
        """
        record = await self._get_refresh_record(refresh_token_id)
        if record is None or not await claim_refresh_token(self.session, refresh_token_id, reason):
            await self.session.rollback()
            raise TokenRevoked()

        self.session.add(blacklist_refresh_token(record, reason))
        await self.session.execute(
            update(UserSession)
            .where(UserSession.id == record.session_id)
            .values(active=False, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        user_session = await self.get_session(record.session_id)
        await self.audit.record(
            AuditAction.SESSION_LOGOUT,
            actor_id=record.user_id,
            entity_type="session",
            entity_id=record.session_id,
            details={"reason": reason},
            ip_address=ip_address,
        )
        logger.info(f"Session {record.session_id} logged out ({reason})")
        return user_session

    async def logout_all_devices(
        self,
        user_id: UUID,
        except_refresh_token_id: str | None = None,
        reason: str = "logout",
        actor_id: UUID | None = None,
        ip_address: str | None = None,
    ) -> int:
        """Terminate every active session of a user except one.

        Returns:
            Number of sessions terminated
        """
        query = select(UserSession).where(
            UserSession.user_id == user_id, UserSession.active.is_(True)
        )
        if except_refresh_token_id is not None:
            query = query.where(UserSession.refresh_token_id != except_refresh_token_id)
        sessions = list((await self.session.execute(query)).scalars().all())

        terminated = 0
        for user_session in sessions:
            if await self._terminate(user_session, reason):
                terminated += 1
        await self.session.commit()

        action = (
            AuditAction.SESSION_LOGOUT_ALL
            if actor_id in (None, user_id)
            else AuditAction.SESSION_REVOKED
        )
        await self.audit.record(
            action,
            actor_id=actor_id or user_id,
            entity_type="user",
            entity_id=user_id,
            details={"reason": reason, "sessions_terminated": terminated},
            ip_address=ip_address,
            level="info" if action is AuditAction.SESSION_LOGOUT_ALL else "warning",
        )
        logger.info(f"Terminated {terminated} sessions for user {user_id} ({reason})")
        return terminated

    async def revoke_session(
        self,
        session_id: UUID,
        reason: str = "admin-revoke",
        actor_id: UUID | None = None,
    ) -> bool:
        """Terminate a single session by id. Returns False if it was not active."""
        user_session = await self.get_session(session_id)
        if user_session is None or not user_session.active:
            return False

        terminated = await self._terminate(user_session, reason)
        await self.session.commit()

        if terminated:
            await self.audit.record(
                AuditAction.SESSION_REVOKED,
                actor_id=actor_id,
                entity_type="session",
                entity_id=session_id,
                details={"reason": reason, "user_id": str(user_session.user_id)},
                level="warning",
            )
        return terminated
