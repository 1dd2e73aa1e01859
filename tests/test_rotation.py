"""Tests for refresh token rotation and replay handling."""

import asyncio

import pytest
from sqlalchemy import func, select

from sessionguard.models import RefreshToken, TokenBlacklist, User, UserSession
from sessionguard.services.auth import AuthService
from sessionguard.services.errors import IPBlocked, TokenRevoked
from sessionguard.services.restrictions import SecurityRestrictionStore
from sessionguard.services.rotation import RefreshRotator
from sessionguard.services.sessions import SessionRegistry
from sessionguard.services.tokens import TokenValidator

pytestmark = pytest.mark.asyncio


@pytest.fixture
def start_session(session_factory, user_factory, audit_logger):
    """Register a user and log them in; returns (user, LoginResult)."""

    async def _start(email: str = "owner@example.com"):
        user = await user_factory(email=email)
        async with session_factory() as db:
            result = await AuthService(db, audit=audit_logger).login(
                email, "correct-horse-battery", ip_address="203.0.113.10"
            )
        return user, result

    return _start


async def _rotate(session_factory, audit_logger, token: str, ip: str | None = "203.0.113.10"):
    async with session_factory() as db:
        return await RefreshRotator(db, audit=audit_logger).rotate(token, ip_address=ip)


async def test_rotation_issues_new_pair_for_same_session(
    start_session, session_factory, audit_logger
):
    _, login = await start_session()

    pair = await _rotate(session_factory, audit_logger, login.tokens.refresh_token)

    assert pair.session_id == login.session.id
    assert pair.refresh_jti != login.tokens.refresh_jti
    async with session_factory() as db:
        user_session = await db.get(UserSession, login.session.id)
        assert user_session.refresh_token_id == pair.refresh_jti
        assert user_session.active is True
        old = (
            await db.execute(select(RefreshToken).where(RefreshToken.jti == login.tokens.refresh_jti))
        ).scalar_one()
        assert old.revoked is True
        assert old.revocation_reason == "rotated"
        blacklisted = await db.execute(
            select(TokenBlacklist).where(TokenBlacklist.token_id == login.tokens.refresh_jti)
        )
        assert blacklisted.scalar_one().reason == "rotated"


async def test_new_access_token_verifies(start_session, session_factory, audit_logger):
    user, login = await start_session()
    pair = await _rotate(session_factory, audit_logger, login.tokens.refresh_token)

    async with session_factory() as db:
        identity = await TokenValidator(db, audit=audit_logger).verify_access(pair.access_token)
    assert identity.user_id == user.id
    assert identity.session_id == login.session.id


async def test_second_rotation_of_same_token_fails(start_session, session_factory, audit_logger):
    _, login = await start_session()
    await _rotate(session_factory, audit_logger, login.tokens.refresh_token)

    with pytest.raises(TokenRevoked):
        await _rotate(session_factory, audit_logger, login.tokens.refresh_token)

    await audit_logger.flush()
    async with session_factory() as db:
        events = await audit_logger.recent_events(db, actions=["token.reuse_detected"])
    assert len(events) == 1
    assert events[0].level == "warning"


async def test_rotated_chain_keeps_working(start_session, session_factory, audit_logger):
    _, login = await start_session()
    token = login.tokens.refresh_token
    for _ in range(3):
        token = (await _rotate(session_factory, audit_logger, token)).refresh_token

    async with session_factory() as db:
        live = await db.execute(
            select(func.count(RefreshToken.id)).where(RefreshToken.revoked.is_(False))
        )
        assert live.scalar() == 1


async def test_concurrent_rotation_has_one_winner(start_session, session_factory, audit_logger):
    """Two simultaneous rotations of one token: exactly one succeeds."""
    _, login = await start_session()
    token = login.tokens.refresh_token

    results = await asyncio.gather(
        _rotate(session_factory, audit_logger, token),
        _rotate(session_factory, audit_logger, token),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, BaseException)]
    failures = [r for r in results if isinstance(r, BaseException)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], TokenRevoked)

    async with session_factory() as db:
        user_session = await db.get(UserSession, login.session.id)
        assert user_session.refresh_token_id == successes[0].refresh_jti
        live = await db.execute(
            select(func.count(RefreshToken.id)).where(
                RefreshToken.session_id == login.session.id,
                RefreshToken.revoked.is_(False),
            )
        )
        assert live.scalar() == 1


async def test_refresh_after_logout_fails(start_session, session_factory, audit_logger):
    _, login = await start_session()
    async with session_factory() as db:
        await SessionRegistry(db, audit_logger).logout(login.tokens.refresh_jti)

    with pytest.raises(TokenRevoked):
        await _rotate(session_factory, audit_logger, login.tokens.refresh_token)

    # Logout is not reuse of a rotated token
    await audit_logger.flush()
    async with session_factory() as db:
        events = await audit_logger.recent_events(db, actions=["token.reuse_detected"])
    assert events == []


async def test_suspended_user_cannot_rotate(start_session, session_factory, audit_logger):
    user, login = await start_session()
    async with session_factory() as db:
        db_user = await db.get(User, user.id)
        db_user.status = "suspended"
        await db.commit()

    with pytest.raises(TokenRevoked):
        await _rotate(session_factory, audit_logger, login.tokens.refresh_token)


async def test_rotation_checks_ip_restrictions(start_session, session_factory, audit_logger):
    user, login = await start_session()
    async with session_factory() as db:
        await SecurityRestrictionStore(db).add_restriction(user.id, "ip-block", "192.0.2.0/24")
        await db.commit()

    with pytest.raises(IPBlocked):
        await _rotate(session_factory, audit_logger, login.tokens.refresh_token, ip="192.0.2.44")

    # The refused attempt did not consume the token
    pair = await _rotate(session_factory, audit_logger, login.tokens.refresh_token)
    assert pair.session_id == login.session.id


async def test_tampered_refresh_token_rejected(start_session, session_factory, audit_logger):
    """A token whose stored hash does not match is treated as unknown."""
    _, login = await start_session()
    async with session_factory() as db:
        record = (
            await db.execute(select(RefreshToken).where(RefreshToken.jti == login.tokens.refresh_jti))
        ).scalar_one()
        record.secret_hash = "0" * 64
        await db.commit()

    with pytest.raises(TokenRevoked):
        await _rotate(session_factory, audit_logger, login.tokens.refresh_token)
