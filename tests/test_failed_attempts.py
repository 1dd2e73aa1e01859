"""Tests for failed-login tracking and lockout."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql

from sessionguard.core.config import AuthPolicy
from sessionguard.models import FailedLoginAttempt
from sessionguard.services.auth import AuthService
from sessionguard.services.errors import AccountLocked, InvalidCredentials
from sessionguard.services.failed_attempts import FailedAttemptGuard

pytestmark = pytest.mark.asyncio

POLICY = AuthPolicy()


async def _fail(guard: FailedAttemptGuard, times: int, email="victim@example.com", ip="192.0.2.1"):
    for _ in range(times):
        await guard.record_failure(email, ip, "invalid_password")


class TestFailedAttemptGuard:
    async def test_below_threshold_not_blocked(self, db_session):
        guard = FailedAttemptGuard(db_session, POLICY)
        await _fail(guard, 4)

        status = await guard.check_blocked("victim@example.com", "192.0.2.1")
        assert status.blocked is False
        assert status.email_attempts == 4
        await db_session.commit()

    async def test_threshold_blocks_email(self, db_session):
        guard = FailedAttemptGuard(db_session, POLICY)
        await _fail(guard, 5)

        status = await guard.check_blocked("victim@example.com", None)
        assert status.blocked is True
        assert 3500 <= status.retry_after <= 3600
        await db_session.commit()

    async def test_block_applies_to_other_ips_for_same_email(self, db_session):
        guard = FailedAttemptGuard(db_session, POLICY)
        await _fail(guard, 5)
        await guard.check_blocked("victim@example.com", "192.0.2.1")

        status = await guard.check_blocked("victim@example.com", "198.51.100.9")
        assert status.blocked is True
        await db_session.commit()

    async def test_ip_threshold_across_emails(self, db_session):
        """Spraying many accounts from one address trips the IP counter."""
        guard = FailedAttemptGuard(db_session, POLICY)
        for i in range(5):
            await guard.record_failure(f"user{i}@example.com", "192.0.2.77", "unknown_email")

        status = await guard.check_blocked("fresh@example.com", "192.0.2.77")
        assert status.blocked is True
        assert status.ip_attempts == 5
        await db_session.commit()

    async def test_email_is_case_insensitive(self, db_session):
        guard = FailedAttemptGuard(db_session, POLICY)
        await _fail(guard, 5, email="Victim@Example.com")

        status = await guard.check_blocked("victim@example.com", None)
        assert status.blocked is True
        await db_session.commit()

    async def test_old_attempts_outside_window_ignored(self, db_session):
        old = datetime.now(UTC) - timedelta(minutes=30)
        for _ in range(5):
            db_session.add(
                FailedLoginAttempt(
                    email="victim@example.com",
                    ip_address="192.0.2.1",
                    attempt_time=old,
                    failure_reason="invalid_password",
                )
            )
        await db_session.flush()

        status = await FailedAttemptGuard(db_session, POLICY).check_blocked(
            "victim@example.com", "192.0.2.1"
        )
        assert status.blocked is False
        await db_session.commit()

    async def test_clear_on_success_keeps_rows(self, db_session):
        guard = FailedAttemptGuard(db_session, POLICY)
        await _fail(guard, 3)

        cleared = await guard.clear_on_success("victim@example.com")
        assert cleared == 3

        total = await db_session.execute(select(func.count(FailedLoginAttempt.id)))
        assert total.scalar() == 3
        status = await guard.check_blocked("victim@example.com", None)
        assert status.email_attempts == 0
        await db_session.commit()

    async def test_unblock_lifts_lockout(self, db_session):
        guard = FailedAttemptGuard(db_session, POLICY)
        await _fail(guard, 5)
        assert (await guard.check_blocked("victim@example.com", "192.0.2.1")).blocked

        rows = await guard.unblock(ip="192.0.2.1")
        assert rows == 5

        status = await guard.check_blocked("victim@example.com", "192.0.2.1")
        assert status.blocked is False
        await db_session.commit()

    async def test_list_blocked_ips(self, db_session):
        guard = FailedAttemptGuard(db_session, POLICY)
        await _fail(guard, 5, ip="192.0.2.50")
        await guard.check_blocked("victim@example.com", "192.0.2.50")

        blocked = await guard.list_blocked_ips()
        assert [entry["ip_address"] for entry in blocked] == ["192.0.2.50"]
        assert blocked[0]["attempts"] == 5
        await db_session.commit()

    async def test_purge_keeps_active_blocks(self, db_session):
        guard = FailedAttemptGuard(db_session, POLICY)
        await _fail(guard, 5)
        await guard.check_blocked("victim@example.com", "192.0.2.1")

        removed = await guard.purge_older_than(datetime.now(UTC) + timedelta(minutes=1))
        assert removed == 0
        await db_session.commit()


def _fake_session(dialect: str | None) -> MagicMock:
    session = MagicMock()
    session.execute = AsyncMock()
    if dialect is None:
        session.bind = None
    else:
        session.bind.dialect.name = dialect
    return session


class TestLockKeys:
    async def test_postgres_locks_email_then_ip(self):
        session = _fake_session("postgresql")
        await FailedAttemptGuard(session, POLICY).lock_keys("Victim@Example.com", "192.0.2.1")

        compiled = [
            call.args[0].compile(dialect=postgresql.dialect())
            for call in session.execute.await_args_list
        ]
        assert len(compiled) == 2
        assert all("pg_advisory_xact_lock(hashtext(" in str(c) for c in compiled)
        assert [list(c.params.values()) for c in compiled] == [
            ["sessionguard-login:email:victim@example.com"],
            ["sessionguard-login:ip:192.0.2.1"],
        ]

    async def test_postgres_skips_missing_ip(self):
        session = _fake_session("postgresql")
        await FailedAttemptGuard(session, POLICY).lock_keys("victim@example.com", None)
        assert session.execute.await_count == 1

    @pytest.mark.parametrize("dialect", ["sqlite", None])
    async def test_no_advisory_lock_elsewhere(self, dialect):
        session = _fake_session(dialect)
        await FailedAttemptGuard(session, POLICY).lock_keys("victim@example.com", "192.0.2.1")
        session.execute.assert_not_awaited()

    async def test_concurrent_guesses_check_one_password(
        self, user_factory, session_factory, audit_logger
    ):
        """With one attempt left, simultaneous wrong guesses get a single try."""
        await user_factory(email="victim@example.com")
        async with session_factory() as db:
            await _fail(FailedAttemptGuard(db, POLICY), 4)
            await db.commit()

        async def guess():
            async with session_factory() as db:
                return await AuthService(db, audit=audit_logger).login(
                    "victim@example.com", "wrong-password", ip_address="192.0.2.1"
                )

        results = await asyncio.gather(*(guess() for _ in range(4)), return_exceptions=True)

        assert sum(isinstance(r, InvalidCredentials) for r in results) == 1
        assert sum(isinstance(r, AccountLocked) for r in results) == 3

        async with session_factory() as db:
            count = await db.execute(select(func.count(FailedLoginAttempt.id)))
        assert count.scalar() == 5


class TestLoginLockout:
    """Lockout behaviour through the login endpoint."""

    async def test_correct_password_refused_while_locked(self, async_client, user_factory):
        await user_factory(email="victim@example.com")
        headers = {"X-Real-IP": "192.0.2.1"}

        for _ in range(5):
            response = await async_client.post(
                "/auth/login",
                json={"email": "victim@example.com", "password": "wrong-password"},
                headers=headers,
            )
            assert response.status_code == 401

        response = await async_client.post(
            "/auth/login",
            json={"email": "victim@example.com", "password": "correct-horse-battery"},
            headers=headers,
        )
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0
        body = response.json()
        assert body["error"] == "account_locked"
        assert body["retry_after"] > 0

    async def test_unknown_email_and_wrong_password_look_the_same(
        self, async_client, user_factory
    ):
        await user_factory(email="victim@example.com")

        unknown = await async_client.post(
            "/auth/login", json={"email": "nobody@example.com", "password": "whatever-pass"}
        )
        wrong = await async_client.post(
            "/auth/login", json={"email": "victim@example.com", "password": "whatever-pass"}
        )
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    async def test_success_resets_counter(self, async_client, user_factory, session_factory):
        await user_factory(email="victim@example.com")
        headers = {"X-Real-IP": "192.0.2.1"}

        for _ in range(4):
            await async_client.post(
                "/auth/login",
                json={"email": "victim@example.com", "password": "wrong-password"},
                headers=headers,
            )
        ok = await async_client.post(
            "/auth/login",
            json={"email": "victim@example.com", "password": "correct-horse-battery"},
            headers=headers,
        )
        assert ok.status_code == 200

        # Four more failures stay under the threshold again
        for _ in range(4):
            await async_client.post(
                "/auth/login",
                json={"email": "victim@example.com", "password": "wrong-password"},
                headers=headers,
            )
        ok = await async_client.post(
            "/auth/login",
            json={"email": "victim@example.com", "password": "correct-horse-battery"},
            headers=headers,
        )
        assert ok.status_code == 200

        async with session_factory() as db:
            rows = await db.execute(select(func.count(FailedLoginAttempt.id)))
            assert rows.scalar() == 8
