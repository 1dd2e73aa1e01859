"""Tests for the audit logger."""

import logging
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from sessionguard.core.retry import RetryConfig
from sessionguard.models import AuditEvent
from sessionguard.services.audit import AuditAction, AuditLogger, sanitize_details
from sessionguard.services.auth import AuthService


class TestSanitizeDetails:
    def test_password_redacted(self):
        sanitized = sanitize_details({"email": "a@example.com", "password": "hunter22"})
        assert sanitized["email"] == "a@example.com"
        assert sanitized["password"] == "[REDACTED - set]"

    def test_token_fields_redacted(self):
        sanitized = sanitize_details({"refresh_token": "eyJ...", "access_token": None})
        assert sanitized["refresh_token"] == "[REDACTED - set]"
        assert sanitized["access_token"] == "[REDACTED - unset]"

    def test_nested_dict_redacted(self):
        sanitized = sanitize_details({"request": {"Authorization": "Bearer x", "path": "/"}})
        assert sanitized["request"]["Authorization"] == "[REDACTED - set]"
        assert sanitized["request"]["path"] == "/"

    def test_uuid_stringified(self):
        user_id = uuid4()
        assert sanitize_details({"user_id": user_id}) == {"user_id": str(user_id)}


@pytest.mark.asyncio
class TestAuditLogger:
    async def test_record_without_database_stays_queued(self):
        audit = AuditLogger()
        event = await audit.record(AuditAction.LOGIN_FAILED, details={"reason": "invalid_password"})

        assert event["action"] == "login.failed"
        assert audit.pending_count == 1
        assert await audit.flush() == 0
        assert audit.pending_count == 1

    async def test_record_logs_event(self, caplog):
        audit = AuditLogger()
        with caplog.at_level(logging.WARNING, logger="sessionguard.audit"):
            await audit.record(AuditAction.TOKEN_REUSE_DETECTED, level="warning")

        records = [r for r in caplog.records if r.name == "sessionguard.audit"]
        assert records
        assert records[0].audit["action"] == "token.reuse_detected"

    async def test_flush_persists_events(self, audit_logger, session_factory):
        actor = uuid4()
        await audit_logger.record(
            AuditAction.SESSION_LOGOUT,
            actor_id=actor,
            entity_type="session",
            entity_id=uuid4(),
            details={"reason": "logout", "password": "nope"},
            ip_address="203.0.113.7",
        )
        assert await audit_logger.flush() == 1

        async with session_factory() as db:
            stored = (await db.execute(select(AuditEvent))).scalar_one()
        assert stored.actor_id == actor
        assert stored.action == "session.logout"
        assert stored.details == {"reason": "logout", "password": "[REDACTED - set]"}

    async def test_failed_write_requeues(self, db_engine, session_factory):
        audit = AuditLogger(
            session_factory=session_factory,
            retry_config=RetryConfig(max_retries=1, base_delay=0.001, jitter=False),
        )
        await audit.record(AuditAction.LOGIN_SUCCESS)

        failure = OperationalError("INSERT", {}, Exception("database is locked"))
        with patch.object(audit, "_write_events", AsyncMock(side_effect=failure)) as writer:
            with pytest.raises(OperationalError):
                await audit.flush()
        assert writer.await_count == 2
        assert audit.pending_count == 1

        # Succeeds once the database is back
        assert await audit.flush() == 1
        assert audit.pending_count == 0
        await audit.close()

    async def test_audit_failure_does_not_fail_login(
        self, user_factory, session_factory, audit_logger
    ):
        await user_factory()
        failure = OperationalError("INSERT", {}, Exception("disk I/O error"))

        with patch.object(audit_logger, "_write_events", AsyncMock(side_effect=failure)):
            async with session_factory() as db:
                result = await AuthService(db, audit=audit_logger).login(
                    "owner@example.com", "correct-horse-battery"
                )
            assert result.tokens.access_token
            with pytest.raises(OperationalError):
                await audit_logger.flush()

        assert audit_logger.pending_count >= 1
        assert await audit_logger.flush() >= 1

    async def test_recent_events_filters_by_actor(self, audit_logger, session_factory):
        mine, theirs = uuid4(), uuid4()
        await audit_logger.record(AuditAction.LOGIN_SUCCESS, actor_id=mine)
        await audit_logger.record(AuditAction.LOGIN_SUCCESS, actor_id=theirs)
        await audit_logger.flush()

        async with session_factory() as db:
            events = await audit_logger.recent_events(db, actor_id=mine)
        assert [e.actor_id for e in events] == [mine]
