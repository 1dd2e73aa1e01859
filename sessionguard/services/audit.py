"""Security Audit Logger.

Records security-relevant events (logins, lockouts, token rotation and
revocation, restriction changes) to the append-only ``audit_events`` table
and to the ``sessionguard.audit`` logger.

Events are written by a background batch flush through the logger's own
session factory, so a failing audit write never rolls back the operation
that produced it. Failed batches are retried with backoff and re-queued.
"""

import asyncio
import logging
import threading
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.core.logging import get_logger
from sessionguard.core.retry import RetryConfig, retry_async
from sessionguard.models import AuditEvent

logger = get_logger("audit")

_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


class AuditAction(str, Enum):
    """Security audit action types."""

    USER_REGISTER = "user.register"
    USER_PASSWORD_CHANGED = "user.password_changed"
    USER_STATUS_CHANGED = "user.status_changed"

    LOGIN_SUCCESS = "login.success"
    LOGIN_FAILED = "login.failed"
    LOGIN_LOCKED = "login.locked"
    LOGIN_IP_BLOCKED = "login.ip_blocked"

    TOKEN_ROTATED = "token.rotated"
    TOKEN_REUSE_DETECTED = "token.reuse_detected"
    TOKEN_REVOKED = "token.revoked"
    TOKEN_LEGACY_ACCEPTED = "token.legacy_accepted"

    SESSION_LOGOUT = "session.logout"
    SESSION_LOGOUT_ALL = "session.logout_all"
    SESSION_REVOKED = "session.revoked"

    RESTRICTION_CREATE = "restriction.create"
    RESTRICTION_REMOVE = "restriction.remove"
    SECURITY_UNBLOCK = "security.unblock"
    ACCESS_IP_BLOCKED = "access.ip_blocked"

    SYSTEM_CLEANUP = "system.cleanup"


SENSITIVE_KEYS = {
    "password",
    "secret",
    "token",
    "api_key",
    "authorization",
    "cookie",
    "hash",
}


def sanitize_details(details: dict[str, Any]) -> dict[str, Any]:
    """Redact credential material from audit details.

    Keys containing a sensitive fragment are replaced by a marker that still
    shows whether a value was present.
    """
    sanitized: dict[str, Any] = {}
    for key, value in details.items():
        key_lower = key.lower()
        if any(s in key_lower for s in SENSITIVE_KEYS):
            sanitized[key] = "[REDACTED - set]" if value is not None else "[REDACTED - unset]"
        elif isinstance(value, dict):
            sanitized[key] = sanitize_details(value)
        elif isinstance(value, UUID | datetime):
            sanitized[key] = str(value)
        else:
            sanitized[key] = value
    return sanitized


class AuditLogger:
    """Async audit logger with batched, retried persistence."""

    _instance: Optional["AuditLogger"] = None
    _instance_lock: threading.Lock = threading.Lock()

    BATCH_INTERVAL_MS = 100
    MAX_PENDING = 1000

    def __init__(
        self,
        session_factory: Callable | None = None,
        retry_config: RetryConfig | None = None,
    ):
        self._pending: list[dict] = []
        self._batch_lock = asyncio.Lock()
        # Serializes take-and-write so flush() observes in-flight batches
        self._write_lock = asyncio.Lock()
        self._batch_task: asyncio.Task | None = None
        self._batch_task_scheduled = False
        self._db_session_factory = session_factory
        self._retry_config = retry_config or RetryConfig()

    @classmethod
    def get_instance(cls) -> "AuditLogger":
        """Get or create singleton instance (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def set_db_session_factory(self, factory: Callable) -> None:
        """Set the database session factory used for audit writes."""
        self._db_session_factory = factory

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def record(
        self,
        action: AuditAction | str,
        actor_id: UUID | None = None,
        entity_type: str | None = None,
        entity_id: Any = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        level: str = "info",
    ) -> dict:
        """Record a security audit event.

        The event is logged immediately and queued for persistence.

        Returns:
            The audit event dict with generated ID and timestamp
        """
        action_value = action.value if isinstance(action, AuditAction) else action
        event = {
            "id": str(uuid.uuid4()),
            "actor_id": str(actor_id) if actor_id else None,
            "action": action_value,
            "level": level if level in _LEVELS else "info",
            "entity_type": entity_type,
            "entity_id": str(entity_id)[:64] if entity_id is not None else None,
            "details": sanitize_details(details) if details else None,
            "ip_address": ip_address,
            "user_agent": user_agent,
            "created_at": datetime.now(UTC).isoformat(),
        }

        logger.log(
            _LEVELS[event["level"]],
            f"{action_value} actor={event['actor_id']} ip={ip_address}",
            extra={"audit": event},
        )

        async with self._batch_lock:
            self._enqueue_locked([event])
            if not self._batch_task_scheduled and self._db_session_factory is not None:
                self._batch_task_scheduled = True
                self._batch_task = asyncio.create_task(self._flush_batch_safe())

        return event

    def _enqueue_locked(self, events: list[dict], front: bool = False) -> None:
        """Add events to the pending queue; caller holds ``_batch_lock``."""
        available = self.MAX_PENDING - len(self._pending)
        accepted = events[: max(0, available)]
        if len(accepted) < len(events):
            logger.error(
                f"Audit queue at capacity ({self.MAX_PENDING}); "
                f"{len(events) - len(accepted)} events not persisted"
            )
        if front:
            self._pending = accepted + self._pending
        else:
            self._pending.extend(accepted)

    async def _write_events(self, events: list[dict]) -> None:
        async with self._db_session_factory() as db:
            try:
                for event in events:
                    db.add(
                        AuditEvent(
                            id=uuid.UUID(event["id"]),
                            actor_id=uuid.UUID(event["actor_id"]) if event["actor_id"] else None,
                            action=event["action"],
                            level=event["level"],
                            entity_type=event["entity_type"],
                            entity_id=event["entity_id"],
                            details=event["details"],
                            ip_address=event["ip_address"],
                            user_agent=event["user_agent"],
                            created_at=datetime.fromisoformat(event["created_at"]),
                        )
                    )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def _drain(self) -> int:
        """Write every pending event; re-queue them if the write fails."""
        async with self._write_lock:
            async with self._batch_lock:
                events = self._pending.copy()
                self._pending.clear()

            if not events:
                return 0

            if self._db_session_factory is None:
                async with self._batch_lock:
                    self._enqueue_locked(events, front=True)
                logger.warning("No database session factory configured, audit events held in memory")
                return 0

            try:
                await retry_async(self._write_events, events, config=self._retry_config)
            except Exception as e:
                logger.error(f"ALERT: failed to persist {len(events)} audit events: {e}")
                async with self._batch_lock:
                    self._enqueue_locked(events, front=True)
                raise

            logger.debug(f"Flushed {len(events)} audit events to database")
            return len(events)

    async def _flush_batch_safe(self) -> None:
        """Background flush; reschedules itself while events remain."""
        succeeded = True
        try:
            await asyncio.sleep(self.BATCH_INTERVAL_MS / 1000)
            await self._drain()
        except Exception as e:
            succeeded = False
            logger.error(f"Unhandled error in audit flush task: {e}")
        finally:
            async with self._batch_lock:
                self._batch_task_scheduled = False
                self._batch_task = None
                if self._pending and self._db_session_factory is not None:
                    if not succeeded:
                        logger.warning(f"Retrying {len(self._pending)} queued audit events")
                    self._batch_task_scheduled = True
                    self._batch_task = asyncio.create_task(self._flush_batch_safe())

    async def flush(self) -> int:
        """Persist all pending events now.

        Returns:
            Number of events written

        Raises:
            The database error if the write still fails after retries
        """
        return await self._drain()

    async def close(self) -> None:
        """Flush outstanding events and wait for the background task."""
        try:
            await self._drain()
        except Exception as e:
            logger.error(f"Audit events left unpersisted at shutdown: {e}")
        task = self._batch_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def recent_events(
        self,
        db: AsyncSession,
        actor_id: UUID | None = None,
        actions: list[str] | None = None,
        limit: int = 20,
        levels: list[str] | None = None,
    ) -> list[AuditEvent]:
        """Read back recent audit events, newest first."""
        query = select(AuditEvent)
        if actor_id is not None:
            query = query.where(
                or_(AuditEvent.actor_id == actor_id, AuditEvent.entity_id == str(actor_id))
            )
        if actions:
            query = query.where(AuditEvent.action.in_(actions))
        if levels:
            query = query.where(AuditEvent.level.in_(levels))
        result = await db.execute(query.order_by(AuditEvent.created_at.desc()).limit(limit))
        return list(result.scalars().all())


def get_audit_logger() -> AuditLogger:
    """Get the audit logger singleton."""
    return AuditLogger.get_instance()
