"""Cleanup service - purges expired security state on a schedule.

Every delete is conditioned on expiry, so a pass is idempotent and may run
on several instances at once. Audit events are never purged here.
"""

import asyncio
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.core import async_session_maker, settings
from sessionguard.core.logging import get_logger
from sessionguard.core.retry import RetryConfig, with_retry
from sessionguard.models import RefreshToken, TokenBlacklist, UserSession
from sessionguard.services.audit import AuditAction, get_audit_logger
from sessionguard.services.failed_attempts import FailedAttemptGuard
from sessionguard.services.restrictions import SecurityRestrictionStore

logger = get_logger("cleanup")

# Wait before first cleanup to let the app start up
STARTUP_DELAY_SECONDS = 60


@dataclass
class CleanupReport:
    blacklist_entries: int = 0
    sessions: int = 0
    refresh_tokens: int = 0
    failed_attempts: int = 0
    restrictions_expired: int = 0

    @property
    def total(self) -> int:
        return sum(asdict(self).values())


async def purge_expired(
    db: AsyncSession,
    now: datetime | None = None,
    failed_attempt_retention_days: int | None = None,
) -> CleanupReport:
    """Run one cleanup pass in ``db`` and commit it."""
    now = now or datetime.now(UTC)
    retention = failed_attempt_retention_days or settings.failed_attempt_retention_days
    report = CleanupReport()

    result = await db.execute(delete(TokenBlacklist).where(TokenBlacklist.expires_at < now))
    report.blacklist_entries = result.rowcount

    result = await db.execute(delete(UserSession).where(UserSession.expires_at < now))
    report.sessions = result.rowcount

    result = await db.execute(delete(RefreshToken).where(RefreshToken.expires_at < now))
    report.refresh_tokens = result.rowcount

    guard = FailedAttemptGuard(db)
    report.failed_attempts = await guard.purge_older_than(now - timedelta(days=retention))

    report.restrictions_expired = await SecurityRestrictionStore(db).expire_restrictions()

    await db.commit()
    return report


class CleanupService:
    """Background service that periodically purges expired security state."""

    _instance: Optional["CleanupService"] = None
    _instance_lock: threading.Lock = threading.Lock()
    _task: asyncio.Task | None = None

    def __init__(
        self,
        interval_seconds: int | None = None,
        session_factory: Callable | None = None,
    ):
        self._running = False
        self._interval_seconds = interval_seconds or settings.cleanup_interval_seconds
        self._session_factory = session_factory or async_session_maker

    @classmethod
    def get_instance(cls) -> "CleanupService":
        """Get singleton instance of the cleanup service (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                # Double-check locking pattern
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @property
    def interval_seconds(self) -> int:
        return self._interval_seconds

    async def start(self):
        """Start the background cleanup task."""
        if self._running:
            logger.warning("Cleanup service is already running")
            return

        self._running = True
        CleanupService._task = asyncio.create_task(self._cleanup_loop())
        logger.info(f"Cleanup service started (interval: {self._interval_seconds}s)")

    async def stop(self):
        """Stop the background cleanup task."""
        self._running = False
        if CleanupService._task:
            CleanupService._task.cancel()
            try:
                await CleanupService._task
            except asyncio.CancelledError:
                pass
            CleanupService._task = None
        logger.info("Cleanup service stopped")

    async def _cleanup_loop(self):
        """Main loop that periodically purges expired rows."""
        await asyncio.sleep(STARTUP_DELAY_SECONDS)

        while self._running:
            try:
                await self._run_cleanup()
            except Exception as e:
                logger.error(f"Error in security cleanup: {e}")

            await asyncio.sleep(self._interval_seconds)

    @with_retry(config=RetryConfig(max_retries=2))
    async def _run_cleanup(self) -> CleanupReport:
        """Execute a single cleanup run."""
        async with self._session_factory() as db:
            try:
                report = await purge_expired(db)
            except Exception as e:
                logger.exception(f"Error during security cleanup: {e}")
                await db.rollback()
                raise  # Propagate to _cleanup_loop which handles logging

        if report.total > 0:
            logger.info(f"Security cleanup removed expired rows: {asdict(report)}")
            await get_audit_logger().record(
                AuditAction.SYSTEM_CLEANUP,
                entity_type="system",
                details=asdict(report),
            )
        return report

    async def run_cleanup_now(self) -> CleanupReport:
        """Manually trigger a cleanup run."""
        return await self._run_cleanup()
