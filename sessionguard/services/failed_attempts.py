"""Failed-login tracking and brute-force lockout."""

import logging
import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.core.config import AuthPolicy, settings
from sessionguard.models import FailedLoginAttempt
from sessionguard.services.credentials import normalize_email

logger = logging.getLogger(__name__)

LOCK_NAMESPACE = "sessionguard-login"

SUSPICIOUS_MIN_SPREAD = 3
SUSPICIOUS_MIN_ATTEMPTS = 5


@dataclass(frozen=True)
class BlockStatus:
    blocked: bool
    retry_after: int = 0
    blocked_until: datetime | None = None
    email_attempts: int = 0
    ip_attempts: int = 0


def _seconds_until(moment: datetime, now: datetime) -> int:
    return max(1, math.ceil((moment - now).total_seconds()))


def _as_utc(moment: datetime) -> datetime:
    return moment.replace(tzinfo=UTC) if moment.tzinfo is None else moment


class FailedAttemptGuard:
    """Counts failed logins per email and per IP and stamps lockouts.

    Reaching the threshold within the window for either the email or the IP
    sets ``blocked_until`` on the matching rows. While any row for the email
    or IP carries a future ``blocked_until``, every attempt is refused,
    whether or not the password is right.
    """

    def __init__(self, session: AsyncSession, policy: AuthPolicy | None = None):
        self.session = session
        self.policy = policy or settings.auth_policy

    @staticmethod
    def _match(email: str | None, ip: str | None):
        conditions = []
        if email:
            conditions.append(FailedLoginAttempt.email == normalize_email(email))
        if ip:
            conditions.append(FailedLoginAttempt.ip_address == ip)
        return or_(*conditions)

    async def record_failure(
        self,
        email: str,
        ip: str | None,
        reason: str,
        user_agent: str | None = None,
    ) -> FailedLoginAttempt:
        attempt = FailedLoginAttempt(
            email=normalize_email(email),
            ip_address=ip,
            user_agent=user_agent,
            attempt_time=datetime.now(UTC),
            failure_reason=reason,
        )
        self.session.add(attempt)
        await self.session.flush()
        return attempt

    async def _count_recent(self, column, value: str, since: datetime) -> int:
        result = await self.session.execute(
            select(func.count(FailedLoginAttempt.id)).where(
                column == value,
                FailedLoginAttempt.cleared.is_(False),
                FailedLoginAttempt.attempt_time >= since,
            )
        )
        return result.scalar() or 0

    async def lock_keys(self, email: str | None, ip: str | None) -> None:
        """Serialize lockout decisions for this email and IP until commit.

        Counting, the password check and recording the failure must happen
        as one step per key, or concurrent guesses all see the count below
        the threshold. PostgreSQL takes transaction-scoped advisory locks,
        email before IP. SQLite already serializes writers with
        BEGIN IMMEDIATE.
        """
        bind = self.session.bind
        if bind is None or bind.dialect.name != "postgresql":
            return
        keys = []
        if email:
            keys.append(f"{LOCK_NAMESPACE}:email:{normalize_email(email)}")
        if ip:
            keys.append(f"{LOCK_NAMESPACE}:ip:{ip}")
        for key in keys:
            await self.session.execute(select(func.pg_advisory_xact_lock(func.hashtext(key))))

    async def check_blocked(self, email: str | None, ip: str | None) -> BlockStatus:
        """Report whether a login for this email/IP is currently refused.

        Takes the per-key locks from ``lock_keys`` first; they are held until
        the caller commits, so the failure it records afterwards is seen by
        the next attempt. Flushes the new ``blocked_until`` stamp when this
        call trips the threshold.
        """
        if not email and not ip:
            return BlockStatus(blocked=False)

        await self.lock_keys(email, ip)

        now = datetime.now(UTC)
        email = normalize_email(email) if email else None

        result = await self.session.execute(
            select(func.max(FailedLoginAttempt.blocked_until)).where(
                self._match(email, ip),
                FailedLoginAttempt.blocked_until > now,
            )
        )
        existing = result.scalar()
        if existing is not None:
            existing = _as_utc(existing)
            return BlockStatus(
                blocked=True,
                retry_after=_seconds_until(existing, now),
                blocked_until=existing,
            )

        since = now - self.policy.failed_attempt_window
        email_attempts = (
            await self._count_recent(FailedLoginAttempt.email, email, since) if email else 0
        )
        ip_attempts = (
            await self._count_recent(FailedLoginAttempt.ip_address, ip, since) if ip else 0
        )

        threshold = self.policy.failed_attempt_threshold
        trip_email = email if email_attempts >= threshold else None
        trip_ip = ip if ip_attempts >= threshold else None
        if not trip_email and not trip_ip:
            return BlockStatus(
                blocked=False, email_attempts=email_attempts, ip_attempts=ip_attempts
            )

        blocked_until = now + self.policy.block_duration
        await self.session.execute(
            update(FailedLoginAttempt)
            .where(
                self._match(trip_email, trip_ip),
                FailedLoginAttempt.cleared.is_(False),
                FailedLoginAttempt.attempt_time >= since,
                or_(
                    FailedLoginAttempt.blocked_until.is_(None),
                    FailedLoginAttempt.blocked_until < blocked_until,
                ),
            )
            .values(blocked_until=blocked_until)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()

        logger.warning(
            f"Login lockout until {blocked_until.isoformat()} "
            f"(email attempts={email_attempts}, ip {ip} attempts={ip_attempts})"
        )
        return BlockStatus(
            blocked=True,
            retry_after=_seconds_until(blocked_until, now),
            blocked_until=blocked_until,
            email_attempts=email_attempts,
            ip_attempts=ip_attempts,
        )

    async def clear_on_success(self, email: str) -> int:
        """Stop counting an email's past failures after a successful login.

        Rows are marked cleared, not deleted. Rows under an active block are
        left untouched.
        """
        now = datetime.now(UTC)
        result = await self.session.execute(
            update(FailedLoginAttempt)
            .where(
                FailedLoginAttempt.email == normalize_email(email),
                FailedLoginAttempt.cleared.is_(False),
                or_(
                    FailedLoginAttempt.blocked_until.is_(None),
                    FailedLoginAttempt.blocked_until <= now,
                ),
            )
            .values(cleared=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def recent_failures(self, email: str, window: timedelta | None = None) -> int:
        since = datetime.now(UTC) - (window or timedelta(hours=24))
        result = await self.session.execute(
            select(func.count(FailedLoginAttempt.id)).where(
                FailedLoginAttempt.email == normalize_email(email),
                FailedLoginAttempt.attempt_time >= since,
            )
        )
        return result.scalar() or 0

    async def list_blocked_ips(self) -> list[dict]:
        """Addresses currently under a lockout, latest expiry first."""
        now = datetime.now(UTC)
        result = await self.session.execute(
            select(
                FailedLoginAttempt.ip_address,
                func.max(FailedLoginAttempt.blocked_until).label("blocked_until"),
                func.count(FailedLoginAttempt.id).label("attempts"),
            )
            .where(
                FailedLoginAttempt.ip_address.is_not(None),
                FailedLoginAttempt.blocked_until > now,
            )
            .group_by(FailedLoginAttempt.ip_address)
            .order_by(func.max(FailedLoginAttempt.blocked_until).desc())
        )
        blocked = []
        for row in result:
            blocked.append(
                {
                    "ip_address": row.ip_address,
                    "blocked_until": _as_utc(row.blocked_until),
                    "attempts": row.attempts,
                }
            )
        return blocked

    async def failure_summary(self, since: datetime) -> dict[str, int]:
        """Aggregate failures since ``since``, including cleared rows."""
        day_ago = datetime.now(UTC) - timedelta(hours=24)
        result = await self.session.execute(
            select(
                func.count(FailedLoginAttempt.id).label("total"),
                func.count(func.distinct(FailedLoginAttempt.email)).label("unique_emails"),
                func.count(func.distinct(FailedLoginAttempt.ip_address)).label("unique_ips"),
                func.count(FailedLoginAttempt.id)
                .filter(FailedLoginAttempt.blocked_until.is_not(None))
                .label("blocked_attempts"),
                func.count(FailedLoginAttempt.id)
                .filter(FailedLoginAttempt.attempt_time >= day_ago)
                .label("last_24h"),
            ).where(FailedLoginAttempt.attempt_time >= since)
        )
        row = result.first()
        return {key: value or 0 for key, value in row._asdict().items()}

    async def _grouped_failures(
        self,
        key,
        spread,
        since: datetime,
        limit: int,
        min_spread: int = 0,
        min_attempts: int = 0,
    ) -> list[dict]:
        attempts = func.count(FailedLoginAttempt.id)
        distinct = func.count(func.distinct(spread))
        query = (
            select(
                key.label("value"),
                attempts.label("attempts"),
                distinct.label("spread"),
                func.max(FailedLoginAttempt.attempt_time).label("last_attempt"),
            )
            .where(FailedLoginAttempt.attempt_time >= since, key.is_not(None))
            .group_by(key)
            .order_by(attempts.desc(), key)
            .limit(limit)
        )
        if min_spread or min_attempts:
            query = query.having(distinct >= min_spread, attempts >= min_attempts)

        result = await self.session.execute(query)
        return [
            {
                "value": row.value,
                "attempts": row.attempts,
                "spread": row.spread,
                "last_attempt": _as_utc(row.last_attempt),
            }
            for row in result
        ]

    async def top_failed(self, by: str, since: datetime, limit: int = 20) -> list[dict]:
        """Emails or IPs (``by`` is "email" or "ip") with the most failures.

        ``spread`` counts the distinct IPs behind an email, or the distinct
        emails tried from an IP.
        """
        if by == "email":
            return await self._grouped_failures(
                FailedLoginAttempt.email, FailedLoginAttempt.ip_address, since, limit
            )
        return await self._grouped_failures(
            FailedLoginAttempt.ip_address, FailedLoginAttempt.email, since, limit
        )

    async def suspicious_activity(
        self, window: timedelta = timedelta(hours=24), limit: int = 50
    ) -> dict[str, list[dict]]:
        """Spraying patterns inside ``window``.

        An IP trying many emails, or an email tried from many IPs, is
        suspicious once it has at least ``SUSPICIOUS_MIN_SPREAD`` counterparts
        and ``SUSPICIOUS_MIN_ATTEMPTS`` failures.
        """
        since = datetime.now(UTC) - window
        ips = await self._grouped_failures(
            FailedLoginAttempt.ip_address,
            FailedLoginAttempt.email,
            since,
            limit,
            min_spread=SUSPICIOUS_MIN_SPREAD,
            min_attempts=SUSPICIOUS_MIN_ATTEMPTS,
        )
        emails = await self._grouped_failures(
            FailedLoginAttempt.email,
            FailedLoginAttempt.ip_address,
            since,
            limit,
            min_spread=SUSPICIOUS_MIN_SPREAD,
            min_attempts=SUSPICIOUS_MIN_ATTEMPTS,
        )
        if ips or emails:
            logger.warning(
                f"Suspicious login activity: {len(ips)} IP(s), {len(emails)} email(s)"
            )
        return {"ips": ips, "emails": emails}

    async def unblock(self, email: str | None = None, ip: str | None = None) -> int:
        """Lift an active lockout; the lifted rows also stop counting."""
        if not email and not ip:
            return 0
        now = datetime.now(UTC)
        result = await self.session.execute(
            update(FailedLoginAttempt)
            .where(self._match(email, ip), FailedLoginAttempt.blocked_until > now)
            .values(blocked_until=None, cleared=True)
            .execution_options(synchronize_session=False)
        )
        # Unblocked rows are cleared; remaining in-window rows would re-trip at once
        await self.session.execute(
            update(FailedLoginAttempt)
            .where(
                self._match(email, ip),
                FailedLoginAttempt.cleared.is_(False),
                FailedLoginAttempt.attempt_time >= now - self.policy.failed_attempt_window,
            )
            .values(cleared=True)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"Unblocked email={email} ip={ip} ({result.rowcount} rows)")
        return result.rowcount

    async def purge_older_than(self, cutoff: datetime) -> int:
        """Delete attempts older than ``cutoff`` whose lockout has lapsed."""
        now = datetime.now(UTC)
        result = await self.session.execute(
            delete(FailedLoginAttempt).where(
                FailedLoginAttempt.attempt_time < cutoff,
                or_(
                    FailedLoginAttempt.blocked_until.is_(None),
                    FailedLoginAttempt.blocked_until < now,
                ),
            )
        )
        return result.rowcount
