"""Failed login attempts used for brute-force lockout."""

from datetime import datetime

from sqlalchemy import Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from sessionguard.models.base import BaseModel, UTCDateTime, utcnow


class FailedLoginAttempt(BaseModel):
    """One rejected login.

    ``cleared`` is set by a later successful login so the row stops counting
    toward lockout; rows are kept for the retention period either way.
    """

    __tablename__ = "failed_login_attempts"

    email: Mapped[str] = mapped_column(String(320), nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    attempt_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    failure_reason: Mapped[str] = mapped_column(String(64), nullable=False)
    blocked_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cleared: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_failed_login_attempts_email_time", "email", "attempt_time"),
        Index("ix_failed_login_attempts_ip_time", "ip_address", "attempt_time"),
        Index("ix_failed_login_attempts_blocked_until", "blocked_until"),
    )

    def __repr__(self) -> str:
        return f"<FailedLoginAttempt {self.email} from {self.ip_address}>"
