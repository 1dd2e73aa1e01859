"""Login sessions - one per device a user is signed in on."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from sessionguard.models.base import BaseModel, UTCDateTime


class UserSession(BaseModel):
    """A login session bound 1:1 to its current refresh token.

    ``expires_at`` mirrors the current refresh token's expiry and moves
    forward on every rotation.
    """

    __tablename__ = "user_sessions"

    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    refresh_token_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    device_info: Mapped[str | None] = mapped_column(String(255), nullable=True)

    last_used_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (Index("ix_user_sessions_user_active", "user_id", "active"),)

    def __repr__(self) -> str:
        return f"<UserSession {self.id} user={self.user_id} active={self.active}>"
