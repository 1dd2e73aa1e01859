"""Refresh token records - the server-side half of a rotating refresh token."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from sessionguard.models.base import BaseModel, UTCDateTime


class RefreshToken(BaseModel):
    """A refresh token identified by its JTI claim.

    Only a SHA-256 hash of the signed token is stored. ``revoked`` flips
    exactly once, through a conditional UPDATE, whether the token was rotated
    or revoked by logout or an administrator.
    """

    __tablename__ = "refresh_tokens"

    jti: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    session_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    secret_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    issued_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # rotated | logout | admin-revoke | security-block
    revocation_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)

    __table_args__ = (Index("ix_refresh_tokens_user_revoked", "user_id", "revoked"),)

    def __repr__(self) -> str:
        state = self.revocation_reason or "active"
        return f"<RefreshToken {self.jti} {state}>"
