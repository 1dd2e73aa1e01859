"""Blacklisted JWT tokens - survives process restarts."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Enum, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from sessionguard.models.base import BaseModel, UTCDateTime, utcnow

TokenType = Enum("access", "refresh", name="token_type", native_enum=False, create_constraint=True)


class TokenBlacklist(BaseModel):
    """A revoked JWT identified by its JTI claim.

    Entries are created on logout, rotation and administrative revocation,
    and are only removed once ``expires_at`` (copied from the token) has
    passed.
    """

    __tablename__ = "token_blacklist"

    token_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    token_type: Mapped[str] = mapped_column(TokenType, nullable=False)
    user_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    blacklisted_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    # logout | rotated | admin-revoke | security-block
    reason: Mapped[str] = mapped_column(String(32), nullable=False)

    def __repr__(self) -> str:
        return f"<TokenBlacklist {self.token_id} ({self.reason})>"
