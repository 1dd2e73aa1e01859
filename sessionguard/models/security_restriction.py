"""Per-user IP allow/block rules."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, Enum, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from sessionguard.models.base import BaseModel, UTCDateTime

RestrictionType = Enum(
    "ip-allow",
    "ip-block",
    name="restriction_type",
    native_enum=False,
    create_constraint=True,
)


class SecurityRestriction(BaseModel):
    """An IP rule for one user.

    ``value`` is a single address or a CIDR network. Removal is a soft
    delete (``active = false``) so the history stays auditable.
    """

    __tablename__ = "security_restrictions"

    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    restriction_type: Mapped[str] = mapped_column(RestrictionType, nullable=False)
    value: Mapped[str] = mapped_column(String(64), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)

    __table_args__ = (Index("ix_security_restrictions_user_active", "user_id", "active"),)

    def __repr__(self) -> str:
        return f"<SecurityRestriction {self.restriction_type} {self.value}>"
