"""AuditEvent model - append-only security audit trail."""

from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Enum, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from sessionguard.models.base import BaseModel

AuditLevel = Enum(
    "info",
    "warning",
    "error",
    name="audit_level",
    native_enum=False,
    create_constraint=True,
)


class AuditEvent(BaseModel):
    """A security-relevant event.

    Rows are inserted by the audit logger only and are never updated or
    purged by application code.
    """

    __tablename__ = "audit_events"

    actor_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    level: Mapped[str] = mapped_column(AuditLevel, nullable=False, default="info")
    entity_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)

    __table_args__ = (Index("ix_audit_events_action_created", "action", "created_at"),)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action} actor={self.actor_id}>"

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": str(self.id),
            "actor_id": str(self.actor_id) if self.actor_id else None,
            "action": self.action,
            "level": self.level,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "details": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
