"""User account model."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from sessionguard.models.base import BaseModel, UTCDateTime

UserRole = Enum("user", "admin", name="user_role", native_enum=False, create_constraint=True)

UserStatus = Enum(
    "active",
    "suspended",
    "disabled",
    name="user_status",
    native_enum=False,
    create_constraint=True,
)


class User(BaseModel):
    """An account that can log in and hold sessions.

    Users are never hard-deleted while sessions reference them; deactivation
    is a status change, which also invalidates outstanding access tokens.
    """

    __tablename__ = "users"

    # Stored lower-cased
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(UserRole, nullable=False, default="user")
    status: Mapped[str] = mapped_column(UserStatus, nullable=False, default="active")

    # Free-form profile fields (name, restaurant name, ...)
    profile: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def __repr__(self) -> str:
        return f"<User {self.email}>"
