"""Credential store - user accounts and Argon2id password hashing."""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.models import User
from sessionguard.services.errors import EmailTaken, InvalidCredentials, ValidationFailed

logger = logging.getLogger(__name__)

# Argon2 password hasher with recommended parameters
# Memory: 64 MiB, Time: 3 iterations, Parallelism: 4
ph = PasswordHasher(
    time_cost=3,
    memory_cost=65536,
    parallelism=4,
    hash_len=32,
    salt_len=16,
)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
USER_STATUSES = ("active", "suspended", "disabled")

# Verified against for unknown emails so response time does not reveal
# whether an account exists. Computed once, lazily.
_dummy_hash: str | None = None


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""
    return ph.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash using constant-time comparison."""
    try:
        return ph.verify(password_hash, password)
    except VerifyMismatchError:
        return False
    except (VerificationError, InvalidHashError) as e:
        logger.warning(f"Password hash could not be verified: {e}")
        return False


def _get_dummy_hash() -> str:
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = hash_password("sessionguard-dummy-password")
    return _dummy_hash


def validate_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH or len(password) > MAX_PASSWORD_LENGTH:
        raise ValidationFailed(
            "Password does not meet requirements",
            errors=[
                {
                    "field": "password",
                    "message": (
                        f"Password must be between {MIN_PASSWORD_LENGTH} and "
                        f"{MAX_PASSWORD_LENGTH} characters"
                    ),
                }
            ],
        )


class CredentialStore:
    """User account storage and password verification.

    Hashing runs in a worker thread; Argon2 at these parameters costs well
    over 100 ms per call and would otherwise stall the event loop.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_email(self, email: str) -> User | None:
        result = await self.session.execute(select(User).where(User.email == normalize_email(email)))
        return result.scalar_one_or_none()

    async def get_by_id(self, user_id: UUID) -> User | None:
        return await self.session.get(User, user_id)

    async def register(
        self,
        email: str,
        password: str,
        profile: dict[str, Any] | None = None,
        role: str = "user",
    ) -> User:
        """Create a user.

        Raises:
            EmailTaken: the email is already registered, including when a
                concurrent registration wins the unique constraint
            ValidationFailed: the password is outside the allowed length
        """
        email = normalize_email(email)
        validate_password(password)

        if await self.get_by_email(email) is not None:
            raise EmailTaken()

        password_hash = await asyncio.to_thread(hash_password, password)
        user = User(
            email=email,
            password_hash=password_hash,
            role=role,
            status="active",
            profile=profile or {},
        )
        self.session.add(user)
        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            raise EmailTaken() from e

        logger.info(f"Registered user {user.id}")
        return user

    async def verify_password(self, email: str, password: str) -> bool:
        """Check a password for an email without revealing if the email exists."""
        user = await self.get_by_email(email)
        if user is None:
            await asyncio.to_thread(verify_password, password, _get_dummy_hash())
            return False
        return await asyncio.to_thread(verify_password, password, user.password_hash)

    async def authenticate(self, email: str, password: str) -> User:
        """Return the user for valid credentials.

        Raises InvalidCredentials for unknown emails, wrong passwords and
        inactive accounts alike.
        """
        user = await self.get_by_email(email)

        if user is None:
            await asyncio.to_thread(verify_password, password, _get_dummy_hash())
            raise InvalidCredentials()

        if not await asyncio.to_thread(verify_password, password, user.password_hash):
            raise InvalidCredentials()

        if not user.is_active:
            logger.info(f"Login refused for {user.status} user {user.id}")
            raise InvalidCredentials()

        if ph.check_needs_rehash(user.password_hash):
            user.password_hash = await asyncio.to_thread(hash_password, password)

        return user

    async def change_password(self, user: User, current_password: str, new_password: str) -> None:
        """Change a user's password after re-checking the current one."""
        if not await asyncio.to_thread(verify_password, current_password, user.password_hash):
            raise InvalidCredentials("Current password is incorrect")
        validate_password(new_password)

        user.password_hash = await asyncio.to_thread(hash_password, new_password)
        await self.session.flush()
        logger.info(f"Password changed for user {user.id}")

    async def set_status(self, user_id: UUID, status: str) -> User | None:
        """Soft-deactivate or reactivate a user."""
        if status not in USER_STATUSES:
            raise ValidationFailed(
                "Invalid status", errors=[{"field": "status", "message": f"Unknown status {status}"}]
            )
        user = await self.get_by_id(user_id)
        if user is None:
            return None
        user.status = status
        user.updated_at = datetime.now(UTC)
        await self.session.flush()
        logger.info(f"User {user.id} status set to {status}")
        return user
