"""JWT issuing and validation.

Access and refresh tokens are HS256 JWTs carrying ``sub``, ``jti``, ``sid``,
``iat``, ``exp`` and ``type``. Validation always runs the cheap structural
checks (signature, expiry, claim shape) before touching storage.
"""

import hashlib
import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

import jwt
from jwt.exceptions import PyJWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.core.config import AuthPolicy, Settings, settings
from sessionguard.models import RefreshToken, TokenBlacklist, User, UserSession
from sessionguard.services.audit import AuditAction, AuditLogger, get_audit_logger
from sessionguard.services.errors import TokenExpired, TokenMalformed, TokenRevoked

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenFormat(str, Enum):
    """Claim layout of a decoded token, resolved once at parse time."""

    # sub/jti/sid/type pair issued by TokenIssuer
    ROTATED = "rotated"
    # Older single token shaped {userId, iat, exp}
    LEGACY = "legacy"


def hash_token(token: str) -> str:
    """SHA-256 hex digest stored in place of a refresh token."""
    return hashlib.sha256(token.encode()).hexdigest()


def _from_timestamp(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value), tz=UTC)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_jti: str
    refresh_jti: str
    session_id: UUID
    issued_at: datetime
    access_expires_at: datetime
    refresh_expires_at: datetime

    @property
    def expires_in(self) -> int:
        return int((self.access_expires_at - self.issued_at).total_seconds())

    @property
    def refresh_expires_in(self) -> int:
        return int((self.refresh_expires_at - self.issued_at).total_seconds())

    def to_response(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "bearer",
            "expires_in": self.expires_in,
            "refresh_expires_in": self.refresh_expires_in,
            "session_id": str(self.session_id),
        }


@dataclass(frozen=True)
class ParsedToken:
    format: TokenFormat
    user_id: UUID
    token_type: str | None
    jti: str | None
    session_id: UUID | None
    issued_at: datetime | None
    expires_at: datetime


@dataclass(frozen=True)
class RefreshClaims:
    user_id: UUID
    jti: str
    session_id: UUID
    expires_at: datetime


@dataclass(frozen=True)
class Identity:
    """The authenticated caller attached to a request."""

    user_id: UUID
    email: str
    role: str
    session_id: UUID | None
    token_id: str | None
    token_format: TokenFormat
    expires_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class TokenIssuer:
    """Mints signed token pairs. Persisting them is the caller's job."""

    def __init__(self, config: Settings | None = None, policy: AuthPolicy | None = None):
        self.config = config or settings
        self.policy = policy or self.config.auth_policy

    def _encode(self, payload: dict[str, Any]) -> str:
        token = jwt.encode(
            payload,
            self.config.effective_jwt_secret_key,
            algorithm=self.config.jwt_algorithm,
        )
        # PyJWT 2.x returns str; older type stubs may declare bytes
        return str(token)

    def issue_token_pair(self, user_id: UUID, session_id: UUID | None = None) -> TokenPair:
        """Issue an access/refresh pair with fresh JTIs.

        A new session id is generated when none is given; rotation passes the
        existing one so the session keeps its identity.
        """
        sid = session_id or uuid.uuid4()
        now = datetime.now(UTC).replace(microsecond=0)
        access_exp = now + self.policy.access_ttl
        refresh_exp = now + self.policy.refresh_ttl
        access_jti = secrets.token_hex(16)
        refresh_jti = secrets.token_hex(16)

        common = {"sub": str(user_id), "sid": str(sid), "iat": now, "iss": self.config.jwt_issuer}
        access_token = self._encode(
            {**common, "jti": access_jti, "exp": access_exp, "type": ACCESS}
        )
        refresh_token = self._encode(
            {**common, "jti": refresh_jti, "exp": refresh_exp, "type": REFRESH}
        )

        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_jti=access_jti,
            refresh_jti=refresh_jti,
            session_id=sid,
            issued_at=now,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )


class TokenValidator:
    """Verifies access and refresh tokens against signature and storage."""

    def __init__(
        self,
        session: AsyncSession,
        config: Settings | None = None,
        audit: AuditLogger | None = None,
    ):
        self.session = session
        self.config = config or settings
        self.audit = audit or get_audit_logger()

    def parse(self, token: str) -> ParsedToken:
        """Decode a token and resolve its format.

        Raises:
            TokenExpired: valid signature but ``exp`` has passed
            TokenMalformed: bad signature, encoding or claim layout
        """
        try:
            payload = jwt.decode(
                token,
                self.config.effective_jwt_secret_key,
                algorithms=[self.config.jwt_algorithm],
                options={"require": ["exp"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenExpired() from e
        except PyJWTError as e:
            raise TokenMalformed(f"Invalid token: {e}") from e

        try:
            if "type" in payload:
                return self._parse_rotated(payload)
            if "userId" in payload:
                return ParsedToken(
                    format=TokenFormat.LEGACY,
                    user_id=UUID(str(payload["userId"])),
                    token_type=None,
                    jti=None,
                    session_id=None,
                    issued_at=_from_timestamp(payload["iat"]) if "iat" in payload else None,
                    expires_at=_from_timestamp(payload["exp"]),
                )
        except (KeyError, TypeError, ValueError) as e:
            raise TokenMalformed("Token claims are invalid") from e

        raise TokenMalformed("Unrecognized token format")

    def _parse_rotated(self, payload: dict[str, Any]) -> ParsedToken:
        token_type = payload["type"]
        if token_type not in (ACCESS, REFRESH):
            raise TokenMalformed(f"Unknown token type: {token_type}")
        if payload.get("iss") not in (None, self.config.jwt_issuer):
            raise TokenMalformed("Unexpected token issuer")
        jti = payload["jti"]
        if not isinstance(jti, str) or not jti:
            raise TokenMalformed("Token missing jti")
        return ParsedToken(
            format=TokenFormat.ROTATED,
            user_id=UUID(str(payload["sub"])),
            token_type=token_type,
            jti=jti,
            session_id=UUID(str(payload["sid"])),
            issued_at=_from_timestamp(payload["iat"]),
            expires_at=_from_timestamp(payload["exp"]),
        )

    async def verify_access(self, token: str) -> Identity:
        """Validate an access token and return the caller's identity.

        Structural checks come first; the blacklist and session/user state
        are only consulted for a well-formed, unexpired access token.
        """
        parsed = self.parse(token)

        if parsed.format is TokenFormat.LEGACY:
            return await self._verify_legacy_access(parsed)

        if parsed.token_type != ACCESS:
            raise TokenMalformed("Not an access token")

        blacklisted = await self.session.execute(
            select(TokenBlacklist.id).where(TokenBlacklist.token_id == parsed.jti)
        )
        if blacklisted.scalar_one_or_none() is not None:
            logger.debug(f"Rejected blacklisted access token {parsed.jti}")
            raise TokenRevoked()

        result = await self.session.execute(
            select(User)
            .join(UserSession, UserSession.user_id == User.id)
            .where(
                UserSession.id == parsed.session_id,
                UserSession.user_id == parsed.user_id,
                UserSession.active.is_(True),
                User.status == "active",
            )
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise TokenRevoked("Session is no longer active")

        return Identity(
            user_id=user.id,
            email=user.email,
            role=user.role,
            session_id=parsed.session_id,
            token_id=parsed.jti,
            token_format=TokenFormat.ROTATED,
            expires_at=parsed.expires_at,
        )

    async def _verify_legacy_access(self, parsed: ParsedToken) -> Identity:
        if not self.config.accept_legacy_tokens:
            raise TokenMalformed("Legacy tokens are no longer accepted; please log in again")

        user = await self.session.get(User, parsed.user_id)
        if user is None or not user.is_active:
            raise TokenRevoked("User is no longer active")

        await self.audit.record(
            AuditAction.TOKEN_LEGACY_ACCEPTED,
            actor_id=user.id,
            entity_type="user",
            entity_id=user.id,
            level="warning",
        )
        return Identity(
            user_id=user.id,
            email=user.email,
            role=user.role,
            session_id=None,
            token_id=None,
            token_format=TokenFormat.LEGACY,
            expires_at=parsed.expires_at,
        )

    async def load_refresh_record(self, token: str) -> tuple[RefreshClaims, RefreshToken | None]:
        """Structurally validate a refresh token and load its stored record."""
        parsed = self.parse(token)
        if parsed.format is TokenFormat.LEGACY:
            raise TokenMalformed("Legacy tokens cannot be refreshed; please log in again")
        if parsed.token_type != REFRESH:
            raise TokenMalformed("Not a refresh token")

        claims = RefreshClaims(
            user_id=parsed.user_id,
            jti=parsed.jti,
            session_id=parsed.session_id,
            expires_at=parsed.expires_at,
        )
        result = await self.session.execute(
            select(RefreshToken).where(RefreshToken.jti == parsed.jti)
        )
        record = result.scalar_one_or_none()
        if record is not None and not hmac.compare_digest(record.secret_hash, hash_token(token)):
            record = None
        return claims, record

    async def record_reuse(
        self, claims: RefreshClaims, reason: str | None, ip_address: str | None = None
    ) -> None:
        await self.audit.record(
            AuditAction.TOKEN_REUSE_DETECTED,
            actor_id=claims.user_id,
            entity_type="session",
            entity_id=claims.session_id,
            details={"jti": claims.jti, "revocation_reason": reason},
            ip_address=ip_address,
            level="warning",
        )
        logger.warning(f"Refresh token reuse for session {claims.session_id} (token was {reason})")

    async def verify_refresh(self, token: str, ip_address: str | None = None) -> RefreshClaims:
        """Validate a refresh token against its unrevoked stored record.

        Presenting a token that was already rotated away is audited as reuse.

        Raises:
            TokenMalformed / TokenExpired: structural failure
            TokenRevoked: unknown, tampered, rotated or revoked
        """
        claims, record = await self.load_refresh_record(token)
        if record is None or record.user_id != claims.user_id:
            raise TokenRevoked()
        if record.revoked:
            if record.revocation_reason == "rotated":
                await self.record_reuse(claims, record.revocation_reason, ip_address)
            raise TokenRevoked(revocation_reason=record.revocation_reason)
        return claims
