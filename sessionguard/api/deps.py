"""Shared FastAPI dependencies: authenticated identity and admin checks."""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.core import get_db
from sessionguard.core.request_utils import get_client_ip, get_user_agent
from sessionguard.services.audit import AuditAction, AuditLogger, get_audit_logger
from sessionguard.services.errors import IPBlocked, PermissionDenied, TokenMalformed, TokenRevoked
from sessionguard.services.restrictions import SecurityRestrictionStore
from sessionguard.services.tokens import Identity, TokenValidator


def get_audit() -> AuditLogger:
    """Dependency returning the audit logger singleton."""
    return get_audit_logger()


def get_bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise TokenMalformed("Missing or invalid authorization header")
    return token.strip()


async def require_identity(
    request: Request,
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit),
) -> Identity:
    """Resolve the bearer access token into an Identity.

    This is the contract other services use to authenticate a request:
    the token must verify, and the caller's IP must pass the user's
    restrictions.
    """
    token = get_bearer_token(request)
    client_ip = get_client_ip(request)
    validator = TokenValidator(db, audit=audit)

    try:
        identity = await validator.verify_access(token)
    except TokenRevoked:
        await audit.record(
            AuditAction.TOKEN_REVOKED,
            entity_type="request",
            entity_id=request.url.path,
            details={"reason": "revoked access token presented"},
            ip_address=client_ip,
            user_agent=get_user_agent(request),
            level="warning",
        )
        raise

    if not await SecurityRestrictionStore(db).is_allowed(identity.user_id, client_ip):
        await audit.record(
            AuditAction.ACCESS_IP_BLOCKED,
            actor_id=identity.user_id,
            entity_type="session",
            entity_id=identity.session_id,
            ip_address=client_ip,
            user_agent=get_user_agent(request),
            level="warning",
        )
        raise IPBlocked()

    request.state.identity = identity
    return identity


async def require_admin(identity: Identity = Depends(require_identity)) -> Identity:
    if not identity.is_admin:
        raise PermissionDenied()
    return identity
