"""Administrative security endpoints: IP restrictions, lockouts, revocation, stats."""

from datetime import UTC, datetime, timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.api.deps import get_audit, require_admin
from sessionguard.core import get_db
from sessionguard.core.request_utils import get_client_ip
from sessionguard.models import SecurityRestriction, TokenBlacklist
from sessionguard.schemas.auth import (
    BlockedIPResponse,
    FailureSource,
    FailureSummary,
    LogoutAllResponse,
    MessageResponse,
    RestrictionCreate,
    RestrictionResponse,
    SecurityEventResponse,
    SecurityStatsResponse,
    UnblockRequest,
    UnblockResponse,
    UserResponse,
    UserStatusRequest,
)
from sessionguard.services.audit import AuditAction, AuditLogger
from sessionguard.services.credentials import CredentialStore
from sessionguard.services.errors import ValidationFailed
from sessionguard.services.failed_attempts import FailedAttemptGuard
from sessionguard.services.restrictions import SecurityRestrictionStore
from sessionguard.services.sessions import SessionRegistry
from sessionguard.services.tokens import Identity

router = APIRouter(prefix="/auth", tags=["security"])


async def _require_user(db: AsyncSession, user_id: UUID):
    user = await CredentialStore(db).get_by_id(user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@router.post(
    "/security-restrictions",
    response_model=RestrictionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_restriction(
    data: RestrictionCreate,
    request: Request,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit),
) -> RestrictionResponse:
    """Add an IP allow or block rule for a user."""
    await _require_user(db, data.user_id)
    restriction = await SecurityRestrictionStore(db).add_restriction(
        user_id=data.user_id,
        restriction_type=data.restriction_type,
        value=data.value,
        expires_at=data.expires_at,
        notes=data.notes,
        created_by=admin.user_id,
    )
    await db.commit()

    await audit.record(
        AuditAction.RESTRICTION_CREATE,
        actor_id=admin.user_id,
        entity_type="restriction",
        entity_id=restriction.id,
        details={
            "user_id": data.user_id,
            "restriction_type": restriction.restriction_type,
            "value": restriction.value,
        },
        ip_address=get_client_ip(request),
    )
    return RestrictionResponse.model_validate(restriction)


@router.get("/security-restrictions", response_model=list[RestrictionResponse])
async def list_restrictions(
    user_id: UUID | None = Query(None),
    include_inactive: bool = Query(False),
    _admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> list[RestrictionResponse]:
    """List IP rules, optionally for one user."""
    restrictions = await SecurityRestrictionStore(db).list_restrictions(
        user_id=user_id, include_inactive=include_inactive
    )
    return [RestrictionResponse.model_validate(r) for r in restrictions]


@router.delete("/security-restrictions/{restriction_id}", response_model=MessageResponse)
async def remove_restriction(
    restriction_id: UUID,
    request: Request,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit),
) -> MessageResponse:
    """Deactivate an IP rule."""
    restriction = await SecurityRestrictionStore(db).remove_restriction(restriction_id)
    if restriction is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Restriction not found")
    await db.commit()

    await audit.record(
        AuditAction.RESTRICTION_REMOVE,
        actor_id=admin.user_id,
        entity_type="restriction",
        entity_id=restriction_id,
        details={"user_id": restriction.user_id},
        ip_address=get_client_ip(request),
    )
    return MessageResponse(message="Restriction removed")


@router.get("/blocked", response_model=list[BlockedIPResponse])
async def list_blocked_ips(
    _admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> list[BlockedIPResponse]:
    """List IP addresses currently locked out by failed logins."""
    blocked = await FailedAttemptGuard(db).list_blocked_ips()
    return [BlockedIPResponse(**entry) for entry in blocked]


@router.post("/unblock", response_model=UnblockResponse)
async def unblock(
    data: UnblockRequest,
    request: Request,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit),
) -> UnblockResponse:
    """Lift a failed-login lockout for an email and/or IP."""
    if not data.email and not data.ip_address:
        raise ValidationFailed(
            "Nothing to unblock",
            errors=[{"field": "email", "message": "Provide an email or an ip_address"}],
        )
    cleared = await FailedAttemptGuard(db).unblock(email=data.email, ip=data.ip_address)
    await db.commit()

    await audit.record(
        AuditAction.SECURITY_UNBLOCK,
        actor_id=admin.user_id,
        entity_type="lockout",
        entity_id=data.ip_address or data.email,
        details={"email": data.email, "ip_address": data.ip_address, "rows": cleared},
        ip_address=get_client_ip(request),
    )
    return UnblockResponse(message="Unblocked", rows_cleared=cleared)


@router.post("/users/{user_id}/revoke-sessions", response_model=LogoutAllResponse)
async def revoke_user_sessions(
    user_id: UUID,
    request: Request,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit),
) -> LogoutAllResponse:
    """Terminate every session a user holds."""
    await _require_user(db, user_id)
    terminated = await SessionRegistry(db, audit).logout_all_devices(
        user_id,
        reason="admin-revoke",
        actor_id=admin.user_id,
        ip_address=get_client_ip(request),
    )
    return LogoutAllResponse(
        message=f"Revoked {terminated} session(s)", sessions_terminated=terminated
    )


@router.patch("/users/{user_id}/status", response_model=UserResponse)
async def set_user_status(
    user_id: UUID,
    data: UserStatusRequest,
    request: Request,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit),
) -> UserResponse:
    """Suspend, disable or reactivate a user.

    Deactivating a user also terminates all of their sessions.
    """
    client_ip = get_client_ip(request)
    credentials = CredentialStore(db)
    user = await _require_user(db, user_id)
    previous_status = user.status
    await credentials.set_status(user_id, data.status)
    await db.commit()

    await audit.record(
        AuditAction.USER_STATUS_CHANGED,
        actor_id=admin.user_id,
        entity_type="user",
        entity_id=user_id,
        details={"old_status": previous_status, "new_status": data.status},
        ip_address=client_ip,
        level="info" if data.status == "active" else "warning",
    )

    if data.status != "active":
        await SessionRegistry(db, audit).logout_all_devices(
            user_id,
            reason="security-block",
            actor_id=admin.user_id,
            ip_address=client_ip,
        )
    return UserResponse.model_validate(user)


PERIODS = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


@router.get("/security-stats", response_model=SecurityStatsResponse)
async def security_stats(
    period: str = Query("30d", pattern="^(24h|7d|30d)$"),
    _admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit),
) -> SecurityStatsResponse:
    """Aggregate failed logins, lockouts, restrictions and recent warnings.

    Suspicious activity always looks at the last 24 hours.
    """
    now = datetime.now(UTC)
    since = now - PERIODS[period]
    guard = FailedAttemptGuard(db)

    summary = await guard.failure_summary(since)
    blocked_ips = await guard.list_blocked_ips()
    top_emails = await guard.top_failed("email", since, limit=10)
    top_ips = await guard.top_failed("ip", since, limit=10)
    suspicious = await guard.suspicious_activity()

    restrictions_result = await db.execute(
        select(func.count(SecurityRestriction.id)).where(
            SecurityRestriction.active.is_(True),
            or_(SecurityRestriction.expires_at.is_(None), SecurityRestriction.expires_at > now),
        )
    )
    blacklist_result = await db.execute(
        select(func.count(TokenBlacklist.id)).where(TokenBlacklist.expires_at > now)
    )
    warnings = await audit.recent_events(db, levels=["warning", "error"], limit=20)

    return SecurityStatsResponse(
        period=period,
        failed_logins=FailureSummary(**summary),
        currently_blocked_ips=len(blocked_ips),
        active_restrictions=restrictions_result.scalar() or 0,
        blacklisted_tokens=blacklist_result.scalar() or 0,
        top_failed_emails=[FailureSource(**row) for row in top_emails],
        top_failed_ips=[FailureSource(**row) for row in top_ips],
        suspicious_ips=[FailureSource(**row) for row in suspicious["ips"]],
        suspicious_emails=[FailureSource(**row) for row in suspicious["emails"]],
        recent_warnings=[SecurityEventResponse.model_validate(e) for e in warnings],
    )
