"""Authentication API endpoints."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.api.deps import get_audit, require_identity
from sessionguard.core import get_db
from sessionguard.core.request_utils import describe_device, get_client_ip, get_user_agent
from sessionguard.schemas.auth import (
    AuditEventResponse,
    AuthResponse,
    ChangePasswordRequest,
    IdentityResponse,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RestrictionResponse,
    SecurityStatusResponse,
    SessionListResponse,
    SessionResponse,
    TokenResponse,
    UserResponse,
)
from sessionguard.services.audit import AuditAction, AuditLogger
from sessionguard.services.auth import AuthService, LoginResult
from sessionguard.services.credentials import CredentialStore
from sessionguard.services.failed_attempts import FailedAttemptGuard
from sessionguard.services.restrictions import SecurityRestrictionStore
from sessionguard.services.rotation import RefreshRotator
from sessionguard.services.sessions import SessionRegistry
from sessionguard.services.tokens import Identity, TokenValidator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def get_auth_service(
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit),
) -> AuthService:
    """Dependency to get auth service."""
    return AuthService(db, audit=audit)


def get_session_registry(
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit),
) -> SessionRegistry:
    return SessionRegistry(db, audit)


def _auth_response(result: LoginResult) -> AuthResponse:
    return AuthResponse(
        **result.tokens.to_response(),
        user=UserResponse.model_validate(result.user),
    )


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    data: RegisterRequest,
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Create an account and return a token pair for the new session."""
    user_agent = get_user_agent(request)
    result = await auth_service.register(
        email=data.email,
        password=data.password,
        profile=data.profile_data(),
        ip_address=get_client_ip(request),
        user_agent=user_agent,
        device_info=describe_device(user_agent),
    )
    return _auth_response(result)


@router.post("/login", response_model=AuthResponse)
async def login(
    data: LoginRequest,
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Authenticate with email and password.

    Returns 429 while the email or IP is locked out and 403 when the
    account's IP restrictions refuse the caller, in both cases without
    checking the password.
    """
    user_agent = get_user_agent(request)
    result = await auth_service.login(
        email=data.email,
        password=data.password,
        ip_address=get_client_ip(request),
        user_agent=user_agent,
        device_info=describe_device(user_agent),
    )
    return _auth_response(result)


@router.post("/verify", response_model=IdentityResponse)
async def verify(identity: Identity = Depends(require_identity)) -> IdentityResponse:
    """Verify the bearer access token and describe its identity."""
    return IdentityResponse(
        user_id=identity.user_id,
        email=identity.email,
        role=identity.role,
        session_id=identity.session_id,
        token_format=identity.token_format.value,
        expires_at=identity.expires_at,
    )


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    data: RefreshRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit),
) -> TokenResponse:
    """Exchange a refresh token for a new pair; the old token stops working."""
    rotator = RefreshRotator(db, audit=audit)
    pair = await rotator.rotate(
        data.refresh_token,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return TokenResponse(**pair.to_response())


@router.post("/logout", response_model=MessageResponse)
async def logout(
    data: LogoutRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: SessionRegistry = Depends(get_session_registry),
) -> MessageResponse:
    """End the session that owns the given refresh token."""
    client_ip = get_client_ip(request)
    claims = await TokenValidator(db, audit=registry.audit).verify_refresh(
        data.refresh_token, ip_address=client_ip
    )
    await registry.logout(claims.jti, reason="logout", ip_address=client_ip)
    return MessageResponse(message="Logged out")


@router.post("/logout-all", response_model=LogoutAllResponse)
async def logout_all(
    request: Request,
    identity: Identity = Depends(require_identity),
    registry: SessionRegistry = Depends(get_session_registry),
) -> LogoutAllResponse:
    """Terminate every other session of the caller; the current one survives."""
    except_refresh_token_id = None
    if identity.session_id is not None:
        current = await registry.get_session(identity.session_id)
        if current is not None:
            except_refresh_token_id = current.refresh_token_id

    terminated = await registry.logout_all_devices(
        identity.user_id,
        except_refresh_token_id=except_refresh_token_id,
        reason="logout",
        ip_address=get_client_ip(request),
    )
    return LogoutAllResponse(
        message=f"Logged out of {terminated} other session(s)",
        sessions_terminated=terminated,
    )


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(
    identity: Identity = Depends(require_identity),
    registry: SessionRegistry = Depends(get_session_registry),
) -> SessionListResponse:
    """List the caller's active sessions."""
    sessions = await registry.list_sessions(identity.user_id)
    items = []
    for user_session in sessions:
        item = SessionResponse.model_validate(user_session)
        item.current = user_session.id == identity.session_id
        items.append(item)
    return SessionListResponse(sessions=items, total=len(items))


@router.delete("/sessions/{session_id}", response_model=MessageResponse)
async def revoke_own_session(
    session_id: UUID,
    identity: Identity = Depends(require_identity),
    registry: SessionRegistry = Depends(get_session_registry),
) -> MessageResponse:
    """End one of the caller's sessions, for example a lost device."""
    user_session = await registry.get_session(session_id)
    if user_session is None or user_session.user_id != identity.user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    if not await registry.revoke_session(session_id, reason="logout", actor_id=identity.user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session already ended")
    return MessageResponse(message="Session ended")


@router.get("/me", response_model=UserResponse)
async def get_me(
    identity: Identity = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
) -> UserResponse:
    """Get the current user."""
    user = await CredentialStore(db).get_by_id(identity.user_id)
    return UserResponse.model_validate(user)


@router.post("/change-password", response_model=LogoutAllResponse)
async def change_password(
    data: ChangePasswordRequest,
    request: Request,
    identity: Identity = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
    registry: SessionRegistry = Depends(get_session_registry),
) -> LogoutAllResponse:
    """Change the caller's password and end their other sessions."""
    client_ip = get_client_ip(request)
    credentials = CredentialStore(db)
    user = await credentials.get_by_id(identity.user_id)
    await credentials.change_password(user, data.current_password, data.new_password)

    except_refresh_token_id = None
    if identity.session_id is not None:
        current = await registry.get_session(identity.session_id)
        if current is not None:
            except_refresh_token_id = current.refresh_token_id
    terminated = await registry.logout_all_devices(
        identity.user_id,
        except_refresh_token_id=except_refresh_token_id,
        reason="security-block",
        ip_address=client_ip,
    )

    await registry.audit.record(
        AuditAction.USER_PASSWORD_CHANGED,
        actor_id=identity.user_id,
        entity_type="user",
        entity_id=identity.user_id,
        details={"sessions_terminated": terminated},
        ip_address=client_ip,
        user_agent=get_user_agent(request),
    )
    return LogoutAllResponse(message="Password changed", sessions_terminated=terminated)


@router.get("/security-status", response_model=SecurityStatusResponse)
async def security_status(
    identity: Identity = Depends(require_identity),
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit),
) -> SecurityStatusResponse:
    """Summarize the caller's sessions, restrictions and recent security events."""
    user = await CredentialStore(db).get_by_id(identity.user_id)
    sessions = await SessionRegistry(db, audit).list_sessions(identity.user_id)
    restrictions = await SecurityRestrictionStore(db).list_restrictions(identity.user_id)
    failures = await FailedAttemptGuard(db).recent_failures(identity.email)
    events = await audit.recent_events(db, actor_id=identity.user_id, limit=10)

    return SecurityStatusResponse(
        active_sessions=len(sessions),
        failed_logins_24h=failures,
        restrictions=[RestrictionResponse.model_validate(r) for r in restrictions],
        recent_events=[AuditEventResponse.model_validate(e) for e in events],
        last_login_at=user.last_login_at if user else None,
    )
