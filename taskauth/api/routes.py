from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from fastapi import APIRouter, Body, Depends, Header, Path, Request

from taskauth.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    MeResponse,
    PasswordChangeRequest,
    RegisterRequest,
    SessionListResponse,
    SessionResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    TokensResponse,
    UserActiveRequest,
    UserResponse,
)
from taskauth.logging import get_correlation_id, get_logger
from taskauth.service.auth import AuthContext, AuthResult
from taskauth.service.device import client_ip, device_info_from_request
from taskauth.service.errors import ForbiddenError
from taskauth.service.runtime import get_runtime
from taskauth.service.throttle import throttle_key

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _ok(data: Any) -> Envelope:
    if hasattr(data, "model_dump"):
        data = data.model_dump(by_alias=True, mode="json")
    return Envelope(status="ok", data=data, request_id=get_correlation_id() or str(uuid4()))


def _auth_payload(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_user(result.user),
        tokens=TokenPairResponse.from_pair(result.tokens),
        session=SessionResponse.from_session(
            result.session, current_session_id=result.session.id
        ),
    )


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    return await get_runtime().require_auth().authenticate(authorization)


async def get_admin_context(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not ctx.user.is_admin:
        raise ForbiddenError("Admin privileges required")
    return ctx


async def _throttle(request: Request, route: str, limit: int, window_minutes: int) -> None:
    runtime = get_runtime()
    ip = client_ip(request, runtime.settings.trusted_proxies)
    await runtime.throttle.hit(throttle_key(route, ip), limit, window_minutes * 60)


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, request: Request):
    """Create an account and sign it in on a fresh session.

    Raises:
        409: Email or username already registered (``details.field`` names which)
        429: Too many registrations from this address
    """
    runtime = get_runtime()
    settings = runtime.settings
    await _throttle(
        request, "register", settings.register_rate_limit, settings.register_rate_window_minutes
    )
    result = await runtime.require_auth().register(
        body.username,
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        device=device_info_from_request(request, settings.trusted_proxies),
    )
    return _ok(_auth_payload(result))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request):
    """Exchange email and password for a new session and token pair.

    Raises:
        401: Invalid credentials or deactivated account
        423: Account locked after too many failed attempts
        429: Too many login attempts from this address
    """
    runtime = get_runtime()
    settings = runtime.settings
    await _throttle(
        request, "login", settings.login_rate_limit, settings.login_rate_window_minutes
    )
    result = await runtime.require_auth().login(
        body.email,
        body.password,
        remember_me=body.remember_me,
        device=device_info_from_request(request, settings.trusted_proxies),
    )
    return _ok(_auth_payload(result))


@router.post("/refresh", response_model=Envelope)
async def refresh(body: Optional[TokenRefreshRequest] = Body(None)):
    """Rotate the refresh token; the session and token family are kept."""
    pair = await get_runtime().require_auth().refresh(body.refresh_token if body else None)
    return _ok(TokensResponse(tokens=TokenPairResponse.from_pair(pair)))


@router.post("/logout", response_model=Envelope)
async def logout(ctx: AuthContext = Depends(get_auth_context)):
    await get_runtime().require_auth().logout(ctx.user_id, ctx.session_id)
    return _ok({"message": "Logged out successfully"})


@router.post("/logout-all", response_model=Envelope)
async def logout_all(ctx: AuthContext = Depends(get_auth_context)):
    revoked = await get_runtime().require_auth().logout_all(ctx.user_id)
    return _ok({"message": "Logged out from all devices", "revoked": revoked})


@router.get("/me", response_model=Envelope)
async def me(ctx: AuthContext = Depends(get_auth_context)):
    return _ok(
        MeResponse(
            user=UserResponse.from_user(ctx.user),
            session=SessionResponse.from_session(
                ctx.session, current_session_id=ctx.session_id
            ),
        )
    )


@router.get("/sessions", response_model=Envelope)
async def list_sessions(ctx: AuthContext = Depends(get_auth_context)):
    sessions = await get_runtime().require_auth().list_sessions(ctx)
    return _ok(
        SessionListResponse(
            sessions=[
                SessionResponse.from_session(s, current_session_id=ctx.session_id)
                for s in sessions
            ]
        )
    )


@router.delete("/sessions/{session_id}", response_model=Envelope)
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_auth_context),
):
    """Revoke one of the caller's own active sessions.

    Raises:
        404: Session unknown, inactive or owned by someone else
    """
    await get_runtime().require_auth().revoke_session(ctx, session_id)
    return _ok({"message": "Session revoked"})


@router.put("/change-password", response_model=Envelope)
async def change_password(
    body: PasswordChangeRequest, ctx: AuthContext = Depends(get_auth_context)
):
    """Change the password, revoke every other session and re-issue this one's tokens.

    Raises:
        400: Current password is wrong or the new one fails the strength rules
    """
    pair = await get_runtime().require_auth().change_password(
        ctx, body.current_password, body.new_password
    )
    return _ok(TokensResponse(tokens=TokenPairResponse.from_pair(pair)))


@router.post("/admin/sessions/cleanup", response_model=Envelope)
async def cleanup_sessions(ctx: AuthContext = Depends(get_admin_context)):
    removed = get_runtime().require_auth().cleanup_expired_sessions()
    logger.info("admin_session_cleanup", admin_id=ctx.user_id, removed=removed)
    return _ok({"removed": removed})


@router.put("/admin/users/{user_id}/active", response_model=Envelope)
async def set_user_active(
    body: UserActiveRequest,
    user_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_admin_context),
):
    user = await get_runtime().require_auth().set_user_active(user_id, body.is_active)
    logger.info(
        "admin_user_active_changed",
        admin_id=ctx.user_id,
        user_id=user_id,
        is_active=body.is_active,
    )
    return _ok(UserResponse.from_user(user))
