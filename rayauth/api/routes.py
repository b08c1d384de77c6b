from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response

from rayauth.api.schemas import (
    AuthResponse,
    BootstrapRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    OAuthStartResponse,
    OtpSendRequest,
    OtpSendResponse,
    OtpVerifyRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileResponse,
    RegisterRequest,
    RevokeOthersRequest,
    SessionListResponse,
    SessionResponse,
    SessionStatsResponse,
    TokenRefreshRequest,
    TokenRefreshResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from rayauth.logging import get_logger
from rayauth.service.auth import AuthContext
from rayauth.service.roles import Role, role_satisfies
from rayauth.service.runtime import check_rate_limit, get_runtime
from rayauth.service.sessions import RequestMeta

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token for ``key``; 429 with ``Retry-After`` when exhausted."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit, window_seconds=window_seconds)
        raise _http_error(
            "rate_limited",
            "Too many requests. Please try again later.",
            status_code=429,
            details={"retry_after_seconds": reset_seconds},
            headers={"Retry-After": str(max(1, reset_seconds))},
        )
    return info


async def get_user(
    authorization: Optional[str] = Header(None),
    x_session_id: Optional[str] = Header(None, alias="X-Session-ID"),
) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(authorization)
    if x_session_id:
        runtime.auth.touch_session(ctx.user_id, x_session_id)
    return ctx


def require_roles(*roles: Role) -> Callable[..., AuthContext]:
    """Dependency factory admitting callers whose role covers one of ``roles``."""

    async def _dependency(principal: AuthContext = Depends(get_user)) -> AuthContext:
        if not role_satisfies(principal.role, roles):
            raise _http_error(
                "forbidden",
                "Insufficient permissions",
                status_code=403,
                details={"required_roles": [r.value for r in roles]},
            )
        return principal

    return _dependency


def _auth_envelope(result) -> Envelope:
    return Envelope(status="ok", data=AuthResponse(**result.to_dict()))


# -- credentials -----------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: invalid credentials or disabled account
        403: account temporarily locked
        429: rate limit exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request)}",
        runtime.settings.login_rate_limit,
        runtime.settings.rate_limit_window_seconds,
        response=response,
    )
    result = await runtime.auth.login(body.email, body.password, _request_meta(request))
    return _auth_envelope(result)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.register_rate_limit,
        runtime.settings.rate_limit_window_seconds,
        response=response,
    )
    result = await runtime.auth.register(
        body.email,
        body.password,
        tenant_id=body.tenant_id or runtime.settings.default_tenant_id,
        username=body.username,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
        role=body.role,
        meta=_request_meta(request),
    )
    return _auth_envelope(result)


@router.post("/auth/bootstrap", response_model=Envelope, status_code=201, tags=["auth"])
async def bootstrap(body: BootstrapRequest, request: Request, response: Response):
    """Create the first tenant and its PDG account from an activation code."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"bootstrap:{_client_ip(request)}",
        runtime.settings.register_rate_limit,
        runtime.settings.rate_limit_window_seconds,
        response=response,
    )
    result = await runtime.auth.bootstrap(
        body.activation_code,
        tenant_name=body.tenant_name,
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        tenant_code=body.tenant_code,
        currency=body.currency,
        timezone_name=body.timezone,
        phone=body.phone,
        meta=_request_meta(request),
    )
    return _auth_envelope(result)


@router.post("/auth/bootstrap/verify-code", response_model=Envelope, tags=["auth"])
async def verify_activation_code(body: VerifyCodeRequest):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=VerifyCodeResponse(**runtime.auth.verify_activation_code(body.code)),
    )


# -- one-time codes ----------------------------------------------------------


@router.post("/auth/otp/send", response_model=Envelope, tags=["auth"])
async def send_otp(body: OtpSendRequest, request: Request, response: Response):
    """Issue a 6-digit code for an email address or phone number.

    Raises:
        429: a code was issued less than a minute ago, or the client is rate limited
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:send:{_client_ip(request)}",
        runtime.settings.otp_rate_limit,
        runtime.settings.rate_limit_window_seconds,
        response=response,
    )
    result = await runtime.otp.send_otp(body.contact)
    if not result["success"]:
        raise _http_error(
            "rate_limited",
            result["message"],
            status_code=429,
            details={"retry_after_seconds": result["retry_after"]},
            headers={"Retry-After": str(result["retry_after"])},
        )
    return Envelope(status="ok", data=OtpSendResponse(**result))


@router.post("/auth/otp/verify", response_model=Envelope, tags=["auth"])
async def verify_otp(body: OtpVerifyRequest, request: Request, response: Response):
    """Check a code; three attempts per issued code."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:verify:{_client_ip(request)}",
        runtime.settings.login_rate_limit,
        runtime.settings.rate_limit_window_seconds,
        response=response,
    )
    result = await runtime.otp.verify_otp(body.contact, body.code)
    return Envelope(status="ok", data=VerifyCodeResponse(**result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    """Rotate a refresh token.

    Presenting a token that no active session holds revokes every session of
    its owner.
    """
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token, _request_meta(request))
    return Envelope(
        status="ok",
        data=TokenRefreshResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type=result.token_type,
            expires_in=result.expires_in,
            session_id=result.session_id,
        ),
    )


# -- sessions --------------------------------------------------------------


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    session_id = body.session_id if body else None
    result = await runtime.auth.logout(principal.user_id, session_id)
    return Envelope(status="ok", data=MessageResponse(**result))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    result = await runtime.auth.logout_all(principal.user_id)
    return Envelope(status="ok", data=MessageResponse(**result))


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = await runtime.auth.get_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[
                SessionResponse(
                    id=s.id,
                    device_info=s.device_info,
                    ip_address=s.ip_address,
                    last_activity=s.last_activity,
                    created_at=s.created_at,
                    is_active=s.is_active,
                )
                for s in sessions
            ]
        ),
    )


@router.post("/auth/sessions/revoke-others", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(
    body: RevokeOthersRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    result = await runtime.auth.revoke_other_sessions(principal.user_id, body.current_session_id)
    return Envelope(status="ok", data=MessageResponse(**result))


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    result = await runtime.auth.revoke_session(principal.user_id, session_id)
    return Envelope(status="ok", data=MessageResponse(**result))


# -- password lifecycle ----------------------------------------------------


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest, request: Request, response: Response):
    """Request a reset link. The answer is identical whether or not the email exists."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"forgot:{_client_ip(request)}",
        runtime.settings.forgot_password_rate_limit,
        runtime.settings.rate_limit_window_seconds,
        response=response,
    )
    result = await runtime.auth.forgot_password(body.email)
    return Envelope(status="ok", data=MessageResponse(**result))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    result = await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(**result))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    result = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=MessageResponse(**result))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    profile = await runtime.auth.get_profile(principal.user_id)
    return Envelope(status="ok", data=ProfileResponse(**profile))


# -- oauth -----------------------------------------------------------------


@router.get("/auth/oauth/{provider}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(
    request: Request,
    provider: str = Path(..., max_length=32, description="OAuth provider (google, github)"),
):
    """Return the provider authorization URL and the one-shot state."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"oauth:start:{_client_ip(request)}", 20, 60)
    start = await runtime.auth.oauth.start(provider)
    return Envelope(status="ok", data=OAuthStartResponse(**start))


@router.get("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    request: Request,
    provider: str = Path(..., max_length=32, description="OAuth provider"),
    code: str = Query(..., max_length=512, description="Authorization code from OAuth provider"),
    state: str = Query(..., max_length=128, description="State parameter for CSRF protection"),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"oauth:callback:{_client_ip(request)}", 10, 60)
    profile = await runtime.auth.oauth.complete(provider, code, state)
    result = await runtime.auth.handle_oauth_login(profile, _request_meta(request))
    return _auth_envelope(result)


# -- admin -----------------------------------------------------------------


@router.get("/admin/sessions/stats", response_model=Envelope, tags=["admin"])
async def session_stats(principal: AuthContext = Depends(require_roles(Role.MANAGER))):
    runtime = get_runtime()
    return Envelope(status="ok", data=SessionStatsResponse(**runtime.auth.get_session_stats()))
