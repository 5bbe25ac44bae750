from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response

from phonegate.api.schemas import (
    AuthResponse,
    CancelDeletionRequest,
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    OtpIssueResponse,
    OtpLoginRequest,
    OtpRequest,
    PasswordConfirmRequest,
    PasswordResetRequest,
    PhoneChangeOtpRequest,
    PhoneChangeRequest,
    RefreshRequest,
    RegisterRequest,
    RevokedSessionsResponse,
    SessionInfo,
    SessionListResponse,
    SuspendRequest,
    UserInfo,
)
from phonegate.logging import get_logger, sanitize_error_message
from phonegate.service.errors import (
    AuthenticationError,
    NotFoundError,
    RateLimitedError,
    ServiceError,
)
from phonegate.service.lifecycle import LoginResult
from phonegate.service.otp import OtpIssue
from phonegate.service.phone import mask_phone
from phonegate.service.rate_limit import Algorithm
from phonegate.service.runtime import Runtime, get_runtime
from phonegate.service.sessions import AuthContext
from phonegate.storage.models import DeviceInfo, Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


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


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Enforce a fixed-window limit and optionally apply headers to the response.

    Raises:
        RateLimitedError: with ``retry_after`` when the window is exhausted.
    """
    decision = await runtime.limiter.check(key, limit, window_seconds, Algorithm.FIXED)
    info = RateLimitInfo(
        decision.limit, decision.remaining, decision.retry_after or window_seconds
    )
    if response is not None:
        info.apply_headers(response)
    if not decision.allowed:
        logger.info(
            "http_rate_limit_exceeded",
            key=sanitize_error_message(key),
            limit=limit,
            retry_after=decision.retry_after,
        )
        raise RateLimitedError(retry_after=decision.retry_after)
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _device(body) -> DeviceInfo:
    return DeviceInfo(
        device_id=body.device_id,
        device_type=body.device_type,
        device_name=body.device_name,
    )


def _phone_key(runtime: Runtime, raw: str) -> str:
    # canonical form when possible so spacing variants share one counter
    try:
        return runtime.phones.normalize(raw).e164
    except ServiceError:
        return raw.strip()


def _auth_response(result: LoginResult) -> AuthResponse:
    return AuthResponse(
        user_id=result.user.id,
        session_id=result.session.id,
        session_expires_at=result.session.expires_at,
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        access_expires_at=result.tokens.access_expires_at,
        refresh_expires_at=result.tokens.refresh_expires_at,
        token_type=result.tokens.token_type,
        role=result.user.role,
    )


def _otp_response(issue: OtpIssue) -> OtpIssueResponse:
    return OtpIssueResponse(
        verification_id=issue.verification_id,
        expires_at=issue.expires_at,
        phone_masked=issue.phone_masked,
    )


def _session_info(session: Session, current_session_id: Optional[str] = None) -> SessionInfo:
    return SessionInfo(
        id=session.id,
        device_id=session.device.device_id,
        device_type=session.device.device_type,
        device_name=session.device.device_name,
        ip_address=session.ip_address,
        created_at=session.created_at,
        expires_at=session.expires_at,
        last_refreshed_at=session.last_refreshed_at,
        current=session.id == current_session_id,
    )


def _user_info(runtime: Runtime, user: User) -> UserInfo:
    return UserInfo(
        id=user.id,
        phone_masked=mask_phone(user.phone),
        status=user.status,
        role=user.role,
        phone_verified=user.phone_verified,
        suspension_reason=user.suspension_reason,
        suspension_until=user.suspension_until,
        deletion_due_at=runtime.lifecycle.deletion_due_at(user),
        created_at=user.created_at,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.sessions.authenticate(authorization)


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if not principal.is_admin:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


# authentication


@router.post("/auth/otp/request", response_model=Envelope, status_code=201, tags=["auth"])
async def request_otp(body: OtpRequest, request: Request):
    runtime = get_runtime()
    issue = await runtime.lifecycle.request_otp(body.phone, body.purpose, _client_ip(request))
    return Envelope(status="ok", data=_otp_response(issue))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"register:{ip}",
        runtime.settings.rate_limit.register_per_hour,
        3600,
        response=response,
    )
    result = await runtime.lifecycle.register(
        body.phone,
        body.password,
        body.verification_id,
        body.code,
        device=_device(body),
        ip=ip,
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    ip = _client_ip(request)
    limit = runtime.settings.rate_limit.login_per_minute
    await _enforce_rate_limit(runtime, f"login:ip:{ip}", limit, 60, response=response)
    await _enforce_rate_limit(
        runtime, f"login:phone:{_phone_key(runtime, body.phone)}", limit, 60
    )
    result = await runtime.lifecycle.login_with_password(
        body.phone, body.password, device=_device(body), ip=ip
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login/otp", response_model=Envelope, tags=["auth"])
async def login_with_otp(body: OtpLoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"login:ip:{ip}",
        runtime.settings.rate_limit.login_per_minute,
        60,
        response=response,
    )
    result = await runtime.lifecycle.login_with_otp(
        body.phone, body.verification_id, body.code, device=_device(body), ip=ip
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_ip(request)}",
        runtime.settings.rate_limit.refresh_per_minute,
        60,
        response=response,
    )
    issued = await runtime.sessions.refresh(body.refresh_token, _client_ip(request))
    user = runtime.store.get_user(issued.session.user_id)
    if user is None:
        raise AuthenticationError("invalid or expired token")
    return Envelope(
        status="ok",
        data=_auth_response(LoginResult(user=user, session=issued.session, tokens=issued.tokens)),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.lifecycle.logout(principal.session_id, user_id=principal.user_id)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetRequest, request: Request, response: Response):
    runtime = get_runtime()
    ip = _client_ip(request)
    limit = runtime.settings.rate_limit.reset_per_hour
    await _enforce_rate_limit(runtime, f"reset:ip:{ip}", limit, 3600, response=response)
    await _enforce_rate_limit(
        runtime, f"reset:phone:{_phone_key(runtime, body.phone)}", limit, 3600
    )
    await runtime.lifecycle.reset_password(
        body.phone, body.verification_id, body.code, body.new_password, ip=ip
    )
    return Envelope(status="ok", data={"message": "password reset"})


# sessions


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = await runtime.sessions.list_active(principal.user_id)
    items = [_session_info(sess, principal.session_id) for sess in sessions]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: UUID = Path(...),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    session = runtime.store.get_session(str(session_id))
    # other users' sessions look missing
    if session is None or session.user_id != principal.user_id or session.is_revoked:
        raise NotFoundError("session not found")
    await runtime.lifecycle.logout(session.id, user_id=principal.user_id)
    return Envelope(status="ok", data=RevokedSessionsResponse(revoked=[session.id]))


@router.post("/sessions/revoke-others", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.lifecycle.revoke_other_sessions(principal.user_id, principal.session_id)
    return Envelope(status="ok", data=RevokedSessionsResponse(revoked=revoked))


# account


async def _enforce_account_limit(runtime: Runtime, principal: AuthContext, response: Response) -> None:
    await _enforce_rate_limit(
        runtime,
        f"account:{principal.user_id}",
        runtime.settings.rate_limit.account_per_5min,
        300,
        response=response,
    )


@router.post("/account/password", response_model=Envelope, tags=["account"])
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_account_limit(runtime, principal, response)
    revoked = await runtime.lifecycle.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        current_session_id=principal.session_id,
    )
    return Envelope(status="ok", data=RevokedSessionsResponse(revoked=revoked))


@router.post("/account/phone/otp", response_model=Envelope, status_code=201, tags=["account"])
async def request_phone_change_otp(
    body: PhoneChangeOtpRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    issue = await runtime.lifecycle.request_phone_change_otp(
        principal.user_id, body.new_phone, _client_ip(request)
    )
    return Envelope(status="ok", data=_otp_response(issue))


@router.post("/account/phone", response_model=Envelope, tags=["account"])
async def change_phone(
    body: PhoneChangeRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_account_limit(runtime, principal, response)
    user = await runtime.lifecycle.change_phone(
        principal.user_id,
        body.password,
        body.new_phone,
        body.verification_id,
        body.code,
        current_session_id=principal.session_id,
    )
    return Envelope(status="ok", data=_user_info(runtime, user))


@router.post("/account/deactivate", response_model=Envelope, tags=["account"])
async def deactivate_account(
    body: PasswordConfirmRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_account_limit(runtime, principal, response)
    user = await runtime.lifecycle.deactivate(principal.user_id, body.password)
    return Envelope(status="ok", data=_user_info(runtime, user))


@router.post("/account/deletion", response_model=Envelope, tags=["account"])
async def request_deletion(
    body: PasswordConfirmRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_account_limit(runtime, principal, response)
    user = await runtime.lifecycle.request_deletion(principal.user_id, body.password)
    return Envelope(status="ok", data=_user_info(runtime, user))


@router.post("/account/deletion/cancel", response_model=Envelope, tags=["account"])
async def cancel_deletion(body: CancelDeletionRequest, request: Request, response: Response):
    runtime = get_runtime()
    limit = runtime.settings.rate_limit.login_per_minute
    await _enforce_rate_limit(
        runtime, f"login:ip:{_client_ip(request)}", limit, 60, response=response
    )
    await _enforce_rate_limit(
        runtime, f"login:phone:{_phone_key(runtime, body.phone)}", limit, 60
    )
    user = await runtime.lifecycle.cancel_deletion_with_password(body.phone, body.password)
    return Envelope(status="ok", data=_user_info(runtime, user))


# admin


@router.post("/admin/users/{user_id}/suspend", response_model=Envelope, tags=["admin"])
async def suspend_user(
    body: SuspendRequest,
    user_id: UUID = Path(...),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.lifecycle.suspend(
        principal.user_id, str(user_id), body.reason, duration_hours=body.duration_hours
    )
    return Envelope(status="ok", data=_user_info(runtime, user))


@router.post("/admin/users/{user_id}/unsuspend", response_model=Envelope, tags=["admin"])
async def unsuspend_user(
    user_id: UUID = Path(...),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.lifecycle.unsuspend(principal.user_id, str(user_id))
    return Envelope(status="ok", data=_user_info(runtime, user))
