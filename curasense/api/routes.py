from __future__ import annotations

import re
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Request, Response

from curasense.api.error_handling import _error_response
from curasense.api.schemas import (
    AuthResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutAllResponse,
    MessageResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    ResetPasswordRequest,
    ResetTokenStatusResponse,
    UserResponse,
)
from curasense.logging import get_logger
from curasense.service.auth import AuthContext, ProfileUpdate, RegistrationInput
from curasense.service.errors import ForbiddenError, RateLimitedError, ResetTokenInvalidError
from curasense.service.runtime import check_rate_limit, get_runtime
from curasense.storage.models import RequestContext, UserStatus

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/v1/auth"
FORGOT_PASSWORD_MESSAGE = (
    "If an account with that email exists, we've sent a password reset link."
)
RESET_SUCCESS_MESSAGE = (
    "Password reset successfully. You can now log in with your new password."
)

_EMAIL_MASK = re.compile(r"(.{2})(.*)(@.*)")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _mask_email(email: str) -> str:
    """jane.doe@x.com -> ja***@x.com"""
    return _EMAIL_MASK.sub(r"\1***\3", email)


def _request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


class RateLimitInfo:
    """Rate limit state for response headers."""

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
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token for ``key`` or raise 429 with ``Retry-After``."""
    allowed, remaining, retry_after = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    info = RateLimitInfo(limit, remaining, retry_after or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise RateLimitedError(retry_after)
    return info


def _set_refresh_cookie(response: Response, token: str, runtime) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        token,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        max_age=runtime.auth.sessions.max_age_seconds,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_refresh_cookie(response: Response, runtime) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        path=REFRESH_COOKIE_PATH,
        secure=runtime.settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "Unauthorized", status_code=401)
    return ctx


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a patient account.

    Active accounts are signed in straight away: the access token is returned
    and the refresh token set as an HTTP-only cookie.

    Raises:
        403: If registration is disabled
        409: If the email is already registered
        429: If the rate limit for this email is exceeded
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise ForbiddenError("Registration is disabled")
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
        response=response,
    )
    context = _request_context(request)
    user = await runtime.auth.register(
        RegistrationInput(
            email=body.email,
            password=body.password,
            first_name=body.first_name,
            last_name=body.last_name,
            phone=body.phone,
            date_of_birth=body.date_of_birth,
        ),
        context,
    )
    if user.status != UserStatus.ACTIVE:
        return Envelope(status="ok", data=AuthResponse(user=UserResponse.from_user(user)))
    result = await runtime.auth.start_session(user, context)
    _set_refresh_cookie(response, result.refresh_token, runtime)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse.from_user(result.user),
            access_token=result.access_token,
            expires_in=result.expires_in,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Every failure, including a locked account, answers 401 with the same message.
    """
    runtime = get_runtime()
    context = _request_context(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    if context.ip_address:
        await _enforce_rate_limit(
            runtime,
            f"login-ip:{context.ip_address}",
            runtime.settings.login_rate_limit_per_minute * 5,
            60,
        )
    result = await runtime.auth.login(body.email, body.password, context)
    _set_refresh_cookie(response, result.refresh_token, runtime)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse.from_user(result.user),
            access_token=result.access_token,
            expires_in=result.expires_in,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    refresh_token: Optional[str] = Cookie(None),
):
    """Exchange the refresh cookie for a new access token and a rotated cookie."""
    runtime = get_runtime()
    context = _request_context(request)
    await _enforce_rate_limit(
        runtime,
        f"refresh:{context.ip_address or 'unknown'}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.refresh_access_token(refresh_token)
    if not result:
        failure = _error_response(401, "Invalid or expired session", code="unauthorized")
        _clear_refresh_cookie(failure, runtime)
        return failure
    _set_refresh_cookie(response, result.refresh_token, runtime)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse.from_user(result.user),
            access_token=result.access_token,
            expires_in=result.expires_in,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    refresh_token: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    await runtime.auth.logout(refresh_token, _request_context(request))
    _clear_refresh_cookie(response, runtime)
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Revoke every session of the caller, on all devices."""
    runtime = get_runtime()
    removed = await runtime.auth.logout_all(principal.user_id, _request_context(request))
    _clear_refresh_cookie(response, runtime)
    return Envelope(status="ok", data=LogoutAllResponse(sessions_revoked=removed))


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.get_user_by_id(principal.user_id)
    if not user:
        raise _http_error("unauthorized", "User not found", status_code=401)
    return Envelope(status="ok", data={"user": UserResponse.from_user(user)})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    """Start a password reset. The answer is the same whether or not the email exists."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.request_password_reset(body.email, _request_context(request))
    return Envelope(status="ok", data=MessageResponse(message=FORGOT_PASSWORD_MESSAGE))


@router.get("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def check_reset_token(token: Optional[str] = Query(None, max_length=256)):
    runtime = get_runtime()
    email = await runtime.auth.verify_reset_token(token)
    if not email:
        raise ResetTokenInvalidError()
    return Envelope(
        status="ok",
        data=ResetTokenStatusResponse(valid=True, email=_mask_email(email)),
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    """Set a new password with a reset token; signs the user out everywhere."""
    runtime = get_runtime()
    context = _request_context(request)
    await _enforce_rate_limit(
        runtime,
        f"reset-confirm:{context.ip_address or 'unknown'}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.reset_password(body.token, body.password, context)
    return Envelope(status="ok", data=MessageResponse(message=RESET_SUCCESS_MESSAGE))


@router.get("/me", response_model=Envelope, tags=["users"])
async def get_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.get_user_by_id(principal.user_id)
    if not user:
        raise _http_error("not_found", "User not found", status_code=404)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.patch("/me", response_model=Envelope, tags=["users"])
async def update_me(
    body: ProfileUpdateRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    user = await runtime.auth.update_profile(
        principal.user_id,
        ProfileUpdate.from_patch(body.model_dump(exclude_unset=True)),
        _request_context(request),
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))
