from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response

from payauth.api.dependencies import get_current_user
from payauth.api.schemas import (
    AuthPayload,
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    MessagePayload,
    RefreshRequest,
    ResetPasswordRequest,
    SignupRequest,
    TokensPayload,
    TokensResponse,
    UserPayload,
    UserResponse,
)
from payauth.service import messages
from payauth.service.auth import AuthContext, AuthResult
from payauth.service.errors import RateLimitedError
from payauth.service.runtime import Runtime, check_rate_limit, get_runtime

router = APIRouter(prefix="/auth", tags=["auth"])


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def headers(self) -> dict[str, str]:
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(max(0, self.remaining)),
            "RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        response.headers.update(self.headers())


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    message: str,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Count this request against ``key``.

    Raises:
        RateLimitedError: once ``limit`` hits have landed inside the window
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if not allowed:
        headers = info.headers()
        headers["Retry-After"] = str(max(1, reset_seconds))
        raise RateLimitedError(message, headers=headers)
    if response is not None:
        info.apply_headers(response)
    return info


async def _auth_rate_limit(request: Request, response: Response) -> None:
    # Login and sign-up share one counter per client.
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"auth:{_client_key(request)}",
        runtime.settings.auth_rate_limit_max,
        runtime.settings.auth_rate_limit_window_seconds,
        messages.AUTH_RATE_LIMITED,
        response=response,
    )


async def _forgot_password_rate_limit(request: Request, response: Response) -> None:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"forgot:{_client_key(request)}",
        runtime.settings.forgot_password_rate_limit_max,
        runtime.settings.forgot_password_rate_limit_window_seconds,
        messages.FORGOT_PASSWORD_RATE_LIMITED,
        response=response,
    )


def _auth_payload(result: AuthResult, message: str) -> AuthPayload:
    return AuthPayload(
        user=UserResponse.from_user(result.user),
        tokens=TokensResponse.from_pair(result.tokens),
        message=message,
    )


@router.post(
    "/signup",
    response_model=Envelope,
    status_code=201,
    dependencies=[Depends(_auth_rate_limit)],
)
async def signup(body: SignupRequest):
    """Create an OWNER account and sign it in.

    ``type`` is optional and, when sent, must be ``OWNER``. STAFF accounts are
    created by their owner and SUPER_ADMIN only by the bootstrap script.

    Raises:
        400: VALIDATION_ERROR, including a ``type`` other than OWNER
        409: EMAIL_ALREADY_EXISTS
        429: too many attempts from this client
    """
    runtime = get_runtime()
    result = await runtime.auth.sign_up(
        email=body.email,
        password=body.password,
        name=body.name,
        user_type=body.type,
    )
    return Envelope(
        data=_auth_payload(result, messages.Success.SIGN_UP),
        message=messages.Success.SIGN_UP,
    )


@router.post("/login", response_model=Envelope, dependencies=[Depends(_auth_rate_limit)])
async def login(body: LoginRequest):
    """Exchange email and password for an access/refresh pair.

    Raises:
        401: INVALID_CREDENTIALS, whether the email or the password was wrong
        403: USER_INACTIVE or USER_SUSPENDED
        429: too many attempts from this client
    """
    runtime = get_runtime()
    result = await runtime.auth.login(email=body.email, password=body.password)
    return Envelope(
        data=_auth_payload(result, messages.Success.LOGIN),
        message=messages.Success.LOGIN,
    )


@router.post("/refresh", response_model=Envelope)
async def refresh(body: RefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(data=TokensPayload(tokens=TokensResponse.from_pair(tokens)))


@router.post(
    "/forgot-password",
    response_model=Envelope,
    dependencies=[Depends(_forgot_password_rate_limit)],
)
async def forgot_password(body: ForgotPasswordRequest, background_tasks: BackgroundTasks):
    """Answers identically so callers cannot tell which addresses have accounts.

    The reset mail is sent after the response goes out.
    """
    runtime = get_runtime()
    result = await runtime.auth.forgot_password(
        body.email, schedule=background_tasks.add_task
    )
    return Envelope(data=MessagePayload(message=result.message), message=result.message)


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    message = messages.Success.PASSWORD_CHANGED
    return Envelope(data=MessagePayload(message=message), message=message)


@router.post("/change-password", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest, user: AuthContext = Depends(get_current_user)
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        user.user_id, body.current_password, body.new_password
    )
    message = messages.Success.PASSWORD_CHANGED
    return Envelope(data=MessagePayload(message=message), message=message)


@router.get("/me", response_model=Envelope)
async def me(user: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    record = await runtime.auth.get_me(user.user_id)
    return Envelope(data=UserPayload(user=UserResponse.from_user(record)))


@router.post("/logout", response_model=Envelope)
async def logout(user: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    await runtime.auth.logout(user.user_id)
    message = messages.Success.LOGOUT
    return Envelope(data=MessagePayload(message=message), message=message)
