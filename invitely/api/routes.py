from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from invitely.api.error_handling import _error_response
from invitely.api.schemas import (
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UserView,
    VerifyEmailRequest,
)
from invitely.config import Settings
from invitely.service.auth import AuthContext, IssuedSession
from invitely.service.deadline import Deadline
from invitely.logging import get_logger
from invitely.service.errors import InternalError, UnauthorizedError
from invitely.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

REGISTER_MESSAGE = "If this email is not registered, you will receive a verification email"
FORGOT_PASSWORD_MESSAGE = (
    "If an account exists with this email, you will receive a password reset link"
)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")


def _deadline(settings: Settings) -> Deadline:
    return Deadline.after(settings.request_deadline_seconds)


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header or not header.lower().startswith("bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None


def _apply_session_cookies(
    response: Response, issued: IssuedSession, settings: Settings
) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        issued.credentials.access,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.access_lifetime_seconds,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        issued.credentials.refresh,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_lifetime_seconds,
        path=settings.refresh_cookie_path,
    )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        ACCESS_COOKIE,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )
    response.delete_cookie(
        REFRESH_COOKIE,
        path=settings.refresh_cookie_path,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


async def get_current_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    """Resolve the caller from a bearer header or the access cookie."""
    runtime = get_runtime()
    token = _extract_bearer(authorization) or request.cookies.get(ACCESS_COOKIE)
    if not token:
        raise UnauthorizedError()
    return await runtime.auth.authenticate_access(
        token, deadline=_deadline(runtime.settings)
    )


@router.post("/auth/register", response_model=Envelope, status_code=202, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account and send a verification email.

    The response is identical whether or not the email is already
    registered.

    Raises:
        400: If the email is malformed or the password fails the policy
        429: If too many registrations came from this address
    """
    runtime = get_runtime()
    await runtime.auth.register(
        body.email,
        body.password,
        name=body.name,
        device_info=body.device_info,
        user_agent=_user_agent(request),
        ip=_client_ip(request),
        deadline=_deadline(runtime.settings),
    )
    return Envelope(status="ok", data=MessageResponse(message=REGISTER_MESSAGE))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password and set the session cookies.

    Raises:
        401: If the credentials are wrong
        403: If the email has not been verified
        429: If too many failed attempts came from this address
    """
    runtime = get_runtime()
    issued = await runtime.auth.login(
        body.email,
        body.password,
        device_info=body.device_info,
        user_agent=_user_agent(request),
        ip=_client_ip(request),
        deadline=_deadline(runtime.settings),
    )
    _apply_session_cookies(response, issued, runtime.settings)
    return Envelope(status="ok", data=UserView(**issued.user.view()))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request, response: Response, body: Optional[RefreshRequest] = None
):
    runtime = get_runtime()
    token = request.cookies.get(REFRESH_COOKIE) or (body.refresh_token if body else None)
    if not token:
        raise UnauthorizedError()
    issued = await runtime.auth.refresh(token, deadline=_deadline(runtime.settings))
    _apply_session_cookies(response, issued, runtime.settings)
    return Envelope(status="ok", data=UserView(**issued.user.view()))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    access = request.cookies.get(ACCESS_COOKIE) or _extract_bearer(authorization)
    # The refresh cookie is path-scoped and usually absent here
    refresh_token = request.cookies.get(REFRESH_COOKIE) or (
        body.refresh_token if body else None
    )
    try:
        await runtime.auth.logout(
            access, refresh_token, deadline=_deadline(runtime.settings)
        )
    except InternalError as exc:
        # Cookies are cleared even when the revocation could not be recorded
        logger.error(
            "logout_store_failed",
            status_code=exc.status_code,
            error_type=type(exc).__name__,
            message=exc.message,
        )
        error = _error_response(exc.status_code, "internal error", code="internal")
        _clear_session_cookies(error, runtime.settings)
        return error
    _clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.forgot_password(
        body.email, ip=_client_ip(request), deadline=_deadline(runtime.settings)
    )
    return Envelope(status="ok", data=MessageResponse(message=FORGOT_PASSWORD_MESSAGE))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.reset_password(
        body.token, body.new_password, deadline=_deadline(runtime.settings)
    )
    return Envelope(status="ok", data=MessageResponse(message="password updated"))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    user = await runtime.auth.verify_email(
        body.token, deadline=_deadline(runtime.settings)
    )
    return Envelope(status="ok", data=UserView(**user.view()))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    user = runtime.users.find_by_id(principal.user_id)
    if user is None:
        raise UnauthorizedError()
    return Envelope(status="ok", data=UserView(**user.view()))
