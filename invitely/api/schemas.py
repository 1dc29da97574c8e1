from __future__ import annotations

import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from invitely.logging import get_correlation_id

MAX_EMAIL_LENGTH = 254
MAX_PASSWORD_FIELD_LENGTH = 1024
MAX_NAME_LENGTH = 200
MAX_DEVICE_INFO_LENGTH = 512
MAX_TOKEN_LENGTH = 4096

_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    cleaned = "".join(
        c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES
    )
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "invalid_input",
    "invalid_credentials",
    "email_not_verified",
    "too_many_requests",
    "unauthorized",
    "forbidden",
    "not_found",
    "invalid_or_expired_token",
    "conflict",
    "internal",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class _AuthRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")


class RegisterRequest(_AuthRequest):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)
    name: str = Field("", max_length=MAX_NAME_LENGTH)
    device_info: str = Field("", max_length=MAX_DEVICE_INFO_LENGTH)

    @field_validator("email", "name")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        return _normalize_unicode(value).strip()


class LoginRequest(_AuthRequest):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)
    device_info: str = Field("", max_length=MAX_DEVICE_INFO_LENGTH)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _normalize_unicode(value).strip()


class RefreshRequest(_AuthRequest):
    """Body fallback for clients that cannot send the refresh cookie."""

    refresh_token: Optional[str] = Field(None, max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(_AuthRequest):
    refresh_token: Optional[str] = Field(None, max_length=MAX_TOKEN_LENGTH)


class ForgotPasswordRequest(_AuthRequest):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _normalize_unicode(value).strip()


class ResetPasswordRequest(_AuthRequest):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)


class VerifyEmailRequest(_AuthRequest):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class UserView(BaseModel):
    id: str
    email: str
    name: str
    role: str
    status: str
    created_at: str


class MessageResponse(BaseModel):
    message: str
