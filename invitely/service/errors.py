from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries both an HTTP status_code and a stable error_code:
    - invalid_input (400)
    - invalid_credentials (401)
    - unauthorized (401)
    - email_not_verified (403)
    - invalid_or_expired_token (400)
    - too_many_requests (429)
    - internal (5xx, retriable)
    """

    status_code: int = 400
    error_code: str = "invalid_input"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidInputError(ServiceError):
    """Structural validation failed: email shape or password policy (400)."""
    status_code = 400
    error_code = "invalid_input"


class InvalidCredentialsError(ServiceError):
    """Generic login failure, whatever the cause (401)."""
    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmailNotVerifiedError(ServiceError):
    """Password was correct but the account is not active (403)."""
    status_code = 403
    error_code = "email_not_verified"

    def __init__(self, message: str = "email address not verified", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TooManyRequestsError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "too_many_requests"

    def __init__(
        self, message: str = "too many requests, please try again later", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class UnauthorizedError(ServiceError):
    """Any refresh or access failure. Carries no discriminating detail (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "unauthorized", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Authenticated but the role is insufficient (403)."""
    status_code = 403
    error_code = "forbidden"


class InvalidOrExpiredTokenError(ServiceError):
    """Reset or verification token unknown, used, or expired (400)."""
    status_code = 400
    error_code = "invalid_or_expired_token"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InternalError(ServiceError):
    """Store unreachable, signing failure and similar. Retriable (500)."""
    status_code = 500
    error_code = "internal"

    def __init__(self, message: str = "internal error", **kwargs) -> None:
        super().__init__(message, **kwargs)


class StoreUnavailableError(InternalError):
    """The session store could not be reached (503)."""
    status_code = 503


class DeadlineExceededError(InternalError):
    """The caller's deadline passed before the flow completed (504)."""
    status_code = 504


__all__ = [
    "ServiceError",
    "InvalidInputError",
    "InvalidCredentialsError",
    "EmailNotVerifiedError",
    "TooManyRequestsError",
    "UnauthorizedError",
    "ForbiddenError",
    "InvalidOrExpiredTokenError",
    "InternalError",
    "StoreUnavailableError",
    "DeadlineExceededError",
]
