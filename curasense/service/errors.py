from __future__ import annotations

from types import MappingProxyType
from typing import Mapping, Optional

# Public wording shared by every credential failure so callers cannot probe accounts
INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
RESET_TOKEN_INVALID_MESSAGE = "Invalid or expired reset token"


class ServiceError(Exception):
    """Auth failure that the API layer renders as an error envelope.

    Subclasses pin ``status_code`` and the stable ``error_code`` string; an
    instance may override either when a route needs a one-off mapping.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    headers: Mapping[str, str] = MappingProxyType({})

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
        self.detail = detail or {}
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code


class ValidationError(ServiceError):
    pass


class ResetTokenInvalidError(ValidationError):
    """Unknown, expired and already-used reset tokens all look the same."""

    def __init__(self) -> None:
        super().__init__(RESET_TOKEN_INVALID_MESSAGE)


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    def __init__(self) -> None:
        super().__init__(INVALID_CREDENTIALS_MESSAGE)


class AccountLockedError(InvalidCredentialsError):
    """Raised instead of checking the password while a lockout is in force.

    The client sees the ordinary invalid-credentials message; ``locked_until``
    only reaches the logs.
    """

    def __init__(self, locked_until=None) -> None:
        super().__init__()
        self.locked_until = locked_until


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class DuplicateEmailError(ConflictError):
    def __init__(self) -> None:
        super().__init__("An account with this email already exists", detail={"field": "email"})


class RateLimitedError(ServiceError):
    """Token bucket exhausted; ``retry_after`` becomes the Retry-After header."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after: int) -> None:
        super().__init__("Too many requests, please try again later")
        self.retry_after = max(1, int(retry_after))
        self.headers = {"Retry-After": str(self.retry_after)}


__all__ = [
    "INVALID_CREDENTIALS_MESSAGE",
    "RESET_TOKEN_INVALID_MESSAGE",
    "ServiceError",
    "ValidationError",
    "ResetTokenInvalidError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "DuplicateEmailError",
    "RateLimitedError",
]
