from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from curasense.storage.models import User

# Limits on the free-form preferences document a user may store
PREFERENCES_MAX_DEPTH = 10
PREFERENCES_MAX_LIST = 500

# Zero-width characters and bidi embedding/isolate controls are removed outright
_INVISIBLE = dict.fromkeys(
    [0x200B, 0x200C, 0x200D, 0xFEFF, *range(0x202A, 0x202F), *range(0x2066, 0x206A)]
)

_EMAIL_LOCAL = re.compile(r"[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}")
_DNS_LABEL = re.compile(r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?")

_PASSWORD_CLASSES = (re.compile(r"[A-Z]"), re.compile(r"[a-z]"), re.compile(r"\d"))

ERROR_CODES = frozenset(
    {"unauthorized", "forbidden", "not_found", "rate_limited", "validation_error", "conflict", "server_error"}
)


def _normalize_unicode(value: str) -> str:
    return unicodedata.normalize("NFKC", value.translate(_INVISIBLE))


def _check_preferences(document: Any) -> None:
    pending = [(document, 0)]
    while pending:
        node, depth = pending.pop()
        if depth > PREFERENCES_MAX_DEPTH:
            raise ValueError(f"preferences nest deeper than {PREFERENCES_MAX_DEPTH} levels")
        if isinstance(node, dict):
            pending.extend((child, depth + 1) for child in node.values())
        elif isinstance(node, list):
            if len(node) > PREFERENCES_MAX_LIST:
                raise ValueError(f"preferences lists are limited to {PREFERENCES_MAX_LIST} items")
            pending.extend((child, depth + 1) for child in node)


class ErrorBody(BaseModel):
    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _known_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    """Every JSON response: ``{status, data | error, request_id}``."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _validate_email(value: str) -> str:
    """Lower-case, NFKC-normalize and check the address shape.

    Deliverability is not checked; only obviously malformed input is refused.
    """
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    email = _normalize_unicode(value.strip().lower())
    if not 3 <= len(email) <= 254:
        raise ValueError("email address length out of range")
    local, at, domain = email.partition("@")
    if not at or not _EMAIL_LOCAL.fullmatch(local):
        raise ValueError("invalid email address")
    labels = domain.split(".")
    if len(labels) < 2 or not all(_DNS_LABEL.fullmatch(label) for label in labels):
        raise ValueError("invalid email domain")
    return email


def _validate_password_length(value: str) -> str:
    if not 8 <= len(value) <= 128:
        raise ValueError("password must be between 8 and 128 characters")
    return value


def _validate_password_strength(value: str) -> str:
    _validate_password_length(value)
    if not all(pattern.search(value) for pattern in _PASSWORD_CLASSES):
        raise ValueError("password needs an uppercase letter, a lowercase letter and a digit")
    return value


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError("must not be blank")
    return cleaned


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    email: str
    password: str
    first_name: str = Field(..., alias="firstName", max_length=100)
    last_name: str = Field(..., alias="lastName", max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)
    date_of_birth: Optional[date] = Field(default=None, alias="dateOfBirth")

    @field_validator("email")
    @classmethod
    def _register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _password_bounds(cls, value: str) -> str:
        return _validate_password_length(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _login_email(cls, value: str) -> str:
        return _validate_email(value)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    password: str

    @field_validator("password")
    @classmethod
    def _strong_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ProfileUpdateRequest(BaseModel):
    """Self-service profile edits. Anything else (role, status, email) is rejected."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)
    display_name: Optional[str] = Field(default=None, alias="displayName", max_length=200)
    phone: Optional[str] = Field(default=None, max_length=32)
    avatar_url: Optional[str] = Field(default=None, alias="avatarUrl", max_length=2048)
    preferences: Optional[dict] = None

    @field_validator("first_name", "last_name", "display_name")
    @classmethod
    def _validate_names(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value) if value is not None else None

    @field_validator("preferences")
    @classmethod
    def _validate_preferences(cls, value: Optional[dict]) -> Optional[dict]:
        if value is not None:
            _check_preferences(value)
        return value


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    display_name: str
    role: str
    status: str
    phone: Optional[str] = None
    avatar_url: Optional[str] = None
    date_of_birth: Optional[date] = None
    preferences: dict = Field(default_factory=dict)
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            display_name=user.display_name,
            role=user.role.value,
            status=user.status.value,
            phone=user.phone,
            avatar_url=user.avatar_url,
            date_of_birth=user.date_of_birth,
            preferences=user.preferences or {},
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class AuthResponse(BaseModel):
    """Login, register and refresh payload. The refresh token travels only as a cookie."""

    user: UserResponse
    access_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: Optional[int] = None


class MessageResponse(BaseModel):
    message: str


class ResetTokenStatusResponse(BaseModel):
    valid: bool
    email: Optional[str] = None


class LogoutAllResponse(BaseModel):
    sessions_revoked: int
