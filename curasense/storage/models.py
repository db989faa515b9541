from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def hash_token(token: str) -> str:
    """Digest used to store opaque tokens; plaintext tokens are never persisted."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class UserRole(str, Enum):
    PATIENT = "PATIENT"
    DOCTOR = "DOCTOR"
    ADMIN = "ADMIN"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    SUSPENDED = "SUSPENDED"
    DEACTIVATED = "DEACTIVATED"


class AuditAction(str, Enum):
    LOGIN = "LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    LOGOUT_ALL = "LOGOUT_ALL"
    REGISTER = "REGISTER"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET = "PASSWORD_RESET"
    PROFILE_UPDATE = "PROFILE_UPDATE"


# Fields a user may change on their own profile
PROFILE_FIELDS = frozenset(
    {"first_name", "last_name", "display_name", "phone", "avatar_url", "preferences"}
)


def build_display_name(first_name: str, last_name: str) -> str:
    return f"{first_name} {last_name}".strip()


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    first_name: str
    last_name: str
    display_name: str
    role: UserRole = UserRole.PATIENT
    status: UserStatus = UserStatus.ACTIVE
    phone: Optional[str] = None
    avatar_url: Optional[str] = None
    date_of_birth: Optional[date] = None
    preferences: Dict = field(default_factory=dict)
    failed_login_count: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class Session:
    id: str
    token_hash: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    last_active_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        ttl_minutes: int,
        *,
        now: Optional[datetime] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "Session":
        issued = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token_hash=token_hash,
            user_id=user_id,
            created_at=issued,
            expires_at=issued + timedelta(minutes=ttl_minutes),
            ip_address=ip_address,
            user_agent=user_agent,
            last_active_at=issued,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class PasswordResetToken:
    token_hash: str
    user_id: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class AuditLogEntry:
    id: str
    action: AuditAction
    resource: str
    created_at: datetime
    actor_id: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict | None = None


@dataclass
class RequestContext:
    """Client metadata captured at the HTTP boundary."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
