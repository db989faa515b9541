from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass, fields
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from curasense.config import Settings
from curasense.logging import get_logger
from curasense.service.audit import AuditLogger
from curasense.service.email import EmailService
from curasense.service.errors import (
    AccountLockedError,
    DuplicateEmailError,
    InvalidCredentialsError,
    NotFoundError,
    ResetTokenInvalidError,
)
from curasense.service.lockout import LockoutGuard
from curasense.service.password_reset import PasswordResetFlow
from curasense.service.passwords import PasswordHasher
from curasense.service.sessions import RefreshResult, SessionStore
from curasense.service.tokens import AccessTokenClaims, TokenSigner
from curasense.storage.errors import ConstraintViolation
from curasense.storage.models import (
    AuditAction,
    AuditLogEntry,
    PasswordResetToken,
    RequestContext,
    Session,
    User,
    UserRole,
    UserStatus,
    build_display_name,
    hash_token,
    utcnow,
)

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        *,
        display_name: Optional[str] = None,
        role: UserRole = UserRole.PATIENT,
        status: UserStatus = UserStatus.ACTIVE,
        phone: Optional[str] = None,
        date_of_birth: Optional[date] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_profile(self, user_id: str, updates: Dict[str, Any]) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: UserRole) -> Optional[User]: ...

    def set_user_password(self, user_id: str, password_hash: str) -> bool: ...

    def record_failed_login(
        self, user_id: str, *, threshold: int, lock_until: datetime
    ) -> Optional[User]: ...

    def record_successful_login(
        self, user_id: str, *, ip_address: Optional[str], now: datetime
    ) -> Optional[User]: ...

    def create_session(
        self,
        user_id: str,
        token_hash: str,
        *,
        ttl_minutes: int,
        now: Optional[datetime] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session: ...

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]: ...

    def rotate_session(
        self, old_token_hash: str, new_token_hash: str, *, now: datetime
    ) -> Optional[Session]: ...

    def touch_session(self, session_id: str, *, now: datetime) -> None: ...

    def delete_session_by_token_hash(self, token_hash: str) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    def create_reset_token(
        self, user_id: str, token_hash: str, *, expires_at: datetime, now: datetime
    ) -> PasswordResetToken: ...

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]: ...

    def consume_reset_token(
        self, token_hash: str, password_hash: str, *, now: datetime
    ) -> Optional[str]: ...

    def delete_expired_reset_tokens(self, now: datetime) -> int: ...

    def append_audit_entry(
        self,
        action: AuditAction,
        resource: str,
        *,
        actor_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> AuditLogEntry: ...

    def delete_audit_entries_before(self, cutoff: datetime) -> int: ...


@dataclass
class AuthContext:
    """Caller identity established from a verified access token."""

    user_id: str
    email: str
    role: UserRole
    first_name: str = ""
    last_name: str = ""


@dataclass
class RegistrationInput:
    email: str
    password: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    date_of_birth: Optional[date] = None


@dataclass
class ProfileUpdate:
    """Self-service profile changes; only these fields can ever be written.

    ``None`` means "leave unchanged". Contact fields named in ``clear`` are
    set to null instead.
    """

    CLEARABLE = frozenset({"phone", "avatar_url"})

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    phone: Optional[str] = None
    avatar_url: Optional[str] = None
    preferences: Optional[dict] = None
    clear: Tuple[str, ...] = ()

    @classmethod
    def from_patch(cls, patch: Dict[str, Any]) -> "ProfileUpdate":
        """Build from a PATCH body holding only the keys the client sent."""
        values = {k: v for k, v in patch.items() if v is not None}
        cleared = tuple(sorted(k for k, v in patch.items() if v is None and k in cls.CLEARABLE))
        return cls(**values, clear=cleared)

    def changes(self) -> Dict[str, Any]:
        updates = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "clear" and getattr(self, f.name) is not None
        }
        for name in self.clear:
            if name in self.CLEARABLE:
                updates.setdefault(name, None)
        return updates


@dataclass
class LoginResult:
    user: User
    access_token: str
    refresh_token: str
    expires_in: int
    session: Session


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()


class AuthService:
    """Entry point for registration, login, sessions, profile and password reset."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        email_service: Optional[EmailService] = None,
        hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self._clock = clock
        self.hasher = hasher or PasswordHasher.from_settings(settings)
        self.signer = TokenSigner.from_settings(settings, clock=clock)
        self.sessions = SessionStore(
            store,
            self.signer,
            ttl_minutes=settings.session_ttl_minutes,
            rotate=settings.rotate_refresh_tokens,
            clock=clock,
        )
        self.lockout = LockoutGuard(
            store,
            threshold=settings.lockout_threshold,
            lockout_minutes=settings.lockout_minutes,
            clock=clock,
        )
        self.resets = PasswordResetFlow(
            store,
            self.hasher,
            ttl_minutes=settings.reset_token_ttl_minutes,
            clock=clock,
        )
        self.audit = AuditLogger(store, clock=clock)
        self.email = email_service or EmailService.from_settings(settings)

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    async def register(
        self, data: RegistrationInput, context: Optional[RequestContext] = None
    ) -> User:
        email = self._normalize_email(data.email)
        if self.store.get_user_by_email(email):
            raise DuplicateEmailError()
        password_hash = await self.hasher.hash_async(data.password)
        status = (
            UserStatus.PENDING_VERIFICATION
            if self.settings.require_email_verification
            else UserStatus.ACTIVE
        )
        try:
            user = self.store.create_user(
                email,
                password_hash,
                data.first_name.strip(),
                data.last_name.strip(),
                role=UserRole.PATIENT,
                status=status,
                phone=data.phone,
                date_of_birth=data.date_of_birth,
            )
        except ConstraintViolation:
            # Lost a race with a concurrent registration for the same address
            raise DuplicateEmailError() from None
        self.audit.record(
            AuditAction.REGISTER,
            "user",
            actor_id=user.id,
            resource_id=user.id,
            context=context,
        )
        logger.info("user_registered", user_id=user.id, status=user.status.value)
        return user

    async def start_session(
        self, user: User, context: Optional[RequestContext] = None
    ) -> LoginResult:
        """Open a session for an already authenticated user."""
        issued = self.sessions.create_session(user.id, context)
        access_token = self.signer.issue_access_token(AccessTokenClaims.for_user(user))
        return LoginResult(
            user=user,
            access_token=access_token,
            refresh_token=issued.refresh_token,
            expires_in=self.signer.expires_in,
            session=issued.session,
        )

    async def login(
        self, email: str, password: str, context: Optional[RequestContext] = None
    ) -> LoginResult:
        """Authenticate with email and password.

        Every failure raises :class:`InvalidCredentialsError` (or its
        :class:`AccountLockedError` subclass) with the same public message.
        """
        context = context or RequestContext()
        normalized = self._normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if not user or user.is_deleted:
            await self.hasher.dummy_verify_async(password)
            logger.info("login_unknown_email", email_hash=_email_hash(normalized))
            raise InvalidCredentialsError()

        try:
            self.lockout.check(user)
        except AccountLockedError:
            self.audit.record(
                AuditAction.LOGIN_FAILED,
                "user",
                actor_id=user.id,
                resource_id=user.id,
                context=context,
                details={"reason": "locked"},
            )
            raise

        if user.status != UserStatus.ACTIVE:
            # Pay for a full verify so inactive accounts time like wrong passwords
            await self.hasher.verify_async(password, user.password_hash)
            logger.info("login_inactive_account", user_id=user.id, status=user.status.value)
            raise InvalidCredentialsError()

        if not await self.hasher.verify_async(password, user.password_hash):
            updated = self.lockout.record_failure(user)
            self.audit.record(
                AuditAction.LOGIN_FAILED,
                "user",
                actor_id=user.id,
                resource_id=user.id,
                context=context,
                details={"failed_login_count": updated.failed_login_count},
            )
            logger.info(
                "login_failed",
                user_id=user.id,
                failed_login_count=updated.failed_login_count,
            )
            raise InvalidCredentialsError()

        user = self.lockout.record_success(user, context.ip_address)
        result = await self.start_session(user, context)
        self.audit.record(
            AuditAction.LOGIN,
            "session",
            actor_id=user.id,
            resource_id=result.session.id,
            context=context,
        )
        if self.hasher.needs_rehash(user.password_hash):
            new_hash = await self.hasher.hash_async(password)
            self.store.set_user_password(user.id, new_hash)
            logger.info("password_rehashed", user_id=user.id)
        logger.info("login_succeeded", user_id=user.id, session_id=result.session.id)
        return result

    async def refresh_access_token(self, refresh_token: Optional[str]) -> Optional[RefreshResult]:
        return self.sessions.refresh(refresh_token)

    async def logout(
        self, refresh_token: Optional[str], context: Optional[RequestContext] = None
    ) -> bool:
        """Delete the session behind ``refresh_token``; failures are logged, never raised."""
        if not refresh_token:
            return False
        try:
            session = self.store.get_session_by_token_hash(hash_token(refresh_token))
            deleted = self.sessions.destroy_session(refresh_token)
        except Exception as exc:
            logger.warning("logout_session_delete_failed", error=str(exc))
            return False
        if session and deleted:
            self.audit.record(
                AuditAction.LOGOUT,
                "session",
                actor_id=session.user_id,
                resource_id=session.id,
                context=context,
            )
        return deleted

    async def logout_all(
        self, user_id: str, context: Optional[RequestContext] = None
    ) -> int:
        removed = self.sessions.destroy_all_sessions(user_id)
        self.audit.record(
            AuditAction.LOGOUT_ALL,
            "user",
            actor_id=user_id,
            resource_id=user_id,
            context=context,
            details={"sessions": removed},
        )
        return removed

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        claims = self.signer.verify_access_token(self._extract_bearer(authorization))
        if not claims:
            return None
        return AuthContext(
            user_id=claims.user_id,
            email=claims.email,
            role=claims.role,
            first_name=claims.first_name,
            last_name=claims.last_name,
        )

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        user = self.store.get_user(user_id)
        if not user or user.is_deleted:
            return None
        return user

    async def update_profile(
        self,
        user_id: str,
        update: ProfileUpdate,
        context: Optional[RequestContext] = None,
    ) -> User:
        user = await self.get_user_by_id(user_id)
        if not user:
            raise NotFoundError("User not found")
        changes = update.changes()
        if not changes:
            return user
        if ("first_name" in changes or "last_name" in changes) and "display_name" not in changes:
            changes["display_name"] = build_display_name(
                changes.get("first_name", user.first_name),
                changes.get("last_name", user.last_name),
            )
        updated = self.store.update_user_profile(user_id, changes)
        if not updated:
            raise NotFoundError("User not found")
        self.audit.record(
            AuditAction.PROFILE_UPDATE,
            "user",
            actor_id=user_id,
            resource_id=user_id,
            context=context,
            details={"fields": sorted(changes)},
        )
        return updated

    async def request_password_reset(
        self, email: str, context: Optional[RequestContext] = None
    ) -> None:
        """Send a reset link if an active account exists; silent either way."""
        normalized = self._normalize_email(email)
        grant = self.resets.create_reset_token(normalized)
        logger.info("password_reset_requested", email_hash=_email_hash(normalized))
        if not grant:
            return
        sent = await asyncio.to_thread(
            self.email.send_password_reset,
            grant.user.email,
            grant.token,
            grant.user.first_name,
            expires_minutes=self.resets.ttl_minutes,
        )
        if not sent:
            logger.warning("password_reset_email_failed", user_id=grant.user.id)
        self.audit.record(
            AuditAction.PASSWORD_RESET_REQUESTED,
            "user",
            actor_id=grant.user.id,
            resource_id=grant.user.id,
            context=context,
        )

    async def verify_reset_token(self, token: Optional[str]) -> Optional[str]:
        return self.resets.verify_reset_token(token)

    async def reset_password(
        self,
        token: Optional[str],
        new_password: str,
        context: Optional[RequestContext] = None,
    ) -> None:
        user_id = await self.resets.redeem(token, new_password)
        if not user_id:
            raise ResetTokenInvalidError()
        self.audit.record(
            AuditAction.PASSWORD_RESET,
            "user",
            actor_id=user_id,
            resource_id=user_id,
            context=context,
        )

    async def cleanup(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Purge expired sessions and reset tokens, and audit entries past retention."""
        now = now or self._clock()
        cutoff = now - timedelta(days=self.settings.audit_retention_days)
        result = {
            "sessions": self.sessions.sweep_expired(now),
            "reset_tokens": self.resets.sweep_expired(now),
            "audit_entries": self.audit.purge_before(cutoff),
        }
        logger.info("auth_cleanup_completed", **result)
        return result


__all__: List[str] = [
    "AuthContext",
    "AuthService",
    "AuthStore",
    "LoginResult",
    "ProfileUpdate",
    "RegistrationInput",
]
