from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from curasense.logging import get_logger
from curasense.service.passwords import PasswordHasher
from curasense.service.sessions import generate_opaque_token
from curasense.storage.models import User, UserStatus, hash_token, utcnow

logger = get_logger(__name__)


@dataclass
class ResetGrant:
    token: str
    user: User
    expires_at: datetime


class PasswordResetFlow:
    """Single-use, time-boxed password reset tokens."""

    def __init__(
        self,
        store,
        hasher: PasswordHasher,
        *,
        ttl_minutes: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    @property
    def ttl_minutes(self) -> int:
        return int(self.ttl.total_seconds() // 60)

    def create_reset_token(self, email: str) -> Optional[ResetGrant]:
        """Issue a token for ``email``; ``None`` when no active account matches.

        Callers must answer the same way in both cases.
        """
        user = self.store.get_user_by_email(email)
        if not user or user.is_deleted or user.status != UserStatus.ACTIVE:
            return None
        now = self._clock()
        token = generate_opaque_token()
        expires_at = now + self.ttl
        self.store.create_reset_token(
            user.id, hash_token(token), expires_at=expires_at, now=now
        )
        logger.info("password_reset_token_created", user_id=user.id)
        return ResetGrant(token=token, user=user, expires_at=expires_at)

    def verify_reset_token(self, token: Optional[str]) -> Optional[str]:
        """Return the owner's email if ``token`` is live, without consuming it."""
        if not token:
            return None
        record = self.store.get_reset_token(hash_token(token))
        if not record or record.is_expired(self._clock()):
            return None
        user = self.store.get_user(record.user_id)
        if not user or user.is_deleted:
            return None
        return user.email

    async def consume_reset_token(self, token: Optional[str], new_password: str) -> bool:
        """Set a new password and revoke every session of the owner.

        Returns False for unknown, expired and already used tokens alike.
        """
        return await self.redeem(token, new_password) is not None

    async def redeem(self, token: Optional[str], new_password: str) -> Optional[str]:
        """Like :meth:`consume_reset_token` but returns the affected user id."""
        if not token:
            return None
        token_hash = hash_token(token)
        # Skip the expensive hash for tokens that cannot succeed
        record = self.store.get_reset_token(token_hash)
        if not record or record.is_expired(self._clock()):
            logger.warning("password_reset_invalid_token")
            return None
        password_hash = await self.hasher.hash_async(new_password)
        user_id = self.store.consume_reset_token(
            token_hash, password_hash, now=self._clock()
        )
        if not user_id:
            logger.warning("password_reset_invalid_token")
            return None
        logger.info("password_reset_completed", user_id=user_id)
        return user_id

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        return self.store.delete_expired_reset_tokens(now or self._clock())
