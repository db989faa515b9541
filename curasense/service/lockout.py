from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from curasense.logging import get_logger
from curasense.service.errors import AccountLockedError
from curasense.storage.models import User, utcnow

logger = get_logger(__name__)


class LockState(str, Enum):
    UNLOCKED = "UNLOCKED"
    LOCKED = "LOCKED"


class LockoutGuard:
    """Temporarily lock an account after repeated failed logins.

    The counter survives an expired lock: the next failure after it lapses
    locks again straight away. Only a successful login resets it.
    """

    def __init__(
        self,
        store,
        *,
        threshold: int = 5,
        lockout_minutes: int = 15,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.lockout = timedelta(minutes=lockout_minutes)
        self._clock = clock

    def state(self, user: User) -> LockState:
        return LockState.LOCKED if user.is_locked(self._clock()) else LockState.UNLOCKED

    def check(self, user: User) -> None:
        if self.state(user) is LockState.LOCKED:
            logger.warning(
                "login_account_locked",
                user_id=user.id,
                locked_until=user.locked_until.isoformat(),
            )
            raise AccountLockedError(user.locked_until)

    def record_failure(self, user: User) -> User:
        lock_until = self._clock() + self.lockout
        updated: Optional[User] = self.store.record_failed_login(
            user.id, threshold=self.threshold, lock_until=lock_until
        )
        if updated is None:
            return user
        if updated.failed_login_count >= self.threshold:
            logger.warning(
                "account_locked",
                user_id=user.id,
                failed_login_count=updated.failed_login_count,
                locked_until=lock_until.isoformat(),
            )
        return updated

    def record_success(self, user: User, ip_address: Optional[str] = None) -> User:
        updated = self.store.record_successful_login(
            user.id, ip_address=ip_address, now=self._clock()
        )
        return updated or user
