from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from curasense.logging import get_logger
from curasense.service.tokens import AccessTokenClaims, TokenSigner
from curasense.storage.errors import StorageTimeout
from curasense.storage.models import (
    RequestContext,
    Session,
    User,
    UserStatus,
    hash_token,
    utcnow,
)

logger = get_logger(__name__)

# 32 bytes -> 256 bits of entropy
_TOKEN_BYTES = 32


def generate_opaque_token() -> str:
    return secrets.token_urlsafe(_TOKEN_BYTES)


@dataclass
class IssuedSession:
    """A freshly created session and the plaintext refresh token for the cookie."""

    refresh_token: str
    session: Session


@dataclass
class RefreshResult:
    access_token: str
    expires_in: int
    user: User
    session: Session
    # Equal to the presented token when rotation is disabled
    refresh_token: str


class SessionStore:
    """Opaque refresh-token sessions: issue, refresh with rotation, revoke."""

    def __init__(
        self,
        store,
        signer: TokenSigner,
        *,
        ttl_minutes: int,
        rotate: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.signer = signer
        self.ttl_minutes = ttl_minutes
        self.rotate = rotate
        self._clock = clock

    @property
    def max_age_seconds(self) -> int:
        return self.ttl_minutes * 60

    def create_session(
        self, user_id: str, context: Optional[RequestContext] = None
    ) -> IssuedSession:
        context = context or RequestContext()
        token = generate_opaque_token()
        session = self.store.create_session(
            user_id,
            hash_token(token),
            ttl_minutes=self.ttl_minutes,
            now=self._clock(),
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return IssuedSession(refresh_token=token, session=session)

    def refresh(self, token: Optional[str]) -> Optional[RefreshResult]:
        """Exchange a refresh token for a new access token.

        Returns ``None`` when the session is missing or expired, when its user
        can no longer sign in, or when the store cannot answer in time.
        """
        if not token:
            return None
        try:
            return self._refresh(token)
        except StorageTimeout as exc:
            logger.warning("session_refresh_timeout", operation=exc.operation)
            return None

    def _refresh(self, token: str) -> Optional[RefreshResult]:
        now = self._clock()
        token_hash = hash_token(token)
        session = self.store.get_session_by_token_hash(token_hash)
        if not session:
            return None
        if session.is_expired(now):
            self.store.delete_session_by_token_hash(token_hash)
            logger.info("session_expired", session_id=session.id)
            return None
        user = self.store.get_user(session.user_id)
        if not user or user.is_deleted or user.status != UserStatus.ACTIVE:
            return None

        presented = token
        if self.rotate:
            presented = generate_opaque_token()
            rotated = self.store.rotate_session(token_hash, hash_token(presented), now=now)
            if not rotated:
                # Another request rotated or revoked it first
                logger.info("session_rotation_lost", session_id=session.id)
                return None
            session = rotated
        else:
            self.store.touch_session(session.id, now=now)
            session.last_active_at = now

        access_token = self.signer.issue_access_token(AccessTokenClaims.for_user(user))
        return RefreshResult(
            access_token=access_token,
            expires_in=self.signer.expires_in,
            user=user,
            session=session,
            refresh_token=presented,
        )

    def destroy_session(self, token: Optional[str]) -> bool:
        """Delete the session for ``token``; unknown tokens are not an error."""
        if not token:
            return False
        return self.store.delete_session_by_token_hash(hash_token(token))

    def destroy_all_sessions(self, user_id: str) -> int:
        removed = self.store.delete_user_sessions(user_id)
        logger.info("sessions_revoked", user_id=user_id, count=removed)
        return removed

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        return self.store.delete_expired_sessions(now or self._clock())
