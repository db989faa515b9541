from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from curasense.config import Settings
from curasense.logging import get_logger
from curasense.storage.models import User, UserRole, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class AccessTokenClaims:
    """Identity asserted by an access token.

    ``issued_at``, ``expires_at`` and ``jti`` are filled in by the signer and
    left ``None`` on claims built for issuing.
    """

    user_id: str
    email: str
    role: UserRole
    first_name: str
    last_name: str
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    jti: Optional[str] = None

    @classmethod
    def for_user(cls, user: User) -> "AccessTokenClaims":
        return cls(
            user_id=user.id,
            email=user.email,
            role=user.role,
            first_name=user.first_name,
            last_name=user.last_name,
        )

    def identity(self) -> tuple:
        return (self.user_id, self.email, self.role, self.first_name, self.last_name)


class TokenSigner:
    """HS256 access tokens signed with the process-wide secret."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl_minutes: int,
        leeway_seconds: int = 0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl = timedelta(minutes=ttl_minutes)
        self.leeway = timedelta(seconds=leeway_seconds)
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], datetime] = utcnow
    ) -> "TokenSigner":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl_minutes=settings.access_token_ttl_minutes,
            leeway_seconds=settings.clock_skew_leeway_seconds,
            clock=clock,
        )

    @property
    def expires_in(self) -> int:
        """Access token lifetime in seconds."""
        return int(self.ttl.total_seconds())

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue_access_token(self, claims: AccessTokenClaims) -> str:
        now = self._clock()
        payload: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": claims.user_id,
            "email": claims.email,
            "role": UserRole(claims.role).value,
            "first_name": claims.first_name,
            "last_name": claims.last_name,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self.ttl).timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify_access_token(self, token: Optional[str]) -> Optional[AccessTokenClaims]:
        """Return the token's claims, or ``None`` for any malformed, forged or expired token."""
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud or payload.get("token_type") != "access":
            return None
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
            role = UserRole(payload.get("role"))
        except (KeyError, TypeError, ValueError):
            return None
        now = self._clock()
        if exp_ts <= (now - self.leeway).timestamp():
            return None
        sub = payload.get("sub")
        if not sub:
            return None
        return AccessTokenClaims(
            user_id=str(sub),
            email=payload.get("email", ""),
            role=role,
            first_name=payload.get("first_name", ""),
            last_name=payload.get("last_name", ""),
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            jti=payload.get("jti"),
        )
