from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from curasense.logging import get_logger
from curasense.storage.errors import ConstraintViolation
from curasense.storage.models import (
    PROFILE_FIELDS,
    AuditAction,
    AuditLogEntry,
    PasswordResetToken,
    Session,
    User,
    UserRole,
    UserStatus,
    build_display_name,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and single-process development.

    State is optionally mirrored to ``<fs_root>/state/memory_store.json`` so a
    restarted dev server keeps its users and sessions. Every operation runs
    under one re-entrant lock; records handed out are copies, so callers never
    mutate stored state by accident.
    """

    def __init__(self, fs_root: Optional[str] = None, *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.audit_log: List[AuditLogEntry] = []
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        self.persist = persist and self.fs_root is not None
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
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
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                display_name=display_name or build_display_name(first_name, last_name),
                role=UserRole(role),
                status=UserStatus(status),
                phone=phone,
                date_of_birth=date_of_birth,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def update_user_profile(self, user_id: str, updates: Dict[str, Any]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in updates.items():
                if key in PROFILE_FIELDS:
                    setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def update_user_role(self, user_id: str, role: UserRole) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = UserRole(role)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = UserStatus(status)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def soft_delete_user(self, user_id: str, now: Optional[datetime] = None) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.deleted_at = now or utcnow()
            self._persist_state()
            return True

    def set_user_password(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def record_failed_login(
        self, user_id: str, *, threshold: int, lock_until: datetime
    ) -> Optional[User]:
        """Increment the failure counter and lock once it reaches ``threshold``."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_count += 1
            if user.failed_login_count >= threshold:
                user.locked_until = lock_until
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def record_successful_login(
        self, user_id: str, *, ip_address: Optional[str], now: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_count = 0
            user.locked_until = None
            user.last_login_at = now
            user.last_login_ip = ip_address
            user.updated_at = now
            self._persist_state()
            return replace(user)

    # sessions
    def create_session(
        self,
        user_id: str,
        token_hash: str,
        *,
        ttl_minutes: int,
        now: Optional[datetime] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if any(s.token_hash == token_hash for s in self.sessions.values()):
                raise ConstraintViolation("session token collision", {"field": "token"})
            sess = Session.new(
                user_id,
                token_hash,
                ttl_minutes,
                now=now,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def _find_session(self, token_hash: str) -> Optional[Session]:
        return next(
            (s for s in self.sessions.values() if s.token_hash == token_hash), None
        )

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = self._find_session(token_hash)
            return replace(sess) if sess else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [replace(s) for s in self.sessions.values() if s.user_id == user_id]

    def rotate_session(
        self, old_token_hash: str, new_token_hash: str, *, now: datetime
    ) -> Optional[Session]:
        """Swap a live session's token; expired or unknown sessions are left alone."""
        with self._data_lock:
            sess = self._find_session(old_token_hash)
            if not sess or sess.is_expired(now):
                return None
            sess.token_hash = new_token_hash
            sess.last_active_at = now
            self._persist_state()
            return replace(sess)

    def touch_session(self, session_id: str, *, now: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.last_active_at = now
            self._persist_state()

    def delete_session_by_token_hash(self, token_hash: str) -> bool:
        with self._data_lock:
            sess = self._find_session(token_hash)
            if not sess:
                return False
            self.sessions.pop(sess.id, None)
            self._persist_state()
            return True

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.is_expired(now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # password reset tokens
    def create_reset_token(
        self, user_id: str, token_hash: str, *, expires_at: datetime, now: datetime
    ) -> PasswordResetToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            # A new token supersedes any outstanding ones for the same user
            for key in [k for k, t in self.reset_tokens.items() if t.user_id == user_id]:
                self.reset_tokens.pop(key, None)
            record = PasswordResetToken(
                token_hash=token_hash,
                user_id=user_id,
                created_at=now,
                expires_at=expires_at,
            )
            self.reset_tokens[token_hash] = record
            self._persist_state()
            return replace(record)

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            record = self.reset_tokens.get(token_hash)
            return replace(record) if record else None

    def consume_reset_token(
        self, token_hash: str, password_hash: str, *, now: datetime
    ) -> Optional[str]:
        """Use a reset token once: set the password and revoke every session.

        Returns the affected user id, or None when the token is unknown,
        expired, or its user is gone.
        """
        with self._data_lock:
            record = self.reset_tokens.pop(token_hash, None)
            if not record:
                return None
            user = self.users.get(record.user_id)
            if record.is_expired(now) or not user or user.is_deleted:
                self._persist_state()
                return None
            user.password_hash = password_hash
            user.failed_login_count = 0
            user.locked_until = None
            user.updated_at = now
            for sid in [s for s, sess in self.sessions.items() if sess.user_id == user.id]:
                self.sessions.pop(sid, None)
            self._persist_state()
            return user.id

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [k for k, t in self.reset_tokens.items() if t.is_expired(now)]
            for key in stale:
                self.reset_tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    # audit
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
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            action=AuditAction(action),
            resource=resource,
            created_at=now or utcnow(),
            actor_id=actor_id,
            resource_id=resource_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details,
        )
        with self._data_lock:
            self.audit_log.append(entry)
            self._persist_state()
        return replace(entry)

    def list_audit_entries(
        self, actor_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            entries = [
                e for e in self.audit_log if actor_id is None or e.actor_id == actor_id
            ]
            entries.sort(key=lambda e: e.created_at, reverse=True)
            return [replace(e) for e in entries[:limit]]

    def delete_audit_entries_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            before = len(self.audit_log)
            self.audit_log = [e for e in self.audit_log if e.created_at >= cutoff]
            removed = before - len(self.audit_log)
            if removed:
                self._persist_state()
            return removed

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "reset_tokens": [
                self._serialize_reset_token(t) for t in self.reset_tokens.values()
            ],
            "audit_log": [self._serialize_audit_entry(e) for e in self.audit_log],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.reset_tokens = {
            t["token_hash"]: self._deserialize_reset_token(t)
            for t in data.get("reset_tokens", [])
        }
        self.audit_log = [
            self._deserialize_audit_entry(e) for e in data.get("audit_log", [])
        ]
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "display_name": user.display_name,
            "role": user.role.value,
            "status": user.status.value,
            "phone": user.phone,
            "avatar_url": user.avatar_url,
            "date_of_birth": user.date_of_birth.isoformat() if user.date_of_birth else None,
            "preferences": user.preferences,
            "failed_login_count": user.failed_login_count,
            "locked_until": self._serialize_datetime(user.locked_until),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "last_login_ip": user.last_login_ip,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "deleted_at": self._serialize_datetime(user.deleted_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        raw_dob = data.get("date_of_birth")
        return User(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            display_name=data.get("display_name", ""),
            role=UserRole(data.get("role", UserRole.PATIENT.value)),
            status=UserStatus(data.get("status", UserStatus.ACTIVE.value)),
            phone=data.get("phone"),
            avatar_url=data.get("avatar_url"),
            date_of_birth=date.fromisoformat(raw_dob) if raw_dob else None,
            preferences=data.get("preferences") or {},
            failed_login_count=int(data.get("failed_login_count", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            last_login_ip=data.get("last_login_ip"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "token_hash": session.token_hash,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "last_active_at": self._serialize_datetime(session.last_active_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            token_hash=data["token_hash"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            last_active_at=self._deserialize_datetime(data.get("last_active_at")),
        )

    def _serialize_reset_token(self, token: PasswordResetToken) -> dict:
        return {
            "token_hash": token.token_hash,
            "user_id": token.user_id,
            "created_at": self._serialize_datetime(token.created_at),
            "expires_at": self._serialize_datetime(token.expires_at),
        }

    def _deserialize_reset_token(self, data: dict) -> PasswordResetToken:
        return PasswordResetToken(
            token_hash=data["token_hash"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )

    def _serialize_audit_entry(self, entry: AuditLogEntry) -> dict:
        return {
            "id": entry.id,
            "action": entry.action.value,
            "resource": entry.resource,
            "created_at": self._serialize_datetime(entry.created_at),
            "actor_id": entry.actor_id,
            "resource_id": entry.resource_id,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "details": entry.details,
        }

    def _deserialize_audit_entry(self, data: dict) -> AuditLogEntry:
        return AuditLogEntry(
            id=data["id"],
            action=AuditAction(data["action"]),
            resource=data["resource"],
            created_at=self._deserialize_datetime(data["created_at"]),
            actor_id=data.get("actor_id"),
            resource_id=data.get("resource_id"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            details=data.get("details"),
        )
