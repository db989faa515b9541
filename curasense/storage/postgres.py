from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from curasense.logging import get_logger
from curasense.storage.errors import ConstraintViolation, StorageTimeout
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


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        display_name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'PATIENT',
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        phone TEXT,
        avatar_url TEXT,
        date_of_birth DATE,
        preferences JSONB NOT NULL DEFAULT '{}'::jsonb,
        failed_login_count INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        last_login_ip TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        last_active_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        token_hash TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        resource TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        actor_id TEXT,
        resource_id TEXT,
        ip_address TEXT,
        user_agent TEXT,
        details JSONB
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_created_idx ON audit_log (created_at)",
)


class PostgresStore:
    """Postgres-backed store for users, sessions, reset tokens and the audit log."""

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self, operation: str = "query") -> Iterator[Any]:
        """Borrow a pooled connection; slow pools and cancelled statements surface as StorageTimeout."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.warning("storage_pool_timeout", operation=operation)
            raise StorageTimeout(operation, self.timeout_seconds) from exc
        except errors.QueryCanceled as exc:
            self.logger.warning("storage_statement_timeout", operation=operation)
            raise StorageTimeout(operation, self.timeout_seconds) from exc

    def _ensure_schema(self) -> None:
        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect("verify_connection") as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _load_json(value: Any) -> Optional[dict]:
        if value is None:
            return None
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return None
        return value if isinstance(value, dict) else None

    def _user_from_row(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            display_name=row.get("display_name") or "",
            role=UserRole(row.get("role") or UserRole.PATIENT.value),
            status=UserStatus(row.get("status") or UserStatus.ACTIVE.value),
            phone=row.get("phone"),
            avatar_url=row.get("avatar_url"),
            date_of_birth=row.get("date_of_birth"),
            preferences=self._load_json(row.get("preferences")) or {},
            failed_login_count=row.get("failed_login_count") or 0,
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            last_login_ip=row.get("last_login_ip"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            last_active_at=row.get("last_active_at"),
        )

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
        user_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        try:
            with self._connect("create_user") as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, first_name, last_name, display_name, role, status, phone, date_of_birth)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalized,
                        password_hash,
                        first_name,
                        last_name,
                        display_name or build_display_name(first_name, last_name),
                        UserRole(role).value,
                        UserStatus(status).value,
                        phone,
                        date_of_birth,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect("get_user") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect("get_user_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_profile(self, user_id: str, updates: Dict[str, Any]) -> Optional[User]:
        allowed = {k: v for k, v in updates.items() if k in PROFILE_FIELDS}
        assignments = []
        params: List[Any] = []
        for column, value in allowed.items():
            assignments.append(f"{column} = %s")
            params.append(json.dumps(value) if column == "preferences" else value)
        assignments.append("updated_at = now()")
        params.append(user_id)
        with self._connect("update_user_profile") as conn:
            row = conn.execute(
                f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                tuple(params),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: UserRole) -> Optional[User]:
        with self._connect("update_user_role") as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (UserRole(role).value, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._connect("set_user_status") as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s, updated_at = now() WHERE id = %s RETURNING *",
                (UserStatus(status).value, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def soft_delete_user(self, user_id: str, now: Optional[datetime] = None) -> bool:
        with self._connect("soft_delete_user") as conn:
            result = conn.execute(
                "UPDATE app_user SET deleted_at = %s WHERE id = %s",
                (now or utcnow(), user_id),
            )
            return result.rowcount > 0

    def set_user_password(self, user_id: str, password_hash: str) -> bool:
        with self._connect("set_user_password") as conn:
            result = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            return result.rowcount > 0

    def record_failed_login(
        self, user_id: str, *, threshold: int, lock_until: datetime
    ) -> Optional[User]:
        # Single statement so concurrent failures cannot lose an increment
        with self._connect("record_failed_login") as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_count = failed_login_count + 1,
                    locked_until = CASE
                        WHEN failed_login_count + 1 >= %s THEN %s
                        ELSE locked_until
                    END,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (threshold, lock_until, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_successful_login(
        self, user_id: str, *, ip_address: Optional[str], now: datetime
    ) -> Optional[User]:
        with self._connect("record_successful_login") as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_count = 0, locked_until = NULL,
                    last_login_at = %s, last_login_ip = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, ip_address, now, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

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
        sess = Session.new(
            user_id,
            token_hash,
            ttl_minutes,
            now=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            with self._connect("create_session") as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, token_hash, user_id, created_at, expires_at, ip_address, user_agent, last_active_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.token_hash,
                        sess.user_id,
                        sess.created_at,
                        sess.expires_at,
                        sess.ip_address,
                        sess.user_agent,
                        sess.last_active_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session token collision", {"field": "token"})
        return sess

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._connect("get_session") as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect("list_user_sessions") as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def rotate_session(
        self, old_token_hash: str, new_token_hash: str, *, now: datetime
    ) -> Optional[Session]:
        with self._connect("rotate_session") as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET token_hash = %s, last_active_at = %s
                WHERE token_hash = %s AND expires_at > %s
                RETURNING *
                """,
                (new_token_hash, now, old_token_hash, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, *, now: datetime) -> None:
        with self._connect("touch_session") as conn:
            conn.execute(
                "UPDATE auth_session SET last_active_at = %s WHERE id = %s",
                (now, session_id),
            )

    def delete_session_by_token_hash(self, token_hash: str) -> bool:
        with self._connect("delete_session") as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE token_hash = %s", (token_hash,)
            )
            return result.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect("delete_user_sessions") as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect("delete_expired_sessions") as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (now,)
            )
            return result.rowcount

    # password reset tokens
    def create_reset_token(
        self, user_id: str, token_hash: str, *, expires_at: datetime, now: datetime
    ) -> PasswordResetToken:
        try:
            with self._connect("create_reset_token") as conn:
                conn.execute(
                    "DELETE FROM password_reset_token WHERE user_id = %s", (user_id,)
                )
                conn.execute(
                    """
                    INSERT INTO password_reset_token (token_hash, user_id, created_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (token_hash, user_id, now, expires_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return PasswordResetToken(
            token_hash=token_hash, user_id=user_id, created_at=now, expires_at=expires_at
        )

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._connect("get_reset_token") as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        return PasswordResetToken(
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def consume_reset_token(
        self, token_hash: str, password_hash: str, *, now: datetime
    ) -> Optional[str]:
        """Delete the token, set the password and revoke sessions in one transaction."""
        with self._connect("consume_reset_token") as conn:
            token_row = conn.execute(
                "DELETE FROM password_reset_token WHERE token_hash = %s RETURNING user_id, expires_at",
                (token_hash,),
            ).fetchone()
            if not token_row or token_row["expires_at"] <= now:
                return None
            user_row = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s, failed_login_count = 0, locked_until = NULL, updated_at = %s
                WHERE id = %s AND deleted_at IS NULL
                RETURNING id
                """,
                (password_hash, now, token_row["user_id"]),
            ).fetchone()
            if not user_row:
                return None
            conn.execute(
                "DELETE FROM auth_session WHERE user_id = %s", (user_row["id"],)
            )
        return str(user_row["id"])

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        with self._connect("delete_expired_reset_tokens") as conn:
            result = conn.execute(
                "DELETE FROM password_reset_token WHERE expires_at <= %s", (now,)
            )
            return result.rowcount

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
        with self._connect("append_audit_entry") as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, action, resource, created_at, actor_id, resource_id, ip_address, user_agent, details)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.action.value,
                    entry.resource,
                    entry.created_at,
                    entry.actor_id,
                    entry.resource_id,
                    entry.ip_address,
                    entry.user_agent,
                    json.dumps(details) if details else None,
                ),
            )
        return entry

    def list_audit_entries(
        self, actor_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]:
        query = "SELECT * FROM audit_log"
        params: List[Any] = []
        if actor_id is not None:
            query += " WHERE actor_id = %s"
            params.append(actor_id)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect("list_audit_entries") as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [
            AuditLogEntry(
                id=str(row["id"]),
                action=AuditAction(row["action"]),
                resource=row["resource"],
                created_at=row["created_at"],
                actor_id=row.get("actor_id"),
                resource_id=row.get("resource_id"),
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                details=self._load_json(row.get("details")),
            )
            for row in rows
        ]

    def delete_audit_entries_before(self, cutoff: datetime) -> int:
        with self._connect("delete_audit_entries") as conn:
            result = conn.execute(
                "DELETE FROM audit_log WHERE created_at < %s", (cutoff,)
            )
            return result.rowcount
