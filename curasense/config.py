from __future__ import annotations

import contextlib
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from curasense.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32
_SECRET_FILE = ".jwt_secret"


def env_field(default: Any, env: str, **kwargs):
    """Field whose value is looked up under the environment variable ``env``."""
    extra = {**(kwargs.pop("json_schema_extra", None) or {}), "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(root: Path) -> str:
    """Return the signing secret kept under ``root``, creating one on first start.

    Every worker sharing the volume then signs and verifies with the same key,
    and access tokens survive restarts. The file is written to a temp name and
    renamed so a concurrent reader never sees a partial secret.
    """
    target = root / _SECRET_FILE
    try:
        root.mkdir(parents=True, exist_ok=True)
        os.chmod(root, 0o700)
    except PermissionError:
        pass  # mounted volume owned by another uid
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(root))

    if target.is_file() and not target.is_symlink():
        try:
            existing = target.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(target))
        else:
            if len(existing) >= _MIN_SECRET_LENGTH:
                return existing

    secret = secrets.token_urlsafe(64)
    staging = None
    try:
        fd, staging = tempfile.mkstemp(dir=root, prefix=".jwt_secret_", suffix=".tmp")
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(secret)
        os.replace(staging, target)
    except OSError as exc:
        if staging:
            with contextlib.suppress(OSError):
                os.unlink(staging)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(target))
        raise RuntimeError(
            "could not store a generated JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(target))
    return secret


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and .env."""

    database_url: str = env_field(
        "postgresql://localhost:5432/curasense", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/curasense", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    persist_memory_store: bool = env_field(
        True,
        "PERSIST_MEMORY_STORE",
        description="Write the in-memory store to SHARED_FS_ROOT/state after each change",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets",
    )
    db_timeout_seconds: float = env_field(
        5.0,
        "DB_TIMEOUT_SECONDS",
        description="Pool acquisition and statement timeout for persistence calls",
    )

    # Tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("curasense", "JWT_ISSUER")
    jwt_audience: str = env_field("curasense-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token lifetime; the legacy deployment used 7 days (10080)",
    )
    session_ttl_minutes: int = env_field(
        30 * 24 * 60,
        "SESSION_TTL_MINUTES",
        description="Refresh-token session lifetime (absolute, not sliding)",
    )
    rotate_refresh_tokens: bool = env_field(
        True,
        "ROTATE_REFRESH_TOKENS",
        description="Issue a new refresh token on every refresh and retire the old one",
    )
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS")

    # Password hashing (argon2id)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(
        64 * 1024, "PASSWORD_HASH_MEMORY_COST", description="KiB"
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    # Lockout and reset
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")

    # Housekeeping
    audit_retention_days: int = env_field(30, "AUDIT_RETENTION_DAYS")
    cleanup_interval_seconds: int = env_field(3600, "CLEANUP_INTERVAL_SECONDS")

    # Registration
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    require_email_verification: bool = env_field(
        False,
        "REQUIRE_EMAIL_VERIFICATION",
        description="Create new accounts as PENDING_VERIFICATION instead of ACTIVE",
    )

    # HTTP
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    refresh_rate_limit_per_minute: int = env_field(30, "REFRESH_RATE_LIMIT_PER_MINUTE")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field(
        [],
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated origins; empty means the local dev hosts",
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("CuraSense", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``os.environ``, then ``.env``; unset names keep their defaults."""
        dotenv = dotenv_values(".env")
        values: dict[str, str] = {}
        for attr, info in cls.model_fields.items():
            extra = info.json_schema_extra if isinstance(info.json_schema_extra, dict) else {}
            var = extra.get("env") or attr.upper()
            raw = os.environ.get(var, dotenv.get(var))
            if raw is not None:
                values[attr] = raw
        return cls(**values)

    @field_validator(
        "access_token_ttl_minutes",
        "session_ttl_minutes",
        "lockout_threshold",
        "lockout_minutes",
        "reset_token_ttl_minutes",
        "audit_retention_days",
        "password_hash_time_cost",
        "password_hash_parallelism",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("db_timeout_seconds")
    @classmethod
    def _require_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            return _load_or_create_secret(Path(os.getenv("SHARED_FS_ROOT", "/srv/curasense")))
        if len(value) < _MIN_SECRET_LENGTH:
            raise ValueError(f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters")
        return value


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    global _settings_cache
    _settings_cache = None
