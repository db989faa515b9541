import pytest
from pydantic import ValidationError

from curasense.config import Settings, get_settings, reset_settings_cache


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "30")
    monkeypatch.setenv("LOCKOUT_THRESHOLD", "7")
    monkeypatch.setenv("ROTATE_REFRESH_TOKENS", "false")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://app.example.com, https://admin.example.com")

    settings = Settings.from_env()

    assert settings.access_token_ttl_minutes == 30
    assert settings.lockout_threshold == 7
    assert settings.rotate_refresh_tokens is False
    assert settings.cors_allow_origins == ["https://app.example.com", "https://admin.example.com"]


def test_defaults_match_documented_values():
    settings = Settings(jwt_secret="x" * 40)

    assert settings.access_token_ttl_minutes == 15
    assert settings.session_ttl_minutes == 30 * 24 * 60
    assert settings.lockout_threshold == 5
    assert settings.lockout_minutes == 15
    assert settings.reset_token_ttl_minutes == 60


@pytest.mark.parametrize(
    "field", ["access_token_ttl_minutes", "session_ttl_minutes", "lockout_threshold", "reset_token_ttl_minutes"]
)
def test_non_positive_values_are_rejected(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, **{field: 0})


def test_short_jwt_secret_is_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="too-short")


def test_missing_jwt_secret_is_generated_and_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(jwt_secret=None)
    second = Settings(jwt_secret=None)

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text().strip() == first.jwt_secret


def test_settings_cache_resets(monkeypatch):
    reset_settings_cache()
    monkeypatch.setenv("LOCKOUT_MINUTES", "42")
    try:
        assert get_settings() is get_settings()
        assert get_settings().lockout_minutes == 42
    finally:
        monkeypatch.delenv("LOCKOUT_MINUTES")
        reset_settings_cache()
