import pytest
from pydantic import ValidationError

from galleryauth.config import LockoutKeyStrategy, Settings, get_settings, reset_settings_cache


def _settings(**overrides):
    return Settings(jwt_secret="x" * 40, **overrides)


class TestTokenLifetimes:
    def test_defaults(self):
        settings = _settings()

        assert settings.access_token_ttl_minutes == 15
        assert settings.admin_access_token_ttl_minutes == 120
        assert settings.refresh_token_ttl_days == 7
        assert settings.remember_me_refresh_ttl_days == 30

    @pytest.mark.parametrize("minutes", [14, 121])
    def test_access_lifetime_bounds(self, minutes):
        with pytest.raises(ValidationError):
            _settings(access_token_ttl_minutes=minutes)

    @pytest.mark.parametrize("days", [6, 31])
    def test_refresh_lifetime_bounds(self, days):
        with pytest.raises(ValidationError):
            _settings(refresh_token_ttl_days=days)

    def test_remember_me_cannot_be_shorter(self):
        with pytest.raises(ValidationError):
            _settings(refresh_token_ttl_days=14, remember_me_refresh_ttl_days=7)


class TestParsing:
    def test_retries_are_clamped(self):
        assert _settings(store_read_retries=50).store_read_retries == 5
        assert _settings(store_read_retries=-1).store_read_retries == 0

    def test_lockout_strategy_from_string(self):
        assert _settings(lockout_key_strategy="email_ip").lockout_key_strategy == (
            LockoutKeyStrategy.EMAIL_IP
        )
        with pytest.raises(ValidationError):
            _settings(lockout_key_strategy="ip")

    def test_non_positive_limits_rejected(self):
        with pytest.raises(ValidationError):
            _settings(max_login_attempts=0)

    def test_from_env_reads_named_variables(self, monkeypatch):
        monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "7")
        monkeypatch.setenv("LOCKOUT_KEY_STRATEGY", "email_ip")
        monkeypatch.setenv("SMTP_FROM", "gallery@example.com")

        settings = Settings.from_env()

        assert settings.max_login_attempts == 7
        assert settings.lockout_key_strategy == LockoutKeyStrategy.EMAIL_IP
        assert settings.email_from_address == "gallery@example.com"

    def test_get_settings_is_cached(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "9")

        assert get_settings() is first
        reset_settings_cache()
        assert get_settings().max_login_attempts == 9


class TestJwtSecret:
    def test_generated_secret_is_persisted(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)

        assert first.jwt_secret == second.jwt_secret
        assert len(first.jwt_secret) >= 32
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

    def test_short_persisted_secret_is_replaced(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        (tmp_path / ".jwt_secret").write_text("short")

        settings = Settings(jwt_secret=None)

        assert settings.jwt_secret != "short"
        assert len(settings.jwt_secret) >= 32
