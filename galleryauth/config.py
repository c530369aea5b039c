from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from galleryauth.logging import get_logger

logger = get_logger(__name__)


class LockoutKeyStrategy(str, Enum):
    """How failed-login counters are keyed.

    - EMAIL: one counter per normalized email address
    - EMAIL_IP: one counter per (email, source IP) pair
    """

    EMAIL = "email"
    EMAIL_IP = "email_ip"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/galleryauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/galleryauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory fallbacks and runtime resets for tests.",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Separate signing key for refresh tokens; falls back to JWT_SECRET",
    )
    jwt_issuer: str = env_field("galleryauth", "JWT_ISSUER")
    jwt_audience: str = env_field("gallery-admin", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    admin_access_token_ttl_minutes: int = env_field(
        120, "ADMIN_ACCESS_TOKEN_TTL_MINUTES"
    )
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    remember_me_refresh_ttl_days: int = env_field(30, "REMEMBER_ME_REFRESH_TTL_DAYS")
    clock_skew_leeway_seconds: int = env_field(30, "CLOCK_SKEW_LEEWAY_SECONDS")

    # Login throttling
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    login_failure_window_seconds: int = env_field(15 * 60, "LOGIN_FAILURE_WINDOW_SECONDS")
    lockout_seconds: int = env_field(15 * 60, "LOCKOUT_SECONDS")
    lockout_key_strategy: LockoutKeyStrategy = env_field(
        LockoutKeyStrategy.EMAIL, "LOCKOUT_KEY_STRATEGY"
    )

    # Password reset
    reset_token_ttl_minutes: int = env_field(15, "RESET_TOKEN_TTL_MINUTES")
    reset_max_per_hour: int = env_field(5, "RESET_MAX_PER_HOUR")
    reset_sweep_interval_seconds: int = env_field(5 * 60, "RESET_SWEEP_INTERVAL_SECONDS")
    app_base_url: str = env_field("http://localhost:8080", "APP_BASE_URL")
    reset_path: str = env_field("/admin/reset-password", "RESET_PATH")

    # Password hashing (argon2id)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    # Store resilience
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")
    store_read_retries: int = env_field(2, "STORE_READ_RETRIES")
    store_retry_base_delay_seconds: float = env_field(
        0.05, "STORE_RETRY_BASE_DELAY_SECONDS"
    )

    # First-run admin provisioning
    bootstrap_admin_enabled: bool = env_field(True, "BOOTSTRAP_ADMIN_ENABLED")
    default_admin_email: str = env_field("admin@elouarate.com", "DEFAULT_ADMIN_EMAIL")
    default_admin_password: str = env_field("Admin123!", "DEFAULT_ADMIN_PASSWORD")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field("noreply@elouarate.com", "SMTP_FROM")
    email_from_name: str = env_field("ELOUARATE ART", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("lockout_key_strategy")
    @classmethod
    def _validate_key_strategy(cls, value: LockoutKeyStrategy) -> LockoutKeyStrategy:
        return LockoutKeyStrategy(value)

    @field_validator("access_token_ttl_minutes", "admin_access_token_ttl_minutes")
    @classmethod
    def _validate_access_ttl(cls, value: int) -> int:
        if not 15 <= value <= 120:
            raise ValueError("access token lifetime must be between 15 and 120 minutes")
        return value

    @field_validator("refresh_token_ttl_days", "remember_me_refresh_ttl_days")
    @classmethod
    def _validate_refresh_ttl(cls, value: int) -> int:
        if not 7 <= value <= 30:
            raise ValueError("refresh token lifetime must be between 7 and 30 days")
        return value

    @field_validator(
        "max_login_attempts",
        "login_failure_window_seconds",
        "lockout_seconds",
        "reset_token_ttl_minutes",
        "reset_max_per_hour",
        "reset_sweep_interval_seconds",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("store_read_retries")
    @classmethod
    def _validate_retries(cls, value: int) -> int:
        # Clamp to 0..5
        return max(0, min(value, 5))

    @model_validator(mode="after")
    def _check_remember_me(self) -> "Settings":
        if self.remember_me_refresh_ttl_days < self.refresh_token_ttl_days:
            raise ValueError(
                "remember_me_refresh_ttl_days must not be shorter than refresh_token_ttl_days"
            )
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/galleryauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        logger.warning("jwt_secret_generated", path=str(secret_path))
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
