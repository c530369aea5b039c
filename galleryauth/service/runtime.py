from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from galleryauth.config import Settings, get_settings, reset_settings_cache
from galleryauth.logging import get_logger
from galleryauth.service.auth import AuthenticationOrchestrator
from galleryauth.service.notifications import SmtpNotificationSink
from galleryauth.service.reset_tokens import ResetTokenSweeper
from galleryauth.storage.counters import MemoryCounterStore
from galleryauth.storage.memory import MemoryStore
from galleryauth.storage.postgres import PostgresStore
from galleryauth.storage.redis_cache import RedisCounterStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            )
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the credential services built from settings."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout=self.settings.store_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.counters = self._build_counters()
        self.notifier = SmtpNotificationSink(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            reset_path=self.settings.reset_path,
            reset_ttl_minutes=self.settings.reset_token_ttl_minutes,
        )
        self.auth = AuthenticationOrchestrator(
            self.settings, self.store, self.counters, notifier=self.notifier
        )
        self.reset_sweeper = ResetTokenSweeper(
            self.auth.resets, interval=self.settings.reset_sweep_interval_seconds
        )
        logger.info("runtime_init_completed", counter_store=type(self.counters).__name__)

    def _build_counters(self) -> "RedisCounterStore | MemoryCounterStore":
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                counters = RedisCounterStore(
                    self.settings.redis_url,
                    socket_timeout=self.settings.store_timeout_seconds,
                    read_retries=self.settings.store_read_retries,
                    retry_base_delay=self.settings.store_retry_base_delay_seconds,
                )
                counters.verify_connection()
                return counters
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for login throttling, reset limits and token revocation; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; lockouts, reset limits and "
                "revocations are local to this process."
            ),
            mode=fallback_mode,
        )
        return MemoryCounterStore()

    async def start(self) -> None:
        await self.reset_sweeper.start()

    async def shutdown(self) -> None:
        await self.reset_sweeper.stop()
        await self.auth.drain_notifications()
        await self.counters.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.counters, RedisCounterStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.counters.close())
            except RuntimeError:
                asyncio.run(runtime.counters.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
