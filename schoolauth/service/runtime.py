from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse

from schoolauth.config import Settings, get_settings, reset_settings_cache
from schoolauth.logging import get_logger
from schoolauth.service.admission import AdmissionController
from schoolauth.service.audit import AuditEmitter
from schoolauth.service.auth import AuthService
from schoolauth.service.lockout import LockoutPolicy
from schoolauth.service.notifications import NotificationDispatcher
from schoolauth.service.revocation import RevocationCache
from schoolauth.service.tokens import TokenCodec
from schoolauth.storage.memory import MemoryStore
from schoolauth.storage.postgres import PostgresStore
from schoolauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Hide the password component of a connection URL before logging it."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    return url.replace(f":{parsed.password}@", ":***@", 1)


class Runtime:
    """Process-wide service graph shared by every request."""

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
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )

        self.revocations = RevocationCache.from_settings(self.settings)
        self.tokens = TokenCodec(
            self.settings,
            revocations=self.revocations,
            consumed_refresh=RevocationCache.from_settings(self.settings, name="consumed_refresh"),
        )
        self.lockout = LockoutPolicy.from_settings(self.settings)
        self.audit = AuditEmitter(self.store.append_audit_entry)
        self.notifications = NotificationDispatcher.from_settings(self.settings)
        self.admission = AdmissionController.from_settings(self.settings, self.cache)
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.lockout,
            self.audit,
            self.notifications,
            self.settings,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.notifications.transport.is_configured,
        )

    async def aclose(self) -> None:
        await self.notifications.drain()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process singleton, building it on first use."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the singleton from a freshly read environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
