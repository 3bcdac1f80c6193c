from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from sessioncore.config import Settings, get_settings, reset_settings_cache
from sessioncore.logging import get_logger
from sessioncore.service.sessions import SessionService
from sessioncore.storage.memory import MemoryStore
from sessioncore.storage.postgres import PostgresStore
from sessioncore.storage.redis_cache import RedisRevocationStore

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
        user = parsed.username or ""
        netloc = f"{user}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Wires stores and the session service from settings."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store: Union[MemoryStore, PostgresStore] = MemoryStore()
            else:
                if not self.settings.database_url:
                    raise RuntimeError(
                        "DATABASE_URL is required unless USE_MEMORY_STORE=true"
                    )
                self.store = PostgresStore(self.settings.database_url)
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
                database_url=_mask_url_password(self.settings.database_url),
            )
            raise

        self.cache: Optional[RedisRevocationStore] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisRevocationStore(
                    self.settings.redis_url,
                    socket_timeout=self.settings.store_timeout_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the refresh-token revocation ledger; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; revoked refresh tokens "
                    f"are kept in the {store_type} store."
                ),
                mode=fallback_mode,
            )

        self.revocations: Union[RedisRevocationStore, MemoryStore, PostgresStore] = (
            self.cache or self.store
        )
        self.sessions = SessionService(self.store, self.revocations, self.settings)
        logger.info(
            "runtime_init_completed",
            revocation_backend=type(self.revocations).__name__,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        await self.store.close()


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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        previous = runtime
        if previous is not None:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(previous.close())
            else:
                raise RuntimeError("reset_runtime_for_tests must not be called from a running loop")
        runtime = Runtime(settings)
        return runtime
