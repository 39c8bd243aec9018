from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from jwtsessions.config import Settings, get_settings, reset_settings_cache
from jwtsessions.logging import get_logger
from jwtsessions.storage.errors import StoreError
from jwtsessions.storage.memory import MemoryStore
from jwtsessions.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL before logging it.

    redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the process-wide settings and token store used by sessions."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store: Union[MemoryStore, RedisStore] = self._build_store()
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if isinstance(self.store, MemoryStore) else "redis",
            persist_access=self.settings.persist_access_tokens,
        )

    def _build_store(self) -> Union[MemoryStore, RedisStore]:
        if self.settings.use_memory_store:
            return MemoryStore()

        redis_error: Exception | None = None
        if self.settings.redis_url:
            store = RedisStore(self.settings.redis_url, prefix=self.settings.token_prefix)
            try:
                store.verify_connection()
                return store
            except StoreError as exc:
                redis_error = exc
                store.close()

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required to track refresh tokens; start Redis or set "
                "USE_MEMORY_STORE=true, TEST_MODE=true or ALLOW_REDIS_FALLBACK_DEV=true."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions are kept "
                "in process memory and lost on restart."
            ),
            mode=fallback_mode,
        )
        return MemoryStore()

    def close(self) -> None:
        if isinstance(self.store, RedisStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read serves the common case, the
    locked re-check keeps two threads from building separate runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton from a freshly read environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
