from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from storefront.config import Settings, get_settings, reset_settings_cache
from storefront.logging import get_logger
from storefront.service.auth import AuthService
from storefront.service.cart import CartService
from storefront.service.catalog import CatalogService
from storefront.service.orders import OrderService
from storefront.service.uploads import UploadService, build_uploader
from storefront.service.users import UserService
from storefront.storage.memory import MemoryStore
from storefront.storage.mongo import MongoStore
from storefront.storage.redis_cache import LocalBuckets, RateDecision, RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Hide the password in a connection URL before it is logged.

    mongodb://app:secret@db:27017 -> mongodb://app:***@db:27017
    """
    if not url:
        return url
    try:
        parts = urlsplit(url)
        if not parts.password:
            return url
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        masked = parts._replace(netloc=f"{parts.username or ''}:***@{host}")
        return urlunsplit(masked)
    except ValueError:
        return "<unparseable url>"


def _build_store(settings: Settings):
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.data_root)
    return MongoStore(settings.database_url, settings.database_name)


def _connect_cache(settings: Settings) -> Optional[RedisCache]:
    """Return a verified Redis client, or None when local buckets are acceptable."""
    failure: Optional[Exception] = None
    if settings.redis_url:
        try:
            cache = RedisCache(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            failure = exc
    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "REDIS_URL must point at a reachable Redis unless TEST_MODE or "
            "ALLOW_REDIS_FALLBACK_DEV is set"
        ) from failure
    logger.warning(
        "rate_limits_in_process",
        redis_url=_mask_url_password(settings.redis_url),
        reason=str(failure) if failure else "REDIS_URL unset",
    )
    return None


class Runtime:
    """The store, throttles and services shared by every request."""

    def __init__(self):
        self.settings = get_settings()
        backend = "memory" if self.settings.use_memory_store else "mongo"
        try:
            self.store = _build_store(self.settings)
        except Exception as exc:
            logger.error(
                "store_connect_failed",
                backend=backend,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = _connect_cache(self.settings)
        self.local_buckets = LocalBuckets()

        self.uploads = UploadService(
            build_uploader(self.settings), max_bytes=self.settings.max_upload_bytes
        )
        self.auth = AuthService(self.store, self.settings)
        self.users = UserService(self.store, self.auth, self.uploads)
        self.catalog = CatalogService(self.store, self.uploads)
        self.cart = CartService(self.store)
        self.orders = OrderService(self.store, self.cart)

        logger.info(
            "runtime_ready",
            backend=backend,
            redis=self.cache is not None,
            uploader=type(self.uploads.uploader).__name__,
            test_mode=self.settings.test_mode,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Drop the singleton and rebuild it from a freshly read environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.run(runtime.cache.close())
            except RuntimeError as exc:
                logger.warning("cache_close_skipped", error=str(exc))

        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("reset_runtime_for_tests requires TEST_MODE=true")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> RateDecision:
    """Take ``cost`` tokens from the bucket for ``key``.

    The bucket lives in Redis when it is configured, otherwise in this
    process. A non-positive ``limit`` disables the check.
    """
    if limit <= 0:
        return RateDecision(True, 0, 0)
    if window_seconds <= 0:
        logger.warning("rate_limit_window_invalid", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache is not None:
        return await runtime.cache.take(key, limit, window_seconds, cost=cost)
    return runtime.local_buckets.take(key, limit, window_seconds, cost)
