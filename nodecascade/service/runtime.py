from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx

from nodecascade.config import get_settings, reset_settings_cache
from nodecascade.logging import get_logger
from nodecascade.service.alerts import AlertService
from nodecascade.service.cascade import CascadeService
from nodecascade.service.change_plan import ChangePlanService
from nodecascade.service.completion import CompletionClient
from nodecascade.service.evaluator import Evaluator
from nodecascade.service.sync import PlatformSyncClient, SyncFanout
from nodecascade.service.web_retrieval import FirecrawlClient
from nodecascade.storage.memory import MemoryStore
from nodecascade.storage.postgres import PostgresStore
from nodecascade.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in ``url`` with ``***`` for logging."""
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
    """Holds singleton service instances for the FastAPI app.

    ``transport`` is handed to every outbound HTTP client; tests pass an
    ``httpx.MockTransport`` here.
    """

    def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, fs_root=self.settings.shared_fs_root)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for run reports and run state; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )

        timeout = self.settings.http_timeout_seconds
        self.completion = CompletionClient(
            api_url=self.settings.completion_api_url,
            api_key=self.settings.completion_api_key,
            perplexity_api_url=self.settings.perplexity_api_url,
            perplexity_api_key=self.settings.perplexity_api_key,
            timeout=timeout,
            transport=transport,
        )
        self.web = FirecrawlClient(
            api_url=self.settings.firecrawl_api_url,
            api_key=self.settings.firecrawl_api_key,
            poll_interval=self.settings.crawl_poll_interval_seconds,
            crawl_timeout=self.settings.crawl_timeout_seconds,
            timeout=timeout,
            transport=transport,
        )
        self.platform = PlatformSyncClient(
            platform_url=self.settings.abi_sync_url,
            vc_platform_url=self.settings.abivc_sync_url,
            api_key=self.settings.sync_api_key,
            transport=transport,
        )
        self.alerts = AlertService(self.store)
        self.evaluator = Evaluator(self.store, self.completion, self.alerts)
        self.change_plans = ChangePlanService(self.store, self.alerts)
        self.sync = SyncFanout(self.store, self.platform, self.change_plans)
        self.cascade = CascadeService(
            self.store,
            completion=self.completion,
            web=self.web,
            evaluator=self.evaluator,
            alerts=self.alerts,
            change_plans=self.change_plans,
            sync=self.sync,
            cache=self.cache,
            settings=self.settings,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            completion_configured=bool(self.settings.completion_api_key),
            firecrawl_configured=bool(self.settings.firecrawl_api_key),
            sync_configured=bool(self.settings.abi_sync_url or self.settings.abivc_sync_url),
        )

    async def close(self) -> None:
        await self.completion.close()
        await self.web.close()
        await self.platform.close()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, transport: Optional[httpx.AsyncBaseTransport] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()
        elif runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(transport=transport)
        return runtime
