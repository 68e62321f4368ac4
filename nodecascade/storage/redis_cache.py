from __future__ import annotations

import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis


def _report_key(tenant_id: str) -> str:
    return f"cascade:report:{tenant_id}:latest"


def _state_key(tenant_id: str, submission_id: str) -> str:
    return f"cascade:state:{tenant_id}:{submission_id}"


def _decode(cached: Optional[str]) -> Optional[dict]:
    if not cached:
        return None
    try:
        return json.loads(cached)
    except (json.JSONDecodeError, TypeError):
        # Corrupted cache entry - treat as cache miss
        return None


class RedisCache:
    """Thin Redis wrapper for cascade run reports and in-flight run state."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_run_report(self, tenant_id: str) -> Optional[dict]:
        return _decode(await self.client.get(_report_key(tenant_id)))

    async def set_run_report(
        self, tenant_id: str, report: Dict[str, Any], ttl_seconds: int = 86400
    ) -> None:
        await self.client.set(
            _report_key(tenant_id), json.dumps(report, default=str), ex=ttl_seconds
        )

    async def get_run_state(self, tenant_id: str, submission_id: str) -> Optional[dict]:
        return _decode(await self.client.get(_state_key(tenant_id, submission_id)))

    async def set_run_state(
        self,
        tenant_id: str,
        submission_id: str,
        state: Dict[str, Any],
        ttl_seconds: int = 1800,
    ) -> None:
        await self.client.set(
            _state_key(tenant_id, submission_id), json.dumps(state, default=str), ex=ttl_seconds
        )

    async def delete_run_state(self, tenant_id: str, submission_id: str) -> None:
        await self.client.delete(_state_key(tenant_id, submission_id))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Exposes the same awaitable surface as ``RedisCache`` while avoiding
    event loop binding issues under pytest.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def get_run_report(self, tenant_id: str) -> Optional[dict]:
        return _decode(self.client.get(_report_key(tenant_id)))

    async def set_run_report(
        self, tenant_id: str, report: Dict[str, Any], ttl_seconds: int = 86400
    ) -> None:
        self.client.set(_report_key(tenant_id), json.dumps(report, default=str), ex=ttl_seconds)

    async def get_run_state(self, tenant_id: str, submission_id: str) -> Optional[dict]:
        return _decode(self.client.get(_state_key(tenant_id, submission_id)))

    async def set_run_state(
        self,
        tenant_id: str,
        submission_id: str,
        state: Dict[str, Any],
        ttl_seconds: int = 1800,
    ) -> None:
        self.client.set(
            _state_key(tenant_id, submission_id), json.dumps(state, default=str), ex=ttl_seconds
        )

    async def delete_run_state(self, tenant_id: str, submission_id: str) -> None:
        self.client.delete(_state_key(tenant_id, submission_id))

    async def close(self) -> None:
        self.client.close()
