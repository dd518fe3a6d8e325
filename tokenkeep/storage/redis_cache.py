from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin async Redis wrapper exposing get / set-with-TTL / delete."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def ttl_until(expires_at: datetime) -> int:
        """Seconds from now until ``expires_at``, clamped to at least 1.

        Redis rejects zero or negative expiries; naive datetimes are read as UTC.
        """

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> int:
        return int(await self.client.delete(key))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Redis cache backed by a synchronous client behind the async interface.

    Used in test mode, where each request may run on a fresh event loop and a
    pooled asyncio client would end up bound to a closed loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self._sync_client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._sync_client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> int:
        return int(self._sync_client.delete(key))

    async def close(self) -> None:
        self._sync_client.close()
