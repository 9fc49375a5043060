from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import redis.asyncio as redis
from loguru import logger

from narrowdown.core.config import settings

T = TypeVar("T")


class RedisService:
    """Shared Redis connection behind the response cache and the per-user feed documents.

    Every operation is fail-soft: connection and protocol errors are logged and reported
    through the return value, so callers decide whether a miss matters.
    """

    def __init__(self) -> None:
        self._client: redis.Redis | None = None
        if not settings.REDIS_URL:
            logger.warning("REDIS_URL is not set. Cache and user documents will be unavailable.")

    async def get_client(self) -> redis.Redis:
        if self._client is None:
            logger.info(f"Connecting to Redis (max {settings.REDIS_MAX_CONNECTIONS} connections)")
            self._client = redis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                encoding="utf-8",
                socket_connect_timeout=5,
                socket_timeout=5,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                health_check_interval=30,
            )
        return self._client

    async def _run(self, action: str, key: str, operation: Callable[[redis.Redis], Awaitable[T]], fallback: T) -> T:
        try:
            client = await self.get_client()
            return await operation(client)
        except (redis.RedisError, OSError) as exc:
            logger.error(f"Redis {action} failed for '{key}': {exc}")
            return fallback

    async def get(self, key: str) -> str | None:
        """Cached string value, or None when missing or Redis is unreachable."""
        return await self._run("GET", key, lambda client: client.get(key), None)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        # ttl=None keeps the key until it is overwritten
        async def write(client: redis.Redis) -> bool:
            return bool(await client.set(key, str(value), ex=ttl))

        return await self._run("SET", key, write, False)

    async def hgetall(self, key: str) -> dict[str, str] | None:
        """Fields of a user document. Empty dict for an unknown user, None on error."""
        return await self._run("HGETALL", key, lambda client: client.hgetall(key), None)

    async def hset(self, key: str, mapping: dict[str, str]) -> bool:
        async def write(client: redis.Redis) -> bool:
            await client.hset(key, mapping=mapping)
            return True

        return await self._run("HSET", key, write, False)

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
            logger.info("Redis connection closed")
        except Exception as exc:
            logger.warning(f"Failed to close Redis connection: {exc}")
        finally:
            self._client = None


redis_service = RedisService()
