import hashlib
import json
import time
from typing import Any

from loguru import logger

from narrowdown.core.config import settings

# Upper bound for how long Redis keeps an entry. Readers apply their own, shorter TTL.
MAX_ENTRY_TTL_SECONDS = 60 * 60 * 24


class ResponseCache:
    """
    Cache of serialized HTTP responses keyed by (collection, key parts).

    Entries are stored as `{status, contentType, body, metadata, storedAt}`. Freshness is
    decided at read time with the caller's TTL, so one entry can serve readers with
    different freshness requirements.
    """

    def __init__(self, backend: Any, prefix: str | None = None):
        # backend: anything exposing async get(key) / set(key, value, ttl) like RedisService
        self.backend = backend
        self.prefix = prefix if prefix is not None else settings.REDIS_CACHE_KEY

    def _format_key(self, collection: str, key_parts: list[Any]) -> str:
        digest = hashlib.sha256(json.dumps(key_parts, sort_keys=True, default=str).encode("utf-8")).hexdigest()
        return f"{self.prefix}{collection}:{digest}"

    async def read_cached_response(self, collection: str, key_parts: list[Any], ttl_seconds: float) -> dict | None:
        key = self._format_key(collection, key_parts)
        raw = await self.backend.get(key)
        if not raw:
            return None
        try:
            entry = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.warning(f"Ignoring malformed cache entry in {collection}")
            return None
        if not isinstance(entry, dict) or not isinstance(entry.get("body"), str):
            return None
        stored_at = entry.get("storedAt")
        if not isinstance(stored_at, (int, float)) or time.time() - stored_at > ttl_seconds:
            return None
        logger.debug(f"Cache hit for {collection}")
        return entry

    async def write_cached_response(self, collection: str, key_parts: list[Any], payload: dict) -> None:
        key = self._format_key(collection, key_parts)
        entry = {
            "status": payload.get("status", 200),
            "contentType": payload.get("contentType", "application/json"),
            "body": payload.get("body", ""),
            "metadata": payload.get("metadata"),
            "storedAt": time.time(),
        }
        await self.backend.set(key, json.dumps(entry), ttl=MAX_ENTRY_TTL_SECONDS)

    async def safe_read(self, collection: str, key_parts: list[Any], ttl_seconds: float) -> dict | None:
        """Cache misses and cache errors both read as 'no cache'."""
        try:
            return await self.read_cached_response(collection, key_parts, ttl_seconds)
        except Exception as e:
            logger.warning(f"Cache read failed for {collection}: {e}")
            return None

    async def safe_write(self, collection: str, key_parts: list[Any], payload: dict) -> None:
        try:
            await self.write_cached_response(collection, key_parts, payload)
        except Exception as e:
            logger.warning(f"Cache write failed for {collection}: {e}")


def get_response_cache() -> ResponseCache:
    from narrowdown.services.redis_service import redis_service

    return ResponseCache(redis_service)
