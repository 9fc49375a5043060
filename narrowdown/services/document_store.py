import asyncio
import json
from pathlib import Path
from typing import Any

from loguru import logger

from narrowdown.core.config import settings
from narrowdown.core.constants import (
    LOCAL_DISCOVER_STATE_KEY,
    LOCAL_FEED_FILTERS_KEY,
    LOCAL_PREFS_KEY,
    TMDB_DISCOVER_STATE_FIELD,
)
from narrowdown.core.errors import StorageError
from narrowdown.core.security import redact_token

PREFS_FIELD = "prefs"
FILTERS_FIELD = "tvFeedFilters"


class RedisDocumentStore:
    """
    Signed-in user state: one Redis hash per user whose fields are the JSON encoded
    `prefs`, `tmdbTvDiscoverState` and `tvFeedFilters` members of the user document.
    Writing one field never touches the others.
    """

    def __init__(self, user_id: str, backend: Any = None, prefix: str | None = None):
        if backend is None:
            from narrowdown.services.redis_service import redis_service

            backend = redis_service
        self.user_id = user_id
        self.backend = backend
        self.key = f"{prefix if prefix is not None else settings.REDIS_USER_DOC_KEY}{user_id}"

    async def _read_field(self, name: str) -> Any:
        fields = await self.backend.hgetall(self.key)
        if fields is None:
            raise StorageError(f"Unable to read user document for {redact_token(self.user_id)}")
        raw = fields.get(name)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring malformed '{name}' in user document {redact_token(self.user_id)}")
            return None

    async def _write_field(self, name: str, value: Any) -> None:
        ok = await self.backend.hset(self.key, {name: json.dumps(value)})
        if not ok:
            raise StorageError(f"Unable to write '{name}' for {redact_token(self.user_id)}")

    async def load_prefs(self) -> Any:
        return await self._read_field(PREFS_FIELD)

    async def save_prefs(self, prefs: dict) -> None:
        await self._write_field(PREFS_FIELD, prefs)

    async def load_discover_state(self) -> Any:
        return await self._read_field(TMDB_DISCOVER_STATE_FIELD)

    async def save_discover_state(self, state: dict) -> None:
        await self._write_field(TMDB_DISCOVER_STATE_FIELD, state)

    async def load_filters(self) -> Any:
        return await self._read_field(FILTERS_FIELD)

    async def save_filters(self, filters: dict) -> None:
        await self._write_field(FILTERS_FIELD, filters)


class LocalDocumentStore:
    """
    Anonymous state under fixed keys, kept in a JSON file when a path is configured,
    otherwise in memory for the lifetime of the process.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else None
        self._data: dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    def _read_file(self) -> dict[str, Any]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unable to read local state file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write_file(self, data: dict[str, Any]) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        tmp.replace(self.path)

    async def _ensure_loaded(self) -> dict[str, Any]:
        if self._data is None:
            self._data = await asyncio.to_thread(self._read_file)
        return self._data

    async def _get(self, key: str) -> Any:
        async with self._lock:
            data = await self._ensure_loaded()
            value = data.get(key)
            return json.loads(json.dumps(value)) if value is not None else None

    async def _set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = await self._ensure_loaded()
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
            try:
                await asyncio.to_thread(self._write_file, dict(data))
            except OSError as e:
                raise StorageError(f"Unable to write local state file {self.path}: {e}") from e

    async def load_prefs(self) -> Any:
        return await self._get(LOCAL_PREFS_KEY)

    async def save_prefs(self, prefs: dict) -> None:
        await self._set(LOCAL_PREFS_KEY, prefs)

    async def load_discover_state(self) -> Any:
        return await self._get(LOCAL_DISCOVER_STATE_KEY)

    async def save_discover_state(self, state: dict) -> None:
        entries = state.get("entries") if isinstance(state, dict) else None
        # an empty history is removed rather than stored
        await self._set(LOCAL_DISCOVER_STATE_KEY, state if entries else None)

    async def load_filters(self) -> Any:
        return await self._get(LOCAL_FEED_FILTERS_KEY)

    async def save_filters(self, filters: dict) -> None:
        await self._set(LOCAL_FEED_FILTERS_KEY, filters)


_local_store: LocalDocumentStore | None = None


def get_document_store(user_id: str | None):
    """Redis-backed document for signed-in users, the shared local store for anonymous use."""
    global _local_store
    if user_id:
        return RedisDocumentStore(user_id)
    if _local_store is None:
        _local_store = LocalDocumentStore(settings.LOCAL_STATE_PATH)
    return _local_store
