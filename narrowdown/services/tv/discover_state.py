import asyncio
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from narrowdown.core.constants import (
    GENRE_SELECTION_ALL,
    MAX_DISCOVER_PAGES,
    TMDB_DISCOVER_HISTORY_LIMIT,
    TMDB_DISCOVER_STATE_VERSION,
)
from narrowdown.models.tv import DiscoverCursor, FeedFilterState, now_ms


def build_discover_key(filters: FeedFilterState, using_proxy: bool) -> str:
    """Query signature: source mode plus the active filter values, `|` separated."""
    parts = [
        "proxy" if using_proxy else "direct",
        filters.min_rating,
        filters.min_votes,
        filters.start_year,
        filters.end_year,
        filters.selected_genres or GENRE_SELECTION_ALL,
    ]
    return "|".join(str(part or "").strip() for part in parts)


class DiscoverHistory:
    """
    Cursor per query signature, most recently changed last.

    Cursors only move forward: `next_page` never decreases and `allowed_pages` never
    shrinks for a signature. The oldest signatures are evicted beyond `limit`.
    """

    def __init__(self, limit: int = TMDB_DISCOVER_HISTORY_LIMIT, on_change: Callable[[], None] | None = None):
        self.limit = limit
        self.on_change = on_change
        self._entries: OrderedDict[str, DiscoverCursor] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def hydrate(self, raw: Any) -> None:
        self._entries.clear()
        container: Any = {}
        if isinstance(raw, dict):
            container = raw.get("entries") if isinstance(raw.get("entries"), dict) else raw
        for key, value in container.items():
            cursor = DiscoverCursor.normalize(value)
            if key and cursor is not None:
                self._entries[str(key)] = cursor
        self._evict()

    def read(self, key: str) -> DiscoverCursor | None:
        cursor = self._entries.get(key)
        return cursor.model_copy() if cursor else None

    def write(
        self,
        key: str,
        next_page: int,
        allowed_pages: int,
        total_pages: int | None,
        exhausted: bool,
    ) -> DiscoverCursor | None:
        if not key:
            return None
        existing = self._entries.get(key)
        stamp = now_ms()
        if existing is not None:
            next_page = max(next_page, existing.next_page)
            allowed_pages = max(allowed_pages, existing.allowed_pages)
        cursor = DiscoverCursor.normalize(
            {
                "nextPage": next_page,
                "allowedPages": allowed_pages or MAX_DISCOVER_PAGES,
                "totalPages": total_pages,
                "exhausted": exhausted,
                "updatedAt": stamp,
                "lastAttempt": stamp,
            }
        )
        if cursor.same_progress(existing):
            existing.updated_at = stamp
            existing.last_attempt = stamp
            return existing.model_copy()

        self._entries.pop(key, None)
        self._entries[key] = cursor
        self._evict()
        logger.debug(
            f"Discover cursor '{key}' -> next page {cursor.next_page}/{cursor.total_pages or '?'} "
            f"(allowed {cursor.allowed_pages}, exhausted={cursor.exhausted})"
        )
        if self.on_change is not None:
            self.on_change()
        return cursor.model_copy()

    def serialize(self) -> dict:
        return {
            "version": TMDB_DISCOVER_STATE_VERSION,
            "entries": {key: cursor.to_document() for key, cursor in self._entries.items()},
        }

    def _evict(self) -> None:
        while len(self._entries) > self.limit:
            self._entries.popitem(last=False)


class DebouncedWriter:
    """
    Coalesces writes: `mark_dirty()` schedules one write after `delay` seconds,
    `flush_now()` cancels the timer and writes immediately. Both run the same writer.
    A failed timed write is retried after another delay.
    """

    def __init__(self, write: Callable[[], Awaitable[None]], delay: float, name: str = "state"):
        self._write = write
        self.delay = delay
        self.name = name
        self._dirty = False
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def scheduled(self) -> bool:
        return self._handle is not None

    def mark_dirty(self) -> None:
        self._dirty = True
        if self._handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._on_timer)

    def _on_timer(self) -> None:
        self._handle = None
        self._task = asyncio.ensure_future(self._flush(retry_on_error=True))

    async def flush_now(self) -> bool:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._task is not None and not self._task.done():
            await self._task
        return await self._flush(retry_on_error=False)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    async def _flush(self, retry_on_error: bool) -> bool:
        if not self._dirty:
            return True
        self._dirty = False
        try:
            await self._write()
            return True
        except Exception as e:
            self._dirty = True
            logger.warning(f"Failed to persist {self.name}: {e}")
            if retry_on_error:
                self.mark_dirty()
            return False
