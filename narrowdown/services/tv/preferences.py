import functools
from collections.abc import Collection
from dataclasses import dataclass
from typing import Any

from loguru import logger

from narrowdown.core.constants import DEFAULT_INTEREST
from narrowdown.models.tv import (
    SUPPRESSED_STATUSES,
    ContentItem,
    PreferenceEntry,
    PreferenceStatus,
    clamp_user_rating,
    now_ms,
)
from narrowdown.shared.parsing import clamp, parse_int

WATCHED_SORT_MODES = ("recent", "ratingDesc", "ratingAsc")


@dataclass
class StatusChange:
    entry: PreferenceEntry
    # True on the first transition into `watched`; clients may ask for a rating
    prompt_rating: bool = False


class PreferenceStore:
    """
    In-memory preference map for one user, written through to a document store.

    The in-memory map is the source of truth for the session: persistence errors are
    logged and never raised to callers.
    """

    def __init__(self, document_store: Any):
        self.document_store = document_store
        self._prefs: dict[str, PreferenceEntry] = {}
        self._loaded = False

    async def load(self) -> dict[str, PreferenceEntry]:
        if self._loaded:
            return self._prefs
        try:
            raw = await self.document_store.load_prefs()
        except Exception as e:
            logger.error(f"Failed to load TV show preferences: {e}")
            raw = None
        prefs: dict[str, PreferenceEntry] = {}
        if isinstance(raw, dict):
            for key, value in raw.items():
                entry = PreferenceEntry.from_document(value)
                if entry is not None:
                    prefs[str(key)] = entry
        self._prefs = prefs
        self._loaded = True
        return self._prefs

    def get(self) -> dict[str, PreferenceEntry]:
        return dict(self._prefs)

    def entry(self, item_id: Any) -> PreferenceEntry | None:
        return self._prefs.get(str(item_id))

    def is_suppressed(self, item_id: Any) -> bool:
        entry = self._prefs.get(str(item_id))
        return entry is not None and entry.status in SUPPRESSED_STATUSES

    def suppressed_ids(self) -> set[str]:
        return {key for key, entry in self._prefs.items() if entry.status in SUPPRESSED_STATUSES}

    async def set(self, item: ContentItem, status: PreferenceStatus, interest: int | None = None) -> StatusChange:
        key = item.key
        previous = self._prefs.get(key)
        entry = previous.model_copy(deep=True) if previous else PreferenceEntry(status=status)
        entry.status = status
        entry.updated_at = now_ms()

        if status == PreferenceStatus.INTERESTED:
            level = parse_int(interest) if interest is not None else entry.interest
            entry.interest = int(clamp(level, 1, 5)) if level is not None else DEFAULT_INTEREST
            entry.movie = item.snapshot()
            entry.user_rating = None
        elif status == PreferenceStatus.WATCHED:
            entry.movie = item.snapshot()
            entry.interest = None
        else:
            entry.movie = None
            entry.interest = None
            entry.user_rating = None

        self._prefs[key] = entry
        await self._persist()
        first_watch = status == PreferenceStatus.WATCHED and (
            previous is None or previous.status != PreferenceStatus.WATCHED
        )
        return StatusChange(entry=entry, prompt_rating=first_watch)

    async def clear(self, item_id: Any) -> PreferenceEntry | None:
        removed = self._prefs.pop(str(item_id), None)
        if removed is not None:
            await self._persist()
        return removed

    async def set_user_rating(self, item_id: Any, rating: Any) -> PreferenceEntry | None:
        """Only watched entries carry a rating. `None` removes it."""
        entry = self._prefs.get(str(item_id))
        if entry is None or entry.status != PreferenceStatus.WATCHED:
            return None
        entry.user_rating = None if rating is None else clamp_user_rating(rating)
        entry.updated_at = now_ms()
        await self._persist()
        return entry

    async def set_interest(self, item_id: Any, interest: Any) -> PreferenceEntry | None:
        entry = self._prefs.get(str(item_id))
        level = parse_int(interest)
        if entry is None or entry.status != PreferenceStatus.INTERESTED or level is None:
            return None
        entry.interest = int(clamp(level, 1, 5))
        entry.updated_at = now_ms()
        await self._persist()
        return entry

    def interested(
        self, genre_names: Collection[str] | None = None, genre_map: dict[int, str] | None = None
    ) -> list[PreferenceEntry]:
        """Interested shows by interest level, then most recently updated."""
        entries = [e for e in self._prefs.values() if e.status == PreferenceStatus.INTERESTED and e.movie]
        entries.sort(key=lambda e: (-(e.interest or 0), -e.updated_at))
        if not genre_names:
            return entries
        names = genre_map or {}
        return [e for e in entries if any(names.get(gid) in genre_names for gid in e.movie.genre_ids)]

    def watched(self, sort_mode: str = "recent") -> list[PreferenceEntry]:
        entries = [e for e in self._prefs.values() if e.status == PreferenceStatus.WATCHED and e.movie]
        if sort_mode == "ratingDesc":
            return sorted(entries, key=functools.cmp_to_key(functools.partial(_compare_by_rating, descending=True)))
        if sort_mode == "ratingAsc":
            return sorted(entries, key=functools.cmp_to_key(functools.partial(_compare_by_rating, descending=False)))
        return sorted(entries, key=lambda e: -e.updated_at)

    def to_document(self) -> dict[str, dict]:
        return {key: entry.to_document() for key, entry in self._prefs.items()}

    async def _persist(self) -> None:
        try:
            await self.document_store.save_prefs(self.to_document())
        except Exception as e:
            logger.error(f"Failed to save TV show preferences: {e}")


def effective_rating(entry: PreferenceEntry) -> float | None:
    if entry.user_rating is not None:
        return entry.user_rating
    return entry.movie.vote_average if entry.movie else None


def _compare_by_rating(a: PreferenceEntry, b: PreferenceEntry, descending: bool) -> int:
    def by_updated() -> int:
        return b.updated_at - a.updated_at

    def compare_values(x, y) -> int | None:
        # missing values always sort last, regardless of direction
        if x is None and y is None:
            return None
        if x is None:
            return 1
        if y is None:
            return -1
        if x == y:
            return None
        diff = (y - x) if descending else (x - y)
        return -1 if diff < 0 else 1

    result = compare_values(effective_rating(a), effective_rating(b))
    if result is not None:
        return result
    if effective_rating(a) is None:
        return by_updated()
    result = compare_values(a.movie.vote_count, b.movie.vote_count)
    if result is not None:
        return result
    return by_updated()
