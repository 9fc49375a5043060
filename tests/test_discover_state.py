"""Tests for discover cursors, the cursor history and the debounced writer."""

import asyncio

from narrowdown.models.tv import DiscoverCursor, FeedFilterState
from narrowdown.services.tv.discover_state import DebouncedWriter, DiscoverHistory, build_discover_key


class TestBuildDiscoverKey:
    def test_key_joins_mode_and_filters(self) -> None:
        filters = FeedFilterState(minRating="7", minVotes="100", startYear="2000", endYear="2010")
        assert build_discover_key(filters, using_proxy=False) == "direct|7|100|2000|2010|all"

    def test_proxy_mode_and_empty_filters(self) -> None:
        assert build_discover_key(FeedFilterState(), using_proxy=True) == "proxy|||||all"

    def test_genre_selection_is_part_of_the_key(self) -> None:
        filters = FeedFilterState(selectedGenres="35,18")
        assert build_discover_key(filters, using_proxy=False).endswith("|18,35")


class TestDiscoverCursor:
    def test_normalize_fills_defaults(self) -> None:
        cursor = DiscoverCursor.normalize({"nextPage": "abc", "allowedPages": -1, "totalPages": 0})
        assert cursor.next_page == 1
        assert cursor.allowed_pages == 10
        assert cursor.total_pages is None

    def test_allowed_pages_covers_next_page(self) -> None:
        cursor = DiscoverCursor.normalize({"nextPage": 14, "allowedPages": 12})
        assert cursor.allowed_pages == 14

    def test_allowed_pages_never_exceed_the_ceiling(self) -> None:
        cursor = DiscoverCursor.normalize({"nextPage": 31, "allowedPages": 45})
        assert cursor.next_page == 31
        assert cursor.allowed_pages == 30

    def test_rejects_non_dict(self) -> None:
        assert DiscoverCursor.normalize("page 3") is None


class TestDiscoverHistory:
    def test_write_never_moves_backwards(self) -> None:
        history = DiscoverHistory()
        history.write("k", next_page=5, allowed_pages=13, total_pages=20, exhausted=False)
        cursor = history.write("k", next_page=2, allowed_pages=10, total_pages=20, exhausted=False)

        assert cursor.next_page == 5
        assert cursor.allowed_pages == 13
        assert history.read("k").next_page == 5

    def test_same_progress_does_not_signal_change(self) -> None:
        changes = []
        history = DiscoverHistory(on_change=lambda: changes.append(1))

        history.write("k", next_page=2, allowed_pages=10, total_pages=5, exhausted=False)
        history.write("k", next_page=2, allowed_pages=10, total_pages=5, exhausted=False)
        history.write("k", next_page=3, allowed_pages=10, total_pages=5, exhausted=False)

        assert len(changes) == 2

    def test_oldest_signatures_are_evicted(self) -> None:
        history = DiscoverHistory(limit=2)
        for key in ("a", "b", "c"):
            history.write(key, next_page=2, allowed_pages=10, total_pages=None, exhausted=False)

        assert "a" not in history
        assert "b" in history and "c" in history

    def test_rewriting_refreshes_eviction_order(self) -> None:
        history = DiscoverHistory(limit=2)
        history.write("a", next_page=2, allowed_pages=10, total_pages=None, exhausted=False)
        history.write("b", next_page=2, allowed_pages=10, total_pages=None, exhausted=False)
        history.write("a", next_page=3, allowed_pages=10, total_pages=None, exhausted=False)
        history.write("c", next_page=2, allowed_pages=10, total_pages=None, exhausted=False)

        assert "b" not in history
        assert "a" in history

    def test_read_returns_a_copy(self) -> None:
        history = DiscoverHistory()
        history.write("k", next_page=2, allowed_pages=10, total_pages=None, exhausted=False)
        history.read("k").next_page = 99
        assert history.read("k").next_page == 2

    def test_hydrate_accepts_versioned_and_bare_documents(self) -> None:
        history = DiscoverHistory()
        history.hydrate({"version": 1, "entries": {"k": {"nextPage": 4, "totalPages": 9}, "bad": "x"}})
        assert history.read("k").next_page == 4
        assert "bad" not in history

        history.hydrate({"other": {"nextPage": 2}})
        assert "k" not in history
        assert history.read("other").next_page == 2

    def test_serialize_round_trips_through_hydrate(self) -> None:
        history = DiscoverHistory()
        history.write("k", next_page=3, allowed_pages=10, total_pages=7, exhausted=False)
        document = history.serialize()

        restored = DiscoverHistory()
        restored.hydrate(document)

        assert document["version"] == 1
        assert restored.read("k").same_progress(history.read("k"))


class TestDebouncedWriter:
    async def test_marks_coalesce_into_one_write(self) -> None:
        writes = []

        async def write() -> None:
            writes.append(1)

        writer = DebouncedWriter(write, delay=0.01)
        writer.mark_dirty()
        writer.mark_dirty()
        writer.mark_dirty()
        await asyncio.sleep(0.05)

        assert writes == [1]
        assert not writer.dirty

    async def test_flush_now_writes_immediately(self) -> None:
        writes = []

        async def write() -> None:
            writes.append(1)

        writer = DebouncedWriter(write, delay=60)
        writer.mark_dirty()
        assert writer.scheduled

        assert await writer.flush_now() is True
        assert writes == [1]
        assert not writer.scheduled

    async def test_flush_without_changes_is_a_no_op(self) -> None:
        writes = []

        async def write() -> None:
            writes.append(1)

        writer = DebouncedWriter(write, delay=60)
        assert await writer.flush_now() is True
        assert writes == []

    async def test_failed_flush_keeps_state_dirty(self) -> None:
        async def write() -> None:
            raise OSError("disk full")

        writer = DebouncedWriter(write, delay=60)
        writer.mark_dirty()

        assert await writer.flush_now() is False
        assert writer.dirty
        writer.cancel()
