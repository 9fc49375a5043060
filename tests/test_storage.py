"""Tests for the response cache and the user document stores."""

import json

import pytest

from narrowdown.core.cache import MAX_ENTRY_TTL_SECONDS, ResponseCache
from narrowdown.core.errors import StorageError
from narrowdown.services.document_store import LocalDocumentStore, RedisDocumentStore


class TestResponseCache:
    async def test_write_then_read(self, fake_redis) -> None:
        cache = ResponseCache(fake_redis, prefix="test:")
        await cache.write_cached_response("tvDiscoverCache", ["a", 1], {"body": '{"results": []}'})

        entry = await cache.read_cached_response("tvDiscoverCache", ["a", 1], ttl_seconds=60)

        assert entry["body"] == '{"results": []}'
        assert entry["status"] == 200
        key = next(iter(fake_redis.values))
        assert key.startswith("test:tvDiscoverCache:")
        assert fake_redis.ttls[key] == MAX_ENTRY_TTL_SECONDS

    async def test_different_parts_do_not_collide(self, fake_redis) -> None:
        cache = ResponseCache(fake_redis, prefix="test:")
        await cache.write_cached_response("c", ["a"], {"body": "x"})
        assert await cache.read_cached_response("c", ["b"], ttl_seconds=60) is None

    async def test_stale_entries_are_ignored(self, fake_redis) -> None:
        cache = ResponseCache(fake_redis, prefix="test:")
        key = cache._format_key("c", ["a"])
        fake_redis.values[key] = json.dumps({"body": "x", "storedAt": 1.0})

        assert await cache.read_cached_response("c", ["a"], ttl_seconds=60) is None

    async def test_malformed_entries_are_ignored(self, fake_redis) -> None:
        cache = ResponseCache(fake_redis, prefix="test:")
        fake_redis.values[cache._format_key("c", ["a"])] = "{not json"
        assert await cache.read_cached_response("c", ["a"], ttl_seconds=60) is None

    async def test_safe_helpers_swallow_backend_errors(self, fake_redis) -> None:
        cache = ResponseCache(fake_redis, prefix="test:")
        fake_redis.fail = True

        await cache.safe_write("c", ["a"], {"body": "x"})
        assert await cache.safe_read("c", ["a"], ttl_seconds=60) is None
        with pytest.raises(ConnectionError):
            await cache.read_cached_response("c", ["a"], ttl_seconds=60)


class TestRedisDocumentStore:
    async def test_fields_are_written_independently(self, fake_redis) -> None:
        store = RedisDocumentStore("user-123456789", backend=fake_redis, prefix="doc:")

        await store.save_prefs({"1": {"status": "watched"}})
        await store.save_filters({"minRating": "7"})

        assert await store.load_prefs() == {"1": {"status": "watched"}}
        assert await store.load_filters() == {"minRating": "7"}
        assert await store.load_discover_state() is None
        assert set(fake_redis.hashes["doc:user-123456789"]) == {"prefs", "tvFeedFilters"}

    async def test_discover_state_field_name(self, fake_redis) -> None:
        store = RedisDocumentStore("u1", backend=fake_redis, prefix="doc:")
        await store.save_discover_state({"version": 1, "entries": {}})
        assert "tmdbTvDiscoverState" in fake_redis.hashes["doc:u1"]

    async def test_backend_failures_raise_storage_errors(self, fake_redis) -> None:
        store = RedisDocumentStore("u1", backend=fake_redis, prefix="doc:")
        fake_redis.fail = True

        with pytest.raises(StorageError):
            await store.load_prefs()
        with pytest.raises(StorageError):
            await store.save_prefs({})

    async def test_malformed_field_reads_as_missing(self, fake_redis) -> None:
        store = RedisDocumentStore("u1", backend=fake_redis, prefix="doc:")
        fake_redis.hashes["doc:u1"] = {"prefs": "{broken"}
        assert await store.load_prefs() is None


class TestLocalDocumentStore:
    async def test_state_survives_a_new_store(self, tmp_path) -> None:
        path = tmp_path / "state.json"
        store = LocalDocumentStore(path)
        await store.save_prefs({"7": {"status": "interested", "interest": 3}})
        await store.save_filters({"selectedGenres": "18"})

        reopened = LocalDocumentStore(path)

        assert await reopened.load_prefs() == {"7": {"status": "interested", "interest": 3}}
        assert await reopened.load_filters() == {"selectedGenres": "18"}
        assert set(json.loads(path.read_text())) == {"tvPreferences", "tvFeedFilters"}

    async def test_empty_discover_history_is_removed(self) -> None:
        store = LocalDocumentStore()
        await store.save_discover_state({"version": 1, "entries": {"k": {"nextPage": 2}}})
        assert (await store.load_discover_state())["entries"]["k"]["nextPage"] == 2

        await store.save_discover_state({"version": 1, "entries": {}})
        assert await store.load_discover_state() is None

    async def test_loaded_values_are_copies(self) -> None:
        store = LocalDocumentStore()
        await store.save_filters({"minVotes": "10"})

        loaded = await store.load_filters()
        loaded["minVotes"] = "99"

        assert (await store.load_filters())["minVotes"] == "10"

    async def test_unreadable_file_starts_empty(self, tmp_path) -> None:
        path = tmp_path / "state.json"
        path.write_text("not json")
        assert await LocalDocumentStore(path).load_prefs() is None
