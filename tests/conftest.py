"""Shared fixtures: in-memory stand-ins for the document store, Redis, TMDB and the catalog."""

from typing import Any

import pytest

from narrowdown.core.errors import UpstreamError
from narrowdown.services.tv import sources as sources_module
from narrowdown.services.tv.sources import DiscoverySources

# 2024-06-01T00:00:00Z
FIXED_NOW = 1717200000.0


def make_show(
    show_id: int,
    average: float | None = 7.5,
    votes: int | None = 100,
    first_air_date: str = "2020-01-01",
    genre_ids: list[int] | None = None,
    name: str | None = None,
) -> dict[str, Any]:
    return {
        "id": show_id,
        "name": name or f"Show {show_id}",
        "first_air_date": first_air_date,
        "poster_path": f"/poster{show_id}.jpg",
        "overview": "",
        "vote_average": average,
        "vote_count": votes,
        "genre_ids": genre_ids if genre_ids is not None else [18],
    }


class FakeDocumentStore:
    def __init__(self, prefs=None, discover_state=None, filters=None, fail_writes: bool = False):
        self.prefs = prefs
        self.discover_state = discover_state
        self.filters = filters
        self.fail_writes = fail_writes
        self.discover_writes = 0
        self.prefs_writes = 0

    def _check(self):
        if self.fail_writes:
            raise OSError("disk full")

    async def load_prefs(self):
        return self.prefs

    async def save_prefs(self, prefs):
        self._check()
        self.prefs_writes += 1
        self.prefs = prefs

    async def load_discover_state(self):
        return self.discover_state

    async def save_discover_state(self, state):
        self._check()
        self.discover_writes += 1
        self.discover_state = state

    async def load_filters(self):
        return self.filters

    async def save_filters(self, filters):
        self._check()
        self.filters = filters


class FakeRedis:
    """The subset of RedisService the cache and document store use."""

    def __init__(self):
        self.values: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.ttls: dict[str, int | None] = {}
        self.fail = False

    async def get(self, key):
        if self.fail:
            raise ConnectionError("redis down")
        return self.values.get(key)

    async def set(self, key, value, ttl=None):
        if self.fail:
            raise ConnectionError("redis down")
        self.values[key] = value
        self.ttls[key] = ttl
        return True

    async def hgetall(self, key):
        if self.fail:
            return None
        return dict(self.hashes.get(key, {}))

    async def hset(self, key, mapping):
        if self.fail:
            return False
        self.hashes.setdefault(key, {}).update(mapping)
        return True


class FakeDirectTmdb:
    """Direct TMDB service double. `pages` maps page number to a discover payload or an exception."""

    def __init__(self, pages: dict[int, Any] | None = None, total_pages: int | None = None, credits=None):
        self.pages = pages or {}
        self.total_pages = total_pages
        self.credits = credits or {}
        self.discover_calls: list[tuple[int, str | None]] = []
        self.credit_calls: list[int] = []

    async def get_discover_tv(self, page: int = 1, with_genres: str | None = None, **kwargs):
        self.discover_calls.append((page, with_genres))
        payload = self.pages.get(page)
        if isinstance(payload, Exception):
            raise payload
        if payload is None:
            payload = {"results": [], "total_pages": self.total_pages or page}
        return payload

    async def get_tv_genres(self):
        return {"genres": [{"id": 18, "name": "Drama"}, {"id": 35, "name": "Comedy"}, {"id": 80, "name": "Crime"}]}

    async def get_tv_credits(self, tv_id: int):
        self.credit_calls.append(tv_id)
        return self.credits.get(tv_id, {"cast": [], "crew": []})


class FakeCatalog:
    def __init__(self, response: dict | None = None, error: Exception | None = None):
        self.response = response
        self.error = error
        self.queries: list[dict] = []

    async def get_catalog(self, query):
        self.queries.append(dict(query))
        if self.error is not None:
            raise self.error
        return self.response


def discover_page(shows: list[dict], total_pages: int) -> dict:
    return {"results": shows, "total_pages": total_pages}


@pytest.fixture(autouse=True)
def clear_genre_cache():
    sources_module._genre_cache.clear()
    yield
    sources_module._genre_cache.clear()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def document_store():
    return FakeDocumentStore()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def unavailable_catalog():
    return FakeCatalog(error=UpstreamError("not found", status=404))


@pytest.fixture
def direct_sources(unavailable_catalog):
    """Direct-only sources with an unavailable catalog; tests fill in `sources.direct.pages`."""
    return DiscoverySources(proxy=None, direct=FakeDirectTmdb(), catalog=unavailable_catalog)
