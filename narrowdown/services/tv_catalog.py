import asyncio
import json
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from cachetools import TTLCache
from loguru import logger

from narrowdown.core.cache import ResponseCache, get_response_cache
from narrowdown.core.config import settings
from narrowdown.core.constants import (
    TV_DISCOVER_CACHE_COLLECTION,
    TV_DISCOVER_DEFAULT_LIMIT,
    TV_DISCOVER_MAX_LIMIT,
    TV_DISCOVER_MAX_PAGES,
)
from narrowdown.core.errors import UpstreamError
from narrowdown.services.tmdb.proxy import TmdbProxyService
from narrowdown.shared.parsing import clamp, extract_year, parse_float, parse_id_set, parse_int


class CatalogQuery:
    """Parsed `/api/tv` query. Unparseable numbers are ignored; inverted years are swapped."""

    def __init__(self, raw: dict[str, Any]):
        limit = parse_int(raw.get("limit"))
        self.limit = int(clamp(limit, 1, TV_DISCOVER_MAX_LIMIT)) if limit and limit > 0 else TV_DISCOVER_DEFAULT_LIMIT
        self.min_rating = parse_float(raw.get("minRating"))
        self.min_votes = parse_float(raw.get("minVotes"))
        self.start_year = parse_float(raw.get("startYear"))
        self.end_year = parse_float(raw.get("endYear"))
        if self.start_year is not None and self.end_year is not None and self.end_year < self.start_year:
            self.start_year, self.end_year = self.end_year, self.start_year
        self.exclude_ids = parse_id_set(raw.get("excludeIds"))

    @staticmethod
    def _label(value: float | None) -> str:
        if value is None:
            return "any"
        return str(int(value)) if float(value).is_integer() else str(value)

    def cache_key_parts(self) -> list[Any]:
        excludes: Any = sorted(self.exclude_ids)[:200] if self.exclude_ids else "no-excludes"
        return [
            TV_DISCOVER_CACHE_COLLECTION,
            f"limit:{self.limit}",
            f"minRating:{self._label(self.min_rating)}",
            f"minVotes:{self._label(self.min_votes)}",
            f"startYear:{self._label(self.start_year)}",
            f"endYear:{self._label(self.end_year)}",
            excludes,
        ]

    def discover_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "sort_by": "vote_average.desc",
            "include_adult": "false",
            "include_null_first_air_dates": "false",
            "language": "en-US",
        }
        if self.min_rating is not None:
            params["vote_average.gte"] = clamp(self.min_rating, 0, 10)
        if self.min_votes is not None:
            params["vote_count.gte"] = max(0, int(self.min_votes // 1))
        if self.start_year is not None:
            params["first_air_date.gte"] = f"{int(self.start_year)}-01-01"
        if self.end_year is not None:
            params["first_air_date.lte"] = f"{int(self.end_year)}-12-31"
        return params

    def accepts(self, show: dict[str, Any]) -> bool:
        """Server-side bounds. A value that is missing or unparseable does not fail a bound."""
        average = parse_float(show.get("vote_average"))
        if self.min_rating is not None and average is not None and average < self.min_rating:
            return False
        votes = parse_float(show.get("vote_count"))
        if self.min_votes is not None and votes is not None and votes < self.min_votes:
            return False
        if self.start_year is not None or self.end_year is not None:
            year = (
                extract_year(show.get("first_air_date"))
                or extract_year(show.get("release_date"))
                or extract_year(show.get("last_air_date"))
            )
            if year is not None and self.start_year is not None and year < self.start_year:
                return False
            if year is not None and self.end_year is not None and year > self.end_year:
                return False
        return True

    def metadata(self) -> dict[str, Any]:
        return {
            "limit": self.limit,
            "minRating": self.min_rating,
            "minVotes": self.min_votes,
            "startYear": self.start_year,
            "endYear": self.end_year,
        }


class TvCatalogService:
    """
    Server-side TV catalog behind `/api/tv`: a short-lived cache in front of up to five
    pages of TMDB discovery sorted by rating.
    """

    def __init__(
        self,
        tmdb: TmdbProxyService | None = None,
        cache: ResponseCache | None = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.tmdb = tmdb or TmdbProxyService()
        self._cache = cache
        self._genres: TTLCache = TTLCache(maxsize=1, ttl=settings.TV_GENRE_CACHE_TTL_SECONDS, timer=timer)
        # served when a refresh fails after the cached list expired
        self._last_genres: list[dict] = []

    @property
    def cache(self) -> ResponseCache:
        if self._cache is None:
            self._cache = get_response_cache()
        return self._cache

    async def close(self) -> None:
        await self.tmdb.close()

    async def fetch_genres(self) -> list[dict]:
        cached = self._genres.get("tv")
        if cached is not None:
            return cached
        try:
            data = await self.tmdb.request_data("tv_genres", {"language": "en-US"})
        except UpstreamError as e:
            logger.warning(f"Unable to refresh TV genre list: {e}")
            return self._last_genres
        genres = data.get("genres") if isinstance(data.get("genres"), list) else []
        self._last_genres = [g for g in genres if isinstance(g, dict)]
        if self._last_genres:
            self._genres["tv"] = self._last_genres
        return self._last_genres

    async def discover(self, query: CatalogQuery) -> tuple[list[dict], int, int]:
        base = query.discover_params()
        collected: list[dict] = []
        seen: set[str] = set()
        page = 1
        total_pages = 1
        total_results = 0

        while len(collected) < query.limit and page <= TV_DISCOVER_MAX_PAGES:
            data = await self.tmdb.request_data("discover_tv", {**base, "page": page})
            results = data.get("results") if isinstance(data.get("results"), list) else []
            page_total = parse_int(data.get("total_pages"))
            if page_total and page_total > 0:
                total_pages = page_total
            page_results = parse_int(data.get("total_results"))
            if page_results is not None and page_results >= 0:
                total_results = page_results

            for show in results:
                if not isinstance(show, dict) or show.get("id") is None:
                    continue
                show_id = str(show["id"])
                if show_id in query.exclude_ids or show_id in seen or not query.accepts(show):
                    continue
                seen.add(show_id)
                collected.append(show)

            if not results or page >= total_pages:
                break
            page += 1

        return collected[: query.limit], total_pages, total_results

    async def get_catalog(self, raw_query: dict[str, Any]) -> dict[str, Any]:
        """
        The `/api/tv` response for a query. Cached responses are returned as stored.
        Upstream failures raise UpstreamError carrying the HTTP status to answer with.
        """
        query = CatalogQuery(raw_query)
        key_parts = query.cache_key_parts()
        cached = await self.cache.safe_read(
            TV_DISCOVER_CACHE_COLLECTION, key_parts, settings.TV_DISCOVER_CACHE_TTL_SECONDS
        )
        if cached is not None:
            try:
                return json.loads(cached["body"])
            except ValueError:
                logger.warning("Ignoring undecodable cached TV catalog entry")

        (results, total_pages, total_results), genres = await asyncio.gather(
            self.discover(query), self.fetch_genres()
        )
        genre_map = {}
        for entry in genres:
            name = entry.get("name").strip() if isinstance(entry.get("name"), str) else ""
            if entry.get("id") is not None and name:
                genre_map[str(entry["id"])] = name

        response = {
            "results": results,
            "metadata": {
                **query.metadata(),
                "totalResults": total_results,
                "totalPages": total_pages,
                "source": "tmdb_discover",
                "excludeCount": len(query.exclude_ids),
                "fetchedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            },
            "genres": genres,
            "genreMap": genre_map,
            "credits": None,
        }
        await self.cache.safe_write(
            TV_DISCOVER_CACHE_COLLECTION,
            key_parts,
            {
                "status": 200,
                "contentType": "application/json",
                "body": json.dumps(response),
                "metadata": response["metadata"],
            },
        )
        logger.info(f"TV catalog served {len(results)} show(s) ({total_results} upstream matches)")
        return response


_tv_catalog_service: TvCatalogService | None = None


def get_tv_catalog_service() -> TvCatalogService:
    global _tv_catalog_service
    if _tv_catalog_service is None:
        _tv_catalog_service = TvCatalogService()
    return _tv_catalog_service
