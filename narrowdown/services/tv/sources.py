from dataclasses import dataclass, field
from typing import Any

import httpx
from cachetools import TTLCache
from loguru import logger

from narrowdown.core.config import settings
from narrowdown.core.errors import ConfigurationError, ProxyError, UpstreamError
from narrowdown.services.tmdb.genre import normalize_genre_map
from narrowdown.services.tmdb.proxy import ProxyBreaker, TmdbProxyClient
from narrowdown.services.tv.filters import GenreQuery
from narrowdown.shared.parsing import parse_int

DISCOVER_PARAMS = {
    "sort_by": "popularity.desc",
    "include_adult": "false",
    "include_video": "false",
    "language": "en-US",
}

# genre lists per source mode, shared by every session
_genre_cache: TTLCache = TTLCache(maxsize=4, ttl=settings.TV_GENRE_CACHE_TTL_SECONDS)


@dataclass
class DiscoverPage:
    results: list[dict] = field(default_factory=list)
    total_pages: int | None = None


def decode_discover_page(data: Any) -> DiscoverPage:
    """Malformed payloads decode to an empty page."""
    if not isinstance(data, dict):
        return DiscoverPage()
    raw_results = data.get("results")
    results = [r for r in raw_results if isinstance(r, dict)] if isinstance(raw_results, list) else []
    total = parse_int(data.get("total_pages"))
    return DiscoverPage(results=results, total_pages=total if total and total > 0 else None)


class DiscoverySources:
    """
    The upstreams one session pages through: the TMDB proxy (guarded by the session's
    breaker), the direct API with the server key, and the server-side catalog cache.
    """

    def __init__(
        self,
        proxy: TmdbProxyClient | None = None,
        direct: Any = None,
        catalog: Any = None,
        breaker: ProxyBreaker | None = None,
    ):
        self.proxy = proxy
        self.direct = direct
        self.catalog = catalog
        self.breaker = breaker or ProxyBreaker()

    @property
    def proxy_available(self) -> bool:
        return self.proxy is not None and self.proxy.is_available(self.breaker)

    @property
    def direct_available(self) -> bool:
        return self.direct is not None

    def proxy_supports(self, endpoint: str) -> bool:
        return self.proxy_available and self.breaker.is_supported(endpoint)

    async def call_proxy(self, endpoint: str, params: dict[str, Any]) -> dict[str, Any]:
        if self.proxy is None:
            raise ConfigurationError("TMDB proxy endpoint not configured")
        return await self.proxy.call(endpoint, params, self.breaker)

    async def discover_page(self, page: int, genre_query: GenreQuery, using_proxy: bool) -> DiscoverPage:
        if genre_query.block_all:
            return DiscoverPage()
        if using_proxy:
            params = {**DISCOVER_PARAMS, "page": str(page)}
            if genre_query.with_genres:
                params["with_genres"] = genre_query.with_genres
            return decode_discover_page(await self.call_proxy("discover_tv", params))

        if self.direct is None:
            raise ConfigurationError("TMDB API key is not configured on the server.")
        try:
            data = await self.direct.get_discover_tv(page=page, with_genres=genre_query.with_genres)
        except httpx.HTTPStatusError as e:
            raise UpstreamError("Failed to fetch TV shows", status=e.response.status_code) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Failed to fetch TV shows ({e})") from e
        return decode_discover_page(data)

    async def genre_map(self, using_proxy: bool) -> dict[int, str]:
        cache_key = "proxy" if using_proxy else "direct"
        cached = _genre_cache.get(cache_key)
        if cached:
            return dict(cached)
        try:
            if using_proxy:
                data = await self.call_proxy("tv_genres", {"language": "en-US"})
            elif self.direct is not None:
                data = await self.direct.get_tv_genres()
            else:
                return {}
        except (ConfigurationError, UpstreamError, httpx.HTTPError, ValueError) as e:
            logger.warning(f"Unable to load the TV genre list ({e})")
            return {}
        genres = normalize_genre_map(data) or {}
        if genres:
            _genre_cache[cache_key] = genres
        return dict(genres)

    async def credits_direct(self, tv_id: int) -> dict | None:
        if self.direct is None:
            return None
        try:
            data = await self.direct.get_tv_credits(tv_id)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to fetch credits directly for TV show {tv_id}: {e}")
            return None
        return data if isinstance(data, dict) else None

    async def credits_from_proxy(self, tv_id: int) -> dict | None:
        """`tv_credits` through the proxy, trying each id parameter name the proxy may expect."""
        last_param_error: ProxyError | None = None
        for params in ({"tv_id": tv_id}, {"id": tv_id}, {"tvId": tv_id}):
            try:
                data = await self.call_proxy("tv_credits", params)
                return data or None
            except ProxyError as e:
                if not e.is_parameter_error:
                    raise
                if e.code == "unsupported_endpoint":
                    self.breaker.mark_unsupported("tv_credits")
                    raise
                last_param_error = e
        if last_param_error is not None:
            self.breaker.mark_unsupported("tv_credits")
            raise last_param_error
        return None

    async def credits_via_details_from_proxy(self, tv_id: int) -> dict | None:
        """`tv_details` with credits appended, for proxies without a credits endpoint."""
        last_param_error: ProxyError | None = None
        for id_param in ("tv_id", "id", "tvId"):
            try:
                data = await self.call_proxy("tv_details", {"append_to_response": "credits", id_param: tv_id})
                credits = data.get("credits") if isinstance(data, dict) else None
                return credits if isinstance(credits, dict) else None
            except ProxyError as e:
                if e.status == 400 and not e.is_parameter_error:
                    self.breaker.mark_unsupported("tv_details")
                    e.code = e.code or "unsupported_endpoint"
                if not e.is_parameter_error:
                    raise
                last_param_error = e
        if last_param_error is not None:
            self.breaker.mark_unsupported("tv_details")
            raise last_param_error
        return None

    async def fetch_catalog(self, query: dict[str, Any]) -> dict[str, Any]:
        if self.catalog is None:
            raise UpstreamError("TV catalog is not available", status=501)
        return await self.catalog.get_catalog(query)
