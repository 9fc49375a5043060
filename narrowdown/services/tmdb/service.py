import functools
from typing import Any

from async_lru import alru_cache
from loguru import logger

from narrowdown.core.config import settings
from narrowdown.core.errors import ConfigurationError
from narrowdown.services.tmdb.client import TMDBClient

DISCOVER_DEFAULTS = {
    "sort_by": "popularity.desc",
    "include_adult": "false",
    "include_video": "false",
    "language": "en-US",
}


class TMDBService:
    """
    Direct access to The Movie Database (TMDB) TV endpoints with the server key.
    """

    def __init__(self, api_key: str, language: str = "en-US", transport: Any = None):
        self.client = TMDBClient(api_key=api_key, language=language, transport=transport)

    async def close(self):
        """Close the underlying HTTP client."""
        await self.client.close()

    @alru_cache(maxsize=1000, ttl=600)
    async def get_discover_tv(self, page: int = 1, with_genres: str | None = None, **kwargs) -> dict[str, Any]:
        """One page of /discover/tv. Extra keyword arguments are passed through as query parameters."""
        params: dict[str, Any] = {**DISCOVER_DEFAULTS, "page": page}
        if with_genres:
            params["with_genres"] = with_genres
        params.update(kwargs)
        return await self.client.get("/discover/tv", params=params)

    @alru_cache(maxsize=8, ttl=settings.TV_GENRE_CACHE_TTL_SECONDS)
    async def get_tv_genres(self) -> dict[str, Any]:
        """TV genre list `{genres: [{id, name}]}`."""
        return await self.client.get("/genre/tv/list")

    @alru_cache(maxsize=5000)
    async def get_tv_credits(self, tv_id: int) -> dict[str, Any]:
        return await self.client.get(f"/tv/{tv_id}/credits")

    async def get_path(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Uncached GET of an arbitrary API path, used by the proxy route."""
        logger.debug(f"Direct TMDB request {path}")
        return await self.client.get(path, params=params)


@functools.lru_cache(maxsize=16)
def get_tmdb_service(language: str = "en-US") -> TMDBService:
    if not settings.TMDB_API_KEY:
        raise ConfigurationError("TMDB API key is not configured on the server.")
    return TMDBService(api_key=settings.TMDB_API_KEY, language=language)
