import json
from datetime import datetime, timezone
from typing import Any

import httpx
from loguru import logger

from narrowdown.core.base_client import BaseClient
from narrowdown.core.cache import ResponseCache, get_response_cache
from narrowdown.core.config import settings
from narrowdown.core.constants import OMDB_BASE_URL, OMDB_CACHE_COLLECTION
from narrowdown.shared.parsing import parse_imdb_rating, parse_percent, parse_score

ALLOWED_TYPES = frozenset({"movie", "series", "episode"})


class CriticScoreError(Exception):
    """Lookup failure with the HTTP status and error code the ratings route answers with."""

    def __init__(self, status: int, code: str, message: str):
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message

    def to_body(self) -> dict[str, str]:
        return {"error": self.code, "message": self.message}


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def build_omdb_cache_key_parts(imdb_id: str, title: str, year: str, type_: str) -> list[str]:
    parts = ["omdb", f"type:{(type_ or 'any').lower()}"]
    if imdb_id:
        parts.append(f"imdb:{imdb_id.lower()}")
    elif title:
        parts.append(f"title:{title.lower()}")
    else:
        parts.append("title:")
    parts.append(f"year:{year}" if year else "year:")
    return parts


def normalize_omdb_payload(
    data: Any,
    type_: str | None = None,
    requested_title: str = "",
    requested_year: str = "",
) -> dict[str, Any] | None:
    if not isinstance(data, dict):
        return None
    rating_map: dict[str, Any] = {}
    for entry in data.get("Ratings") or []:
        if isinstance(entry, dict) and isinstance(entry.get("Source"), str):
            key = entry["Source"].strip().lower()
            if key:
                rating_map[key] = entry.get("Value")

    rotten = rating_map.get("rotten tomatoes", rating_map.get("rottentomatoes"))
    metascore = data.get("Metascore") if data.get("Metascore") is not None else rating_map.get("metacritic")
    imdb = data.get("imdbRating")
    if imdb is None:
        imdb = rating_map.get("internet movie database", rating_map.get("imdb"))

    return {
        "source": "omdb",
        "ratings": {
            "rottenTomatoes": parse_percent(rotten),
            "metacritic": parse_score(metascore),
            "imdb": parse_imdb_rating(imdb),
        },
        "imdbId": _clean(data.get("imdbID")) or None,
        "title": _clean(data.get("Title")) or _clean(requested_title) or None,
        "year": _clean(data.get("Year")) or _clean(requested_year) or None,
        "type": type_ or None,
        "fetchedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }


class OmdbClient(BaseClient):
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(base_url=OMDB_BASE_URL, timeout=10.0, max_retries=1, transport=transport)

    async def lookup(self, params: dict[str, str]) -> httpx.Response:
        return await self.send_once("GET", "", params=params)


class CriticScoreService:
    """OMDb critic scores behind the shared response cache."""

    def __init__(
        self,
        api_key: str | None = None,
        cache: ResponseCache | None = None,
        client: OmdbClient | None = None,
        ttl_seconds: float | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.OMDB_API_KEY
        self._cache = cache
        self.client = client or OmdbClient()
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.OMDB_CACHE_TTL_SECONDS

    @property
    def cache(self) -> ResponseCache:
        if self._cache is None:
            self._cache = get_response_cache()
        return self._cache

    async def close(self) -> None:
        await self.client.close()

    async def lookup(
        self,
        imdb_id: str = "",
        title: str = "",
        year: str = "",
        type_: str = "",
        refresh: bool = False,
        api_key: str = "",
    ) -> dict[str, Any]:
        imdb_id, title, year = _clean(imdb_id), _clean(title), _clean(year)
        type_ = _clean(type_).lower()
        type_ = type_ if type_ in ALLOWED_TYPES else ""
        key = _clean(api_key) or self.api_key

        if not key:
            raise CriticScoreError(400, "omdb_key_missing", "OMDb API key is not configured on the server.")
        if not imdb_id and not title:
            raise CriticScoreError(400, "missing_lookup", "Provide an imdbId or title to look up critic scores.")

        cache_parts = build_omdb_cache_key_parts(imdb_id, title, year, type_ or "any")
        if not refresh:
            cached = await self.cache.safe_read(OMDB_CACHE_COLLECTION, cache_parts, self.ttl_seconds)
            if cached is not None:
                try:
                    return json.loads(cached["body"])
                except ValueError:
                    logger.warning("Ignoring undecodable cached critic scores")

        params = {"apikey": key}
        if imdb_id:
            params["i"] = imdb_id
        else:
            params["t"] = title
        if year:
            params["y"] = year
        if type_:
            params["type"] = type_
        params.update({"plot": "short", "r": "json"})

        try:
            response = await self.client.lookup(params)
            if not response.is_success:
                status = response.status_code or 502
                raise CriticScoreError(status, "omdb_request_failed", f"OMDb request failed with status {status}")
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to fetch critic scores from OMDb: {e}")
            raise CriticScoreError(500, "omdb_request_failed", "Failed to fetch critic scores.") from e

        if not isinstance(data, dict) or data.get("Response") == "False":
            message = data.get("Error") if isinstance(data, dict) and isinstance(data.get("Error"), str) else None
            message = message or "OMDb returned no results"
            if "api key" in message.lower():
                raise CriticScoreError(401, "omdb_invalid_key", message)
            raise CriticScoreError(404, "omdb_not_found", message)

        payload = normalize_omdb_payload(data, type_ or None, title, year)
        if payload is None:
            raise CriticScoreError(404, "omdb_not_found", "OMDb did not return critic scores for this title.")

        await self.cache.safe_write(
            OMDB_CACHE_COLLECTION,
            cache_parts,
            {
                "body": json.dumps(payload),
                "metadata": {
                    "imdbId": payload["imdbId"] or imdb_id or None,
                    "title": payload["title"] or title or None,
                    "year": payload["year"] or year or None,
                    "type": payload["type"] or type_ or None,
                },
            },
        )
        return payload


_critic_score_service: CriticScoreService | None = None


def get_critic_score_service() -> CriticScoreService:
    global _critic_score_service
    if _critic_score_service is None:
        _critic_score_service = CriticScoreService()
    return _critic_score_service
