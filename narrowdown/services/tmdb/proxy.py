import json
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger

from narrowdown.core.base_client import BaseClient
from narrowdown.core.config import settings
from narrowdown.core.errors import ConfigurationError, ProxyError, UpstreamError


@dataclass(frozen=True)
class EndpointSpec:
    path: str
    # Query parameters that may carry the path id, in lookup order. They are not forwarded.
    id_params: tuple[str, ...] = ()


ALLOWED_ENDPOINTS: dict[str, EndpointSpec] = {
    "discover": EndpointSpec("/discover/movie"),
    "discover_tv": EndpointSpec("/discover/tv"),
    "genres": EndpointSpec("/genre/movie/list"),
    "tv_genres": EndpointSpec("/genre/tv/list"),
    "credits": EndpointSpec("/movie/{id}/credits", ("movie_id", "id", "movieId")),
    "tv_credits": EndpointSpec("/tv/{id}/credits", ("tv_id", "id")),
    "movie_details": EndpointSpec("/movie/{id}", ("movie_id", "id", "movieId")),
    "tv_details": EndpointSpec("/tv/{id}", ("tv_id", "id")),
    "person_details": EndpointSpec("/person/{id}", ("person_id", "id")),
    "search_multi": EndpointSpec("/search/multi"),
    "search_movie": EndpointSpec("/search/movie"),
    "search_tv": EndpointSpec("/search/tv"),
    "trending_all": EndpointSpec("/trending/all/day"),
    "trending_movies": EndpointSpec("/trending/movie/day"),
    "trending_tv": EndpointSpec("/trending/tv/day"),
    "popular_movies": EndpointSpec("/movie/popular"),
    "popular_tv": EndpointSpec("/tv/popular"),
    "upcoming_movies": EndpointSpec("/movie/upcoming"),
}


def error_body(code: str, message: str) -> str:
    return json.dumps({"error": code, "message": message})


def resolve_endpoint(endpoint_key: str, query: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    """Map an endpoint key plus query to (API path, forwarded params).

    Raises ProxyError(400) with code `unsupported_endpoint` or `invalid_endpoint_params`.
    """
    spec = ALLOWED_ENDPOINTS.get(endpoint_key)
    if spec is None:
        raise ProxyError(
            "unsupported_endpoint",
            status=400,
            code="unsupported_endpoint",
            body=error_body("unsupported_endpoint", f"Endpoint '{endpoint_key}' is not supported."),
            endpoint=endpoint_key,
        )
    params = {k: v for k, v in query.items() if k not in spec.id_params and v is not None}
    if not spec.id_params:
        return spec.path, params

    raw_id = next((query.get(name) for name in spec.id_params if query.get(name) is not None), None)
    if isinstance(raw_id, (list, tuple)):
        raw_id = raw_id[0] if raw_id else None
    value = str(raw_id).strip() if raw_id is not None else ""
    if not value:
        raise ProxyError(
            "invalid_endpoint_params",
            status=400,
            code="invalid_endpoint_params",
            body=error_body("invalid_endpoint_params", f"Endpoint '{endpoint_key}' requires an id."),
            endpoint=endpoint_key,
        )
    return spec.path.format(id=quote(value, safe="")), params


@dataclass
class ProxyResponse:
    status: int
    body: str
    content_type: str = "application/json"


class TmdbProxyService:
    """
    Whitelisted TMDB passthrough served at /tmdbProxy.

    The configured server key is tried first. When it is missing or the direct call fails,
    the request is forwarded to the upstream proxy and its status and body are preserved.
    """

    def __init__(
        self,
        api_key: str | None = None,
        upstream_url: str | None = None,
        tmdb_service: Any = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.TMDB_API_KEY
        self.upstream_url = (upstream_url if upstream_url is not None else settings.TMDB_PROXY_UPSTREAM).strip()
        self._tmdb_service = tmdb_service
        self._forwarder = BaseClient(timeout=10.0, max_retries=1, transport=transport)

    def _get_tmdb_service(self):
        if self._tmdb_service is None:
            from narrowdown.services.tmdb.service import TMDBService

            self._tmdb_service = TMDBService(api_key=self.api_key)
        return self._tmdb_service

    async def close(self):
        await self._forwarder.close()
        if self._tmdb_service is not None:
            await self._tmdb_service.close()

    async def handle(self, endpoint_key: str, query: dict[str, Any]) -> ProxyResponse:
        try:
            path, params = resolve_endpoint(endpoint_key, query)
        except ProxyError as e:
            return ProxyResponse(status=e.status or 400, body=e.body or error_body(e.code or "", str(e)))

        if self.api_key:
            try:
                data = await self._get_tmdb_service().get_path(path, params)
                return ProxyResponse(status=200, body=json.dumps(data))
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Direct TMDB request failed for {endpoint_key}, attempting upstream proxy: {e}")

        if not self.upstream_url:
            if not self.api_key:
                return ProxyResponse(
                    status=503,
                    body=error_body("tmdb_key_not_configured", "TMDB API key is not configured on the server."),
                )
            return ProxyResponse(
                status=502, body=error_body("tmdb_proxy_failed", "tmdb_proxy_upstream_unavailable")
            )

        return await self.forward(endpoint_key, query)

    async def request_data(self, endpoint_key: str, query: dict[str, Any]) -> dict[str, Any]:
        """Same lookup order as `handle`, decoded. Error statuses raise UpstreamError."""
        response = await self.handle(endpoint_key, query)
        if response.status >= 400:
            raise UpstreamError("tmdb_proxy_forward_failed", status=response.status)
        if not response.body:
            return {}
        try:
            data = json.loads(response.body)
        except ValueError as e:
            raise UpstreamError("invalid_tmdb_proxy_response", status=502) from e
        return data if isinstance(data, dict) else {}

    async def forward(self, endpoint_key: str, query: dict[str, Any]) -> ProxyResponse:
        params: list[tuple[str, str]] = [("endpoint", endpoint_key)]
        for key, value in query.items():
            values = value if isinstance(value, (list, tuple)) else [value]
            params.extend((key, str(v)) for v in values if v is not None)
        try:
            response = await self._forwarder.send_once("GET", self.upstream_url, params=params)
        except httpx.HTTPError as e:
            logger.error(f"TMDB proxy forward failed for {endpoint_key}: {e}")
            return ProxyResponse(status=502, body=error_body("tmdb_proxy_failed", str(e) or "TMDB proxy request failed"))
        return ProxyResponse(
            status=response.status_code,
            body=response.text,
            content_type=response.headers.get("content-type") or "application/json",
        )


@dataclass
class ProxyBreaker:
    """Per-session circuit breaker for the proxy path."""

    disabled: bool = False
    reason: str | None = None
    unsupported: set[str] = field(default_factory=set)

    def disable(self, reason: str | None = None) -> None:
        if self.disabled:
            return
        self.disabled = True
        self.reason = reason
        logger.warning(f"TMDB proxy disabled for this session ({reason or 'unknown error'})")

    def is_supported(self, endpoint: str) -> bool:
        return not self.disabled and endpoint not in self.unsupported

    def mark_unsupported(self, endpoint: str) -> None:
        if endpoint and endpoint not in self.unsupported:
            self.unsupported.add(endpoint)
            logger.info(f"TMDB proxy endpoint '{endpoint}' marked unsupported for this session")


class TmdbProxyClient(BaseClient):
    """
    Feed engine side of the proxy: `GET <proxy>?endpoint=<key>&...`.

    Failures update the session's ProxyBreaker: transport errors, 5xx, 401/403 and
    `tmdb_key_not_configured` disable the proxy; a 400 `unsupported_endpoint` marks only
    that endpoint; `invalid_endpoint_params` leaves everything enabled.
    """

    def __init__(self, endpoint_url: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(timeout=10.0, max_retries=1, transport=transport)
        self.endpoint_url = (
            endpoint_url if endpoint_url is not None else settings.resolve_tmdb_proxy_endpoint()
        ).strip()

    def is_available(self, breaker: ProxyBreaker) -> bool:
        return bool(self.endpoint_url) and not breaker.disabled

    async def call(self, endpoint: str, params: dict[str, Any], breaker: ProxyBreaker) -> dict[str, Any]:
        if not self.is_available(breaker):
            raise ConfigurationError("TMDB proxy endpoint not configured")

        query: list[tuple[str, str]] = [("endpoint", endpoint)]
        for key, value in params.items():
            if isinstance(value, (list, tuple)):
                query.extend((key, str(v)) for v in value)
            elif value is not None:
                query.append((key, str(value)))

        try:
            response = await self.send_once("GET", self.endpoint_url, params=query)
        except httpx.HTTPError as e:
            breaker.disable(f"network error: {e}")
            raise UpstreamError(f"TMDB proxy request failed ({e})") from e

        if response.is_success:
            try:
                data = response.json()
            except ValueError:
                logger.warning(f"TMDB proxy returned invalid JSON for {endpoint}; treating as empty")
                return {}
            return data if isinstance(data, dict) else {}

        error = self._build_error(endpoint, response)
        if self._should_disable(error):
            breaker.disable(error.summary())
        elif error.status == 400 and error.code == "unsupported_endpoint":
            breaker.mark_unsupported(endpoint)
        raise error

    @staticmethod
    def _build_error(endpoint: str, response: httpx.Response) -> ProxyError:
        body = response.text
        code = None
        detail = None
        if body and body.strip():
            try:
                parsed = json.loads(body)
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                code = parsed.get("error") if isinstance(parsed.get("error"), str) else None
                detail = parsed.get("message") if isinstance(parsed.get("message"), str) else None
        message = f"TMDB proxy request failed (status {response.status_code})"
        if detail:
            message = f"{message}: {detail}"
        return ProxyError(message, status=response.status_code, code=code, body=body, endpoint=endpoint)

    @staticmethod
    def _should_disable(error: ProxyError) -> bool:
        status = error.status or 0
        if status >= 500 or status in (401, 403):
            return True
        return "tmdb_key_not_configured" in (error.body or "")
