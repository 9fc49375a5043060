from fastapi import APIRouter, Request, Response

from narrowdown.services.tmdb.proxy import TmdbProxyService, error_body

router = APIRouter(tags=["tmdb"])

_proxy_service: TmdbProxyService | None = None


def get_proxy_service() -> TmdbProxyService:
    global _proxy_service
    if _proxy_service is None:
        _proxy_service = TmdbProxyService()
    return _proxy_service


async def close_proxy_service() -> None:
    global _proxy_service
    if _proxy_service is not None:
        await _proxy_service.close()
        _proxy_service = None


@router.get("/tmdbProxy")
@router.get("/api/tmdbProxy")
async def tmdb_proxy(request: Request) -> Response:
    """Whitelisted TMDB passthrough. Upstream status codes and bodies are preserved."""
    params = request.query_params
    endpoint = (params.get("endpoint") or "").strip()
    if not endpoint:
        return Response(
            content=error_body("unsupported_endpoint", "Missing endpoint parameter."),
            status_code=400,
            media_type="application/json",
        )
    query: dict = {}
    for key in params.keys():
        if key == "endpoint":
            continue
        values = params.getlist(key)
        query[key] = values[0] if len(values) == 1 else values
    result = await get_proxy_service().handle(endpoint, query)
    return Response(content=result.body, status_code=result.status, media_type=result.content_type)
