from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from loguru import logger

from narrowdown.core.errors import UpstreamError
from narrowdown.services.tv_catalog import get_tv_catalog_service

router = APIRouter(tags=["tv"])


@router.get("/api/tv")
async def get_tv_catalog(request: Request):
    """Rating-sorted TV discovery with server-side bounds, cached for ten minutes."""
    query = {key: request.query_params.get(key) for key in request.query_params.keys()}
    try:
        return await get_tv_catalog_service().get_catalog(query)
    except UpstreamError as e:
        logger.error(f"Failed to load TV catalog: {e}")
        status = e.status if e.status and e.status >= 400 else 500
        return JSONResponse(
            status_code=status,
            content={"error": "tv_discover_failed", "message": str(e) or "Unable to load TV shows from TMDB"},
        )
