from fastapi import APIRouter
from loguru import logger

from narrowdown.services.redis_service import redis_service
from narrowdown.services.tv.session import session_registry

router = APIRouter(tags=["health"])


@router.get("/health", summary="Simple readiness probe")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics", summary="Runtime metrics (lightweight)")
async def metrics() -> dict:
    """Return lightweight runtime metrics: Redis connectivity and live TV sessions."""
    metrics: dict = {"tv_sessions": len(session_registry)}
    try:
        client = await redis_service.get_client()
        info = await client.info(section="clients")
        metrics["redis_connected_clients"] = int(info.get("connected_clients", 0))
    except Exception as exc:
        logger.warning(f"Failed to read Redis INFO clients: {exc}")
        metrics["redis_connected_clients"] = "unavailable"
    return metrics
