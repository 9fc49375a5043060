from fastapi import APIRouter

from .endpoints.feed import router as feed_router
from .endpoints.health import router as health_router
from .endpoints.proxy import router as proxy_router
from .endpoints.ratings import router as ratings_router
from .endpoints.tv_catalog import router as tv_catalog_router

api_router = APIRouter()


@api_router.get("/")
async def root():
    return {"message": "narrow-down API is running"}


api_router.include_router(health_router)
api_router.include_router(proxy_router)
api_router.include_router(tv_catalog_router)
api_router.include_router(ratings_router)
api_router.include_router(feed_router)
