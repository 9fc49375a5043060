from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from narrowdown.api.endpoints.proxy import close_proxy_service
from narrowdown.api.main import api_router
from narrowdown.services.critic_scores import get_critic_score_service
from narrowdown.services.redis_service import redis_service
from narrowdown.services.tv.session import session_registry
from narrowdown.services.tv_catalog import get_tv_catalog_service

from .config import settings
from .version import __version__


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan events (startup/shutdown).
    On shutdown pending discover cursors are flushed before clients are closed.
    """
    yield
    try:
        await session_registry.close_all()
        logger.info("TV sessions flushed")
    except Exception as exc:
        logger.warning(f"Failed to flush TV sessions: {exc}")
    for name, close in (
        ("TMDB proxy", close_proxy_service),
        ("TV catalog", get_tv_catalog_service().close),
        ("OMDb", get_critic_score_service().close),
        ("Redis", redis_service.close),
    ):
        try:
            await close()
        except Exception as exc:
            logger.warning(f"Failed to close {name} client: {exc}")


app = FastAPI(
    title="narrow-down",
    description="TV show discovery feed with per-user preferences",
    version=__version__,
    lifespan=lifespan,
    docs_url=None if settings.APP_ENV != "development" else "/docs",
    redoc_url=None if settings.APP_ENV != "development" else "/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)
