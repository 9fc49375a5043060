from typing import Literal

from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class QualityTier(BaseModel):
    """Minimum (average, votes) pair a show must meet to enter the ranked pool."""

    min_average: float
    min_votes: int


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow",
    )

    TMDB_API_KEY: str | None = Field(
        default=None, validation_alias=AliasChoices("TMDB_API_KEY", "TMDB_KEY", "TMDB_TOKEN")
    )
    # Endpoint the feed engine calls for proxied TMDB requests. Empty disables the proxy path.
    TMDB_PROXY_ENDPOINT: str | None = None
    # Remote proxy the local /tmdbProxy route forwards to when the direct call is unavailable
    TMDB_PROXY_UPSTREAM: str = "https://narrow-down.web.app/api/tmdbProxy"
    OMDB_API_KEY: str | None = None

    PORT: int = 3003
    APP_ENV: Literal["development", "production", "test"] = "production"

    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20
    REDIS_USER_DOC_KEY: str = "narrowdown:tv:user:"
    REDIS_CACHE_KEY: str = "narrowdown:cache:"
    # JSON file holding anonymous state. None keeps it in memory for the process lifetime.
    LOCAL_STATE_PATH: str | None = None

    TV_DISCOVER_CACHE_TTL_SECONDS: int = 600  # 10 minutes
    TV_GENRE_CACHE_TTL_SECONDS: int = 3600  # 1 hour
    OMDB_CACHE_TTL_SECONDS: int = 43200  # 12 hours

    TV_MIN_FEED_RESULTS: int = 10
    TV_MIN_PRIORITY_RESULTS: int = 12
    TV_QUALITY_TIERS: list[QualityTier] = [
        QualityTier(min_average=7, min_votes=50),
        QualityTier(min_average=6.5, min_votes=25),
        QualityTier(min_average=6, min_votes=10),
    ]
    TV_REFILL_COOLDOWN_SECONDS: float = 5.0
    TV_DISCOVER_PERSIST_DEBOUNCE_SECONDS: float = 1.5
    TV_SESSION_TTL_SECONDS: int = 3600

    def resolve_tmdb_proxy_endpoint(self) -> str:
        if self.TMDB_PROXY_ENDPOINT is not None:
            return self.TMDB_PROXY_ENDPOINT.strip()
        return self.TMDB_PROXY_UPSTREAM.strip()


settings = Settings()
