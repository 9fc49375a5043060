from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from narrowdown.services.critic_scores import CriticScoreError, get_critic_score_service

router = APIRouter(tags=["ratings"])

TRUTHY = {"1", "true", "yes", "on"}


@router.get("/api/movie-ratings")
async def get_movie_ratings(
    imdbId: str = "",
    imdbID: str = "",
    title: str = "",
    year: str = "",
    type: str = "",
    refresh: str = "",
    apiKey: str = Query(default=""),
):
    """Critic scores from OMDb, looked up by IMDb id or title."""
    try:
        return await get_critic_score_service().lookup(
            imdb_id=imdbId or imdbID,
            title=title,
            year=year,
            type_=type,
            refresh=refresh.strip().lower() in TRUTHY,
            api_key=apiKey,
        )
    except CriticScoreError as e:
        return JSONResponse(status_code=e.status, content=e.to_body())
