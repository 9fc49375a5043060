from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from narrowdown.models.tv import PreferenceStatus
from narrowdown.services.tv.filters import describe_genre_selection, has_active_filters
from narrowdown.services.tv.preferences import WATCHED_SORT_MODES
from narrowdown.services.tv.session import TvSession, session_registry
from narrowdown.shared.parsing import parse_name_list

router = APIRouter(prefix="/api/tv", tags=["tv-feed"])


class StatusRequest(BaseModel):
    status: PreferenceStatus
    interest: int | None = Field(default=None, description="1..5, interested only")
    show: dict[str, Any] | None = Field(default=None, description="Show data for ids not in the current feed")


class RatingRequest(BaseModel):
    rating: float | None = Field(default=None, description="0..10 in steps of 0.5; null removes the rating")


class InterestRequest(BaseModel):
    interest: int


class FiltersRequest(BaseModel):
    minRating: str | float | None = None
    minVotes: str | int | None = None
    startYear: str | int | None = None
    endYear: str | int | None = None
    selectedGenres: str | list[int | str] | None = None


async def get_session(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> TvSession:
    return await session_registry.get((x_user_id or "").strip() or None)


def _status_payload(session: TvSession) -> dict[str, Any]:
    status = session.context.status
    return {"message": status.message, "tone": status.tone, "spinner": status.spinner}


def _filters_payload(session: TvSession) -> dict[str, Any]:
    ctx = session.context
    return {
        "filters": ctx.filters.to_document(),
        "active": has_active_filters(ctx.filters),
        "genreSummary": describe_genre_selection(ctx.filters, ctx.genre_map),
        "genres": {str(gid): name for gid, name in sorted(ctx.genre_map.items())},
    }


@router.get("/feed")
async def get_feed(session: TvSession = Depends(get_session)):
    view = await session.feed_view()
    return {
        "view": view.to_dict(),
        "status": _status_payload(session),
        "exhausted": session.context.feed_exhausted,
        "proxyEnabled": session.context.sources.proxy_available,
        **_filters_payload(session),
    }


@router.post("/feed/more")
async def request_more(session: TvSession = Depends(get_session)):
    decision = await session.request_more()
    return {
        "action": decision.action,
        "waitSeconds": round(decision.wait_seconds, 2),
        "view": session.render().to_dict(),
        "status": _status_payload(session),
    }


@router.get("/filters")
async def get_filters(session: TvSession = Depends(get_session)):
    return _filters_payload(session)


@router.put("/filters")
async def update_filters(payload: FiltersRequest, session: TvSession = Depends(get_session)):
    await session.update_filters(payload.model_dump(exclude_unset=True))
    return _filters_payload(session)


@router.put("/prefs/{item_id}")
async def set_status(item_id: int, payload: StatusRequest, session: TvSession = Depends(get_session)):
    change = await session.set_status(item_id, payload.status, payload.interest, payload.show)
    if change is None:
        raise HTTPException(status_code=404, detail=f"TV show {item_id} is not in this session.")
    return {"entry": change.entry.to_document(), "promptRating": change.prompt_rating}


@router.delete("/prefs/{item_id}")
async def clear_status(item_id: int, session: TvSession = Depends(get_session)):
    cleared = await session.clear_status(item_id)
    return {"cleared": cleared}


@router.put("/prefs/{item_id}/rating")
async def set_user_rating(item_id: int, payload: RatingRequest, session: TvSession = Depends(get_session)):
    entry = await session.set_user_rating(item_id, payload.rating)
    if entry is None:
        raise HTTPException(status_code=404, detail="Only watched shows can be rated.")
    return {"entry": entry.to_document()}


@router.put("/prefs/{item_id}/interest")
async def set_interest(item_id: int, payload: InterestRequest, session: TvSession = Depends(get_session)):
    entry = await session.set_interest(item_id, payload.interest)
    if entry is None:
        raise HTTPException(status_code=404, detail="Only interested shows have an interest level.")
    return {"entry": entry.to_document()}


@router.get("/interested")
async def get_interested(genres: str = "", session: TvSession = Depends(get_session)):
    names = set(parse_name_list(genres))
    entries = session.context.preferences.interested(names or None, session.context.genre_map)
    return {"items": [{"id": e.movie.id, **e.to_document()} for e in entries]}


@router.get("/watched")
async def get_watched(sort: str = "recent", session: TvSession = Depends(get_session)):
    if sort not in WATCHED_SORT_MODES:
        raise HTTPException(status_code=400, detail=f"sort must be one of {', '.join(WATCHED_SORT_MODES)}")
    entries = session.context.preferences.watched(sort)
    return {"items": [{"id": e.movie.id, **e.to_document()} for e in entries]}


@router.get("/stats")
async def get_stats(session: TvSession = Depends(get_session)):
    return session.stats()


@router.post("/shows/{item_id}/critic-scores")
async def request_critic_scores(item_id: int, force: bool = False, session: TvSession = Depends(get_session)):
    state = await session.request_critic_scores(item_id, force=force)
    if state is None:
        raise HTTPException(status_code=404, detail=f"TV show {item_id} is not in this session.")
    return {
        "status": state.status,
        "data": state.data.to_document() if state.data else None,
        "error": state.error,
    }
