import asyncio
import time
from collections.abc import Callable
from typing import Any

from cachetools import TTLCache
from loguru import logger

from narrowdown.core.config import settings
from narrowdown.core.constants import CRITIC_SCORE_TYPE, TMDB_DISCOVER_HISTORY_LIMIT
from narrowdown.core.security import redact_token
from narrowdown.models.tv import ContentItem, CriticScores, FeedFilterState, PreferenceStatus
from narrowdown.services.critic_scores import CriticScoreError, CriticScoreService, get_critic_score_service
from narrowdown.services.document_store import get_document_store
from narrowdown.services.tmdb.genre import series_genres
from narrowdown.services.tmdb.proxy import TmdbProxyClient
from narrowdown.services.tv.context import CriticScoreState, TvSessionContext
from narrowdown.services.tv.credits import CreditsEnricher
from narrowdown.services.tv.discover_state import DebouncedWriter, DiscoverHistory
from narrowdown.services.tv.filters import FeedFilter, normalize_genre_selection, reconcile_genre_selection
from narrowdown.services.tv.orchestrator import FetchOrchestrator, RefillDecision, RefillTrigger, describe_wait
from narrowdown.services.tv.preferences import PreferenceStore, StatusChange
from narrowdown.services.tv.presenter import FeedPresenter, FeedView, build_stats
from narrowdown.services.tv.ranking import PriorityRanker
from narrowdown.services.tv.sources import DiscoverySources
from narrowdown.shared.parsing import extract_year

ANONYMOUS_SESSION = "anonymous"


def critic_key(item: ContentItem) -> str:
    return f"tmdb:{item.id}"


def build_critic_lookup(item: ContentItem) -> dict[str, Any] | None:
    imdb_id = (item.imdb_id or "").strip()
    title = item.title.strip()
    if not imdb_id and not title:
        return None
    year = extract_year(item.release_date)
    return {
        "imdb_id": imdb_id,
        "title": title,
        "year": str(year) if year else "",
        "type_": CRITIC_SCORE_TYPE,
    }


class TvSession:
    """
    One user's feed: preferences, filters, discovery cursors, the candidate pool and the
    refill machinery, wired around a single TvSessionContext.
    """

    def __init__(
        self,
        user_id: str | None,
        document_store: Any,
        sources: DiscoverySources,
        critic_scores: CriticScoreService | None = None,
        ranker: PriorityRanker | None = None,
        enricher: CreditsEnricher | None = None,
        clock: Callable[[], float] = time.time,
        cooldown: float | None = None,
        persist_delay: float | None = None,
    ):
        self.user_id = user_id
        self.document_store = document_store
        self._critic_scores = critic_scores
        self.writer = DebouncedWriter(
            self._save_discover_state,
            persist_delay if persist_delay is not None else settings.TV_DISCOVER_PERSIST_DEBOUNCE_SECONDS,
            name="TMDB discover state",
        )
        history = DiscoverHistory(limit=TMDB_DISCOVER_HISTORY_LIMIT, on_change=self.writer.mark_dirty)
        self.context = TvSessionContext(
            preferences=PreferenceStore(document_store),
            sources=sources,
            history=history,
            user_id=user_id,
            clock=clock,
        )
        self.ranker = ranker or PriorityRanker(clock=clock)
        self.orchestrator = FetchOrchestrator(self.context, ranker=self.ranker, enricher=enricher)
        self.refill = RefillTrigger(self._run_load, cooldown=cooldown, clock=clock)
        self._loaded = False
        self._load_lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()

    @property
    def critic_scores(self) -> CriticScoreService:
        if self._critic_scores is None:
            self._critic_scores = get_critic_score_service()
        return self._critic_scores

    @property
    def label(self) -> str:
        return redact_token(self.user_id) if self.user_id else ANONYMOUS_SESSION

    async def ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            ctx = self.context
            await ctx.preferences.load()
            try:
                ctx.history.hydrate(await self.document_store.load_discover_state())
            except Exception as e:
                logger.warning(f"Failed to load TMDB discover state for {self.label}: {e}")
            try:
                ctx.filters = FeedFilterState.from_document(await self.document_store.load_filters())
            except Exception as e:
                logger.warning(f"Failed to load feed filters for {self.label}: {e}")
            self._loaded = True
            logger.info(f"TV session ready for {self.label} ({len(ctx.preferences.get())} saved statuses)")

    async def _save_discover_state(self) -> None:
        await self.document_store.save_discover_state(self.context.history.serialize())

    async def _run_load(self) -> None:
        self.context.feed_exhausted = False
        token = self.context.attempts.next()
        await self.orchestrator.load(token)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # Feed

    def render(self) -> FeedView:
        return FeedPresenter.render(self.context, in_flight=self.refill.in_progress)

    async def request_more(self) -> RefillDecision:
        ctx = self.context
        decision = await self.refill.request()
        if decision.action == "in_progress":
            started = ctx.format_time(decision.started_at) if decision.started_at else "an unknown time"
            ctx.set_status(f"TV show request already in progress (started at {started}).", spinner=True)
        elif decision.action == "deferred":
            ctx.set_status(describe_wait(decision.wait_seconds), spinner=True)
        return decision

    async def feed_view(self) -> FeedView:
        """Render the feed, running a refill first when the presenter asks for one."""
        await self.ensure_loaded()
        view = self.render()
        if view.should_request_more:
            await self.request_more()
            view = self.render()
        return view

    def _prune_suppressed(self) -> None:
        ctx = self.context
        if not ctx.candidates:
            return
        suppressed = ctx.preferences.suppressed_ids()
        ctx.candidates = [item for item in ctx.candidates if item.key not in suppressed]
        ctx.feed_exhausted = False

    def _request_more_if_empty(self) -> None:
        ctx = self.context
        if not FeedFilter.apply(ctx.candidates, ctx.filters, ctx.preferences.suppressed_ids()):
            self._spawn(self.request_more())

    def find_item(self, item_id: Any) -> ContentItem | None:
        key = str(item_id)
        ctx = self.context
        for item in ctx.candidates:
            if item.key == key:
                return item
        if key in ctx.restored:
            return ctx.restored[key]
        entry = ctx.preferences.entry(key)
        return entry.movie if entry is not None else None

    # Preferences

    async def set_status(
        self,
        item_id: Any,
        status: PreferenceStatus,
        interest: int | None = None,
        show: dict | None = None,
    ) -> StatusChange | None:
        await self.ensure_loaded()
        ctx = self.context
        item = self.find_item(item_id)
        if item is None and show is not None:
            item = ContentItem.from_raw({**show, "id": item_id})
        if item is None:
            return None

        if not item.has_credits:
            try:
                await self.orchestrator.enricher.enrich([item], using_proxy=ctx.sources.proxy_available)
            except Exception as e:
                logger.warning(f"Credits lookup before saving status failed for {item.id}: {e}")

        change = await ctx.preferences.set(item, status, interest)
        ctx.restored.pop(item.key, None)
        self._prune_suppressed()
        self._request_more_if_empty()
        return change

    async def clear_status(self, item_id: Any) -> bool:
        await self.ensure_loaded()
        ctx = self.context
        key = str(item_id)
        removed = await ctx.preferences.clear(key)
        if removed is not None and removed.movie is not None:
            if not any(item.key == key for item in ctx.candidates):
                restored = removed.movie.snapshot()
                ctx.restored[key] = restored
                ctx.candidates = self.ranker.rank([restored, *ctx.candidates], keep=ctx.restored)
                ctx.feed_exhausted = False
        self._prune_suppressed()
        self._request_more_if_empty()
        return removed is not None

    async def set_user_rating(self, item_id: Any, rating: Any):
        await self.ensure_loaded()
        return await self.context.preferences.set_user_rating(item_id, rating)

    async def set_interest(self, item_id: Any, interest: Any):
        await self.ensure_loaded()
        return await self.context.preferences.set_interest(item_id, interest)

    # Filters

    async def update_filters(self, changes: dict[str, Any]) -> FeedFilterState:
        """
        Apply filter changes. A list of genre ids is normalised against the known genres.
        A change supersedes any load attempt still running for the previous filters.
        """
        await self.ensure_loaded()
        ctx = self.context
        changes = dict(changes)
        for name in ("selectedGenres", "selected_genres"):
            if isinstance(changes.get(name), (list, tuple)):
                changes[name] = normalize_genre_selection(changes[name], ctx.genre_map or series_genres)

        filters = reconcile_genre_selection(ctx.filters.updated(**changes), ctx.genre_map)
        if filters == ctx.filters:
            return filters

        ctx.filters = filters
        ctx.feed_exhausted = False
        if self.refill.in_progress:
            ctx.attempts.invalidate()
        try:
            await self.document_store.save_filters(filters.to_document())
        except Exception as e:
            logger.warning(f"Failed to save feed filters for {self.label}: {e}")
        return filters

    # Critic scores

    async def request_critic_scores(self, item_id: Any, force: bool = False) -> CriticScoreState | None:
        await self.ensure_loaded()
        ctx = self.context
        item = self.find_item(item_id)
        if item is None:
            return None

        key = critic_key(item)
        state = ctx.critic_states.get(key)
        if state is None:
            state = CriticScoreState(status="loaded", data=item.critic_scores) if item.critic_scores else CriticScoreState()
            ctx.critic_states[key] = state
        if not force and state.status in ("loading", "loaded"):
            return state

        lookup = build_critic_lookup(item)
        if lookup is None:
            state = CriticScoreState(status="error", error="Not enough information to fetch critic scores.")
            ctx.critic_states[key] = state
            return state

        ctx.critic_states[key] = CriticScoreState(status="loading", data=state.data, error=state.error)
        try:
            payload = await self.critic_scores.lookup(**lookup)
        except CriticScoreError as e:
            state = CriticScoreState(status="error", error=e.message)
            ctx.critic_states[key] = state
            return state

        scores = CriticScores.from_raw(payload)
        if scores is None:
            state = CriticScoreState(status="error", error="Critic scores are unavailable for this title.")
        else:
            state = CriticScoreState(status="loaded", data=scores)
            self._attach_critic_scores(item.key, scores)
        ctx.critic_states[key] = state
        return state

    def _attach_critic_scores(self, key: str, scores: CriticScores) -> None:
        ctx = self.context
        for item in ctx.candidates:
            if item.key == key:
                item.attach_critic_scores(scores)
        if key in ctx.restored:
            ctx.restored[key].attach_critic_scores(scores)
        entry = ctx.preferences.entry(key)
        if entry is not None and entry.movie is not None:
            entry.movie.attach_critic_scores(scores)

    # Stats and lists

    def stats(self) -> dict[str, Any]:
        return build_stats(self.context)

    async def close(self) -> None:
        """Stop pending work and write the discover state now."""
        self.context.attempts.invalidate()
        await self.refill.close()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.writer.flush_now()


_shared_proxy_client: TmdbProxyClient | None = None


def build_sources() -> DiscoverySources:
    """Upstreams for a new session. Each session gets its own proxy breaker."""
    global _shared_proxy_client
    from narrowdown.services.tmdb.service import get_tmdb_service
    from narrowdown.services.tv_catalog import get_tv_catalog_service

    proxy = None
    if settings.resolve_tmdb_proxy_endpoint():
        if _shared_proxy_client is None:
            _shared_proxy_client = TmdbProxyClient()
        proxy = _shared_proxy_client
    direct = get_tmdb_service() if settings.TMDB_API_KEY else None
    return DiscoverySources(proxy=proxy, direct=direct, catalog=get_tv_catalog_service())


class SessionRegistry:
    """Live sessions by user id. Idle sessions expire after `ttl` seconds."""

    def __init__(
        self,
        factory: Callable[[str | None], TvSession] | None = None,
        ttl: float | None = None,
        maxsize: int = 1024,
    ):
        self._factory = factory or self._default_factory
        self._sessions: TTLCache = TTLCache(
            maxsize=maxsize, ttl=ttl if ttl is not None else settings.TV_SESSION_TTL_SECONDS
        )
        self._lock = asyncio.Lock()

    @staticmethod
    def _default_factory(user_id: str | None) -> TvSession:
        return TvSession(user_id, get_document_store(user_id), build_sources())

    async def get(self, user_id: str | None) -> TvSession:
        key = user_id or ANONYMOUS_SESSION
        session = self._sessions.get(key)
        if session is None:
            async with self._lock:
                session = self._sessions.get(key)
                if session is None:
                    session = self._factory(user_id)
                    self._sessions[key] = session
        else:
            # touch so an active session does not expire
            self._sessions[key] = session
        await session.ensure_loaded()
        return session

    def __len__(self) -> int:
        return len(self._sessions)

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            try:
                await session.close()
            except Exception as e:
                logger.warning(f"Failed to close TV session {session.label}: {e}")
        global _shared_proxy_client
        if _shared_proxy_client is not None:
            await _shared_proxy_client.close()
            _shared_proxy_client = None


session_registry = SessionRegistry()
