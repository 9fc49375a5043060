import asyncio
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
from loguru import logger

from narrowdown.core.config import settings
from narrowdown.core.constants import INITIAL_DISCOVER_PAGES, MAX_DISCOVER_PAGES, MAX_DISCOVER_PAGES_LIMIT
from narrowdown.core.errors import ConfigurationError, UpstreamError, summarize_error
from narrowdown.models.tv import ContentItem
from narrowdown.services.tmdb.genre import normalize_credits_map, normalize_genre_map, series_genres
from narrowdown.services.tv.context import AttemptSuperseded, AttemptToken, TvSessionContext
from narrowdown.services.tv.credits import CreditsEnricher
from narrowdown.services.tv.discover_state import build_discover_key
from narrowdown.services.tv.filters import FeedFilter, build_genre_query
from narrowdown.services.tv.ranking import PriorityRanker

# Errors a paging attempt may surface; anything else is a bug and propagates.
FETCH_ERRORS = (UpstreamError, ConfigurationError, httpx.HTTPError)


class FetchState(str, Enum):
    IDLE = "idle"
    CHECKING_CACHE = "checkingCache"
    PAGING = "paging"
    SATISFIED = "satisfied"
    EXHAUSTED = "exhausted"
    FAILED = "failed"
    DONE = "done"


@dataclass
class CatalogResult:
    items: list[ContentItem]
    satisfied: bool
    genres: dict[int, str] | None = None
    credits: dict[str, dict] | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class FetchResult:
    items: list[ContentItem] = field(default_factory=list)
    state: FetchState = FetchState.DONE
    genres: dict[int, str] | None = None
    credits: dict[str, dict] | None = None
    metadata: dict[str, Any] | None = None
    from_cache: bool = False
    used_discovery: bool = False
    network_pages: int = 0
    error: Exception | None = None


class FetchOrchestrator:
    """
    Drives one load attempt for a session: catalog cache first, then discovery paging
    from the stored cursor until the feed is satisfied or the upstream runs dry.

    The orchestrator mutates the session context only through `load()`, and only while
    the attempt token it was given is still current.
    """

    def __init__(
        self,
        context: TvSessionContext,
        ranker: PriorityRanker | None = None,
        enricher: CreditsEnricher | None = None,
        min_feed_size: int | None = None,
        min_priority_results: int | None = None,
    ):
        self.context = context
        self.ranker = ranker or PriorityRanker(clock=context.clock)
        self.enricher = enricher or CreditsEnricher(context.sources)
        self.min_feed_size = min_feed_size if min_feed_size is not None else settings.TV_MIN_FEED_RESULTS
        self.min_priority_results = (
            min_priority_results if min_priority_results is not None else settings.TV_MIN_PRIORITY_RESULTS
        )
        self.state = FetchState.IDLE

    def _feed_size(self, ranked: list[ContentItem], suppressed: set[str]) -> int:
        return len(FeedFilter.apply(ranked, self.context.filters, suppressed))

    async def check_cache(self, suppressed: set[str], token: AttemptToken) -> CatalogResult | None:
        ctx = self.context
        if ctx.catalog_unavailable:
            return None

        filters = ctx.filters
        start_year, end_year = filters.year_bounds
        query: dict[str, Any] = {"limit": max(self.min_feed_size, self.min_priority_results)}
        if filters.rating_floor is not None:
            query["minRating"] = filters.rating_floor
        if filters.votes_floor is not None:
            query["minVotes"] = filters.votes_floor
        if start_year is not None:
            query["startYear"] = start_year
        if end_year is not None:
            query["endYear"] = end_year
        if suppressed:
            query["excludeIds"] = ",".join(sorted(suppressed))

        try:
            data = await ctx.sources.fetch_catalog(query)
        except UpstreamError as e:
            token.ensure_current()
            if e.status in (None, 404, 501):
                ctx.catalog_unavailable = True
                logger.warning(f"TV catalog unavailable for this session ({summarize_error(e)})")
            else:
                logger.warning(f"TV catalog request failed with status {e.status}")
            return None
        except (ConfigurationError, httpx.HTTPError, ValueError) as e:
            token.ensure_current()
            ctx.catalog_unavailable = True
            logger.warning(f"TV catalog unavailable for this session ({summarize_error(e)})")
            return None
        token.ensure_current()

        if not isinstance(data, dict):
            return None
        rows = data.get("results") if isinstance(data.get("results"), list) else []
        seen: set[str] = set()
        collected: list[ContentItem] = []
        for row in rows:
            item = ContentItem.from_raw(row)
            if item is None or item.key in seen or item.key in suppressed:
                continue
            seen.add(item.key)
            collected.append(item)

        ranked = self.ranker.rank(collected, keep=ctx.restored)
        satisfied = self._feed_size(ranked, suppressed) >= self.min_feed_size
        genres = normalize_genre_map(data.get("genres")) or normalize_genre_map(data.get("genreMap"))
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else None
        logger.debug(f"TV catalog returned {len(collected)} show(s), satisfied={satisfied}")
        return CatalogResult(
            items=ranked,
            satisfied=satisfied,
            genres=genres,
            credits=normalize_credits_map(data.get("credits")),
            metadata=metadata,
        )

    async def page(
        self,
        using_proxy: bool,
        suppressed: set[str],
        existing: list[ContentItem],
        token: AttemptToken,
    ) -> tuple[list[ContentItem], FetchState, int]:
        """
        Page discovery from the stored cursor. Returns the ranked pool, the terminal
        state and the number of network pages fetched.
        """
        ctx = self.context
        seen: set[str] = set()
        collected: list[ContentItem] = []
        for item in existing:
            if item.key in seen or item.key in suppressed:
                continue
            seen.add(item.key)
            collected.append(item)

        ranked = self.ranker.rank(collected, keep=ctx.restored)
        if self._feed_size(ranked, suppressed) >= self.min_feed_size:
            return ranked, FetchState.SATISFIED, 0

        key = build_discover_key(ctx.filters, using_proxy)
        cursor = ctx.history.read(key)
        page = max(1, cursor.next_page) if cursor else 1
        allowed = min(
            MAX_DISCOVER_PAGES_LIMIT,
            max(MAX_DISCOVER_PAGES, cursor.allowed_pages if cursor else MAX_DISCOVER_PAGES, page),
        )
        total = cursor.total_pages if cursor and cursor.total_pages else None

        if cursor and cursor.exhausted and total is not None and page > total:
            logger.debug(f"Discover cursor '{key}' already exhausted at page {page - 1}/{total}")
            return ranked, FetchState.EXHAUSTED, 0

        genre_query = build_genre_query(ctx.filters)
        reached_end = False
        network_pages = 0

        def commit(exhausted: bool) -> None:
            ctx.history.write(key, next_page=page, allowed_pages=allowed, total_pages=total, exhausted=exhausted)

        while page <= allowed and (total is None or page <= total):
            current = page
            result = await ctx.sources.discover_page(current, genre_query, using_proxy)
            token.ensure_current()
            network_pages += 1
            if result.total_pages:
                total = result.total_pages

            for raw in result.results:
                item = ContentItem.from_raw(raw)
                if item is None or item.key in seen or item.key in suppressed:
                    continue
                seen.add(item.key)
                collected.append(item)

            ranked = self.ranker.rank(collected, keep=ctx.restored)
            page = current + 1

            if self._feed_size(ranked, suppressed) >= self.min_feed_size:
                commit(exhausted=False)
                return ranked, FetchState.SATISFIED, network_pages

            if not result.results and (total is None or current >= total):
                reached_end = True
                break

            if page > allowed and allowed < MAX_DISCOVER_PAGES_LIMIT:
                allowed = min(MAX_DISCOVER_PAGES_LIMIT, max(allowed + INITIAL_DISCOVER_PAGES, page))
            commit(exhausted=False)

        if not reached_end and network_pages and total is not None and page > total:
            reached_end = True
        if not reached_end and page > allowed:
            logger.debug(f"Discover cursor '{key}' used its page budget of {allowed}")
        if network_pages:
            commit(exhausted=reached_end and (total is None or page - 1 >= total))
        return ranked, FetchState.EXHAUSTED, network_pages

    async def fetch(self, using_proxy: bool, token: AttemptToken) -> FetchResult:
        ctx = self.context
        suppressed = ctx.preferences.suppressed_ids()

        self.state = FetchState.CHECKING_CACHE
        cached = await self.check_cache(suppressed, token)
        if cached is not None and cached.satisfied:
            self.state = FetchState.SATISFIED
            logger.debug(f"TV catalog satisfied the feed with {len(cached.items)} show(s)")
            return FetchResult(
                items=cached.items,
                state=FetchState.SATISFIED,
                genres=cached.genres,
                credits=cached.credits,
                metadata=cached.metadata,
                from_cache=True,
            )

        self.state = FetchState.PAGING
        cached_items = list(cached.items) if cached else []
        # unclassified shows already in the pool stay in it
        existing = cached_items + list(ctx.candidates)
        try:
            items, state, pages = await self.page(using_proxy, suppressed, existing, token)
        except FETCH_ERRORS as e:
            if not cached_items:
                raise
            logger.warning(f"Discovery paging failed, using {len(cached_items)} cached show(s): {summarize_error(e)}")
            self.state = FetchState.FAILED
            return FetchResult(
                items=cached_items,
                state=FetchState.FAILED,
                genres=cached.genres,
                credits=cached.credits,
                metadata=cached.metadata,
                from_cache=True,
                error=e,
            )

        self.state = state
        return FetchResult(
            items=items,
            state=state,
            genres=cached.genres if cached else None,
            credits=cached.credits if cached else None,
            metadata=cached.metadata if cached else None,
            from_cache=cached is not None and not pages,
            used_discovery=pages > 0,
            network_pages=pages,
        )

    def _source_label(self, result: FetchResult, using_proxy: bool) -> str:
        if result.from_cache and not result.used_discovery:
            return "the TV show cache"
        return "the TMDB proxy service" if using_proxy else "the direct TMDB API"

    async def _apply(self, result: FetchResult, using_proxy: bool, attempt: int, token: AttemptToken) -> None:
        ctx = self.context
        await self.enricher.enrich(result.items, using_proxy, result.credits)
        token.ensure_current()

        if result.genres:
            ctx.genre_map = dict(result.genres)
        if not ctx.genre_map or result.used_discovery:
            genres = await ctx.sources.genre_map(using_proxy)
            token.ensure_current()
            if genres:
                ctx.genre_map = genres
        if not ctx.genre_map:
            ctx.genre_map = dict(series_genres)
        if result.metadata is not None:
            ctx.catalog_metadata = result.metadata

        ctx.candidates = list(result.items)
        ctx.feed_exhausted = result.state == FetchState.EXHAUSTED or not ctx.candidates

        available = len(FeedFilter.apply(ctx.candidates, ctx.filters, ctx.preferences.suppressed_ids()))
        ctx.set_status(
            f"Loaded {len(ctx.candidates)} TV show(s) on attempt {attempt} at {ctx.format_time()} "
            f"using {self._source_label(result, using_proxy)}. {available} match(es) your current filters.",
            tone="success" if available else "warning",
        )

    async def load(self, token: AttemptToken) -> FetchState:
        """
        One full load attempt: fetch, fall back from the proxy to the direct API once,
        enrich credits, refresh genres, then publish the result into the session.
        A superseded attempt returns DONE without touching the session.
        """
        ctx = self.context
        sources = ctx.sources
        attempt = token.number
        using_proxy = sources.proxy_available

        if not using_proxy and not sources.direct_available:
            ctx.feed_exhausted = True
            ctx.set_status(
                "TMDB API key unavailable. Configure the server secret or enable the proxy to load TV shows.",
                tone="warning",
            )
            return FetchState.FAILED

        source = "the TMDB proxy service" if using_proxy else "the direct TMDB API"
        ctx.set_status(f"Loading TV shows (attempt {attempt}) started at {ctx.format_time()} using {source}...", spinner=True)
        logger.info(f"TV load attempt {attempt} started using {source}")

        try:
            try:
                result = await self.fetch(using_proxy, token)
            except FETCH_ERRORS as e:
                if not using_proxy:
                    raise
                summary = summarize_error(e)
                sources.breaker.disable(summary)
                logger.warning(f"TV load attempt {attempt} via the TMDB proxy failed ({summary})")
                if not sources.direct_available:
                    ctx.feed_exhausted = True
                    ctx.set_status(
                        "TMDB proxy is unavailable and no TMDB API key is configured on the server. "
                        "Contact an administrator to restore access.",
                        tone="error",
                    )
                    return FetchState.FAILED
                ctx.set_status(
                    f"Attempt {attempt} using the TMDB proxy service failed ({summary}). "
                    "Switching to the server TMDB API key.",
                    tone="warning",
                    spinner=True,
                )
                using_proxy = False
                source = "the direct TMDB API"
                result = await self.fetch(using_proxy, token)

            await self._apply(result, using_proxy, attempt, token)
            logger.info(
                f"TV load attempt {attempt} finished: {len(result.items)} show(s), state={result.state.value}, "
                f"pages={result.network_pages}"
            )
            return result.state
        except AttemptSuperseded as e:
            logger.debug(str(e))
            return FetchState.DONE
        except FETCH_ERRORS as e:
            if not token.is_current:
                return FetchState.DONE
            logger.error(f"TV load attempt {attempt} using {source} failed: {summarize_error(e)}")
            ctx.set_status(
                f"Attempt {attempt} using {source} failed ({summarize_error(e)}). No TV shows were loaded. "
                "Check the TMDB API configuration and try again.",
                tone="error",
            )
            return FetchState.FAILED
        finally:
            self.state = FetchState.DONE


@dataclass
class RefillDecision:
    action: str  # started | in_progress | deferred
    wait_seconds: float = 0.0
    started_at: float | None = None


class RefillTrigger:
    """
    Guards load attempts: one at a time, and at most one every `cooldown` seconds.
    A request inside the cooldown window schedules a single pending run; further
    requests collapse onto it.
    """

    def __init__(
        self,
        run: Callable[[], Awaitable[Any]],
        cooldown: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._run = run
        self.cooldown = cooldown if cooldown is not None else settings.TV_REFILL_COOLDOWN_SECONDS
        self.clock = clock
        self.in_progress = False
        self.started_at: float | None = None
        self.last_attempt: float | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._timer is not None

    async def request(self) -> RefillDecision:
        if self.in_progress:
            return RefillDecision("in_progress", started_at=self.started_at)

        now = self.clock()
        if self.last_attempt is not None and now - self.last_attempt < self.cooldown:
            wait = self.cooldown - (now - self.last_attempt)
            if self._timer is None:
                self._timer = asyncio.get_running_loop().call_later(wait, self._on_timer)
            return RefillDecision("deferred", wait_seconds=wait)

        self.cancel()
        self.in_progress = True
        self.started_at = now
        self.last_attempt = now
        try:
            await self._run()
        finally:
            self.in_progress = False
        return RefillDecision("started", started_at=now)

    def _on_timer(self) -> None:
        self._timer = None
        self._task = asyncio.ensure_future(self.request())

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def close(self) -> None:
        self.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass


def describe_wait(seconds: float) -> str:
    return f"Waiting {max(1, math.ceil(seconds))}s before requesting more TV shows..."
