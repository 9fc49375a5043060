from dataclasses import dataclass, field
from typing import Any

from narrowdown.core.constants import TV_RATING_BUCKETS
from narrowdown.models.tv import ContentItem
from narrowdown.services.tv.context import TvSessionContext
from narrowdown.services.tv.filters import FeedFilter, has_active_filters
from narrowdown.shared.parsing import parse_float


@dataclass
class FeedView:
    kind: str  # loading | empty | list
    reason: str
    message: str
    tone: str = "info"
    should_request_more: bool = False
    items: list[ContentItem] = field(default_factory=list)
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "reason": self.reason,
            "message": self.message,
            "tone": self.tone,
            "shouldRequestMore": self.should_request_more,
            "items": [item.to_document() for item in self.items],
            "timestamp": self.timestamp,
        }


class FeedPresenter:
    """Decides what the feed shows for the current session state. Never fetches by itself."""

    @staticmethod
    def render(ctx: TvSessionContext, in_flight: bool = False) -> FeedView:
        stamp = ctx.format_time()
        suppressed = ctx.preferences.suppressed_ids()
        filters_active = has_active_filters(ctx.filters)

        if not ctx.candidates:
            if in_flight:
                return FeedView("loading", "loading", "Waiting for TV shows from TMDB...", timestamp=stamp)
            if ctx.feed_exhausted:
                message = (
                    "TMDB did not return TV shows that match your filters."
                    if filters_active
                    else "TMDB did not return any TV shows. Try again later."
                )
                return FeedView("empty", "exhausted", message, timestamp=stamp)
            return FeedView(
                "loading",
                "notLoaded",
                "Requesting the first batch of TV shows...",
                should_request_more=True,
                timestamp=stamp,
            )

        unsuppressed = [item for item in ctx.candidates if item.key not in suppressed]
        if not unsuppressed:
            if in_flight:
                return FeedView(
                    "loading",
                    "suppressed",
                    "All current results are hidden; waiting for new TV shows...",
                    timestamp=stamp,
                )
            return FeedView(
                "loading",
                "suppressed",
                "All fetched TV shows are hidden by saved statuses. Looking for fresh titles...",
                tone="warning",
                should_request_more=True,
                timestamp=stamp,
            )

        visible = FeedFilter.apply(ctx.candidates, ctx.filters, suppressed)
        if not visible:
            if in_flight:
                return FeedView(
                    "loading",
                    "filtered",
                    "Filters removed the current batch; waiting for more TV shows...",
                    timestamp=stamp,
                )
            if ctx.feed_exhausted:
                message = (
                    "Filters are hiding every TV show that is currently available."
                    if filters_active
                    else "TMDB did not return any additional TV shows."
                )
                return FeedView("empty", "filtered", message, timestamp=stamp)
            return FeedView(
                "loading",
                "filtered",
                f"Filters are hiding {len(unsuppressed)} show(s); requesting more options...",
                tone="warning",
                should_request_more=True,
                timestamp=stamp,
            )

        return FeedView(
            "list",
            "ready",
            f"Showing {len(visible)} show(s) (updated {stamp}).",
            tone="success",
            items=visible,
            timestamp=stamp,
        )


def _catalog_total(metadata: dict[str, Any] | None) -> int | None:
    if not isinstance(metadata, dict):
        return None
    for key in ("curatedCount", "totalCatalogSize", "totalCatalog", "curatedReturnedCount"):
        value = parse_float(metadata.get(key))
        if value is not None and value >= 0:
            return round(value)
    return None


def unclassified_shows(ctx: TvSessionContext) -> list[ContentItem]:
    """Every show seen this session that the user has not classified, current pool first."""
    suppressed = ctx.preferences.suppressed_ids()
    seen: set[str] = set()
    shows: list[ContentItem] = []
    for item in [*ctx.candidates, *ctx.restored.values()]:
        if item.key in seen or item.key in suppressed:
            continue
        seen.add(item.key)
        shows.append(item)
    return shows


def build_stats(ctx: TvSessionContext) -> dict[str, Any]:
    catalog_total = _catalog_total(ctx.catalog_metadata)
    if catalog_total is None:
        catalog_total = len(ctx.candidates)
    classified = len(ctx.preferences.suppressed_ids())

    shows = unclassified_shows(ctx)
    total = max(len(shows), catalog_total - classified, 0)

    buckets = [{"label": label, "count": 0} for label, _, _ in TV_RATING_BUCKETS]
    for item in shows:
        if item.vote_average is None:
            continue
        for bucket, (_, low, high) in zip(buckets, TV_RATING_BUCKETS):
            if low <= item.vote_average < high:
                bucket["count"] += 1
                break

    return {
        "totals": [{"label": "Unclassified Shows", "value": total}],
        "ratings": [{"label": b["label"], "value": b["count"]} for b in buckets],
    }
