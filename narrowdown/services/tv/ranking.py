import math
import time
from collections.abc import Callable, Collection, Sequence
from datetime import datetime, timezone

from narrowdown.core.config import QualityTier, settings
from narrowdown.core.constants import CONFIDENCE_VOTES, NEUTRAL_AVERAGE_PRIOR, RECENCY_WINDOW_DAYS
from narrowdown.models.tv import ContentItem

SECONDS_PER_DAY = 24 * 60 * 60


def parse_release_timestamp(value: str) -> float | None:
    """Epoch seconds of an ISO date (`YYYY`, `YYYY-MM-DD` or a full timestamp), None when unparseable."""
    text = (value or "").strip()
    if not text:
        return None
    if len(text) == 4 and text.isdigit():
        text = f"{text}-01-01"
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


class PriorityRanker:
    """
    Orders candidates by a composite priority.

    Candidates first go through the quality tiers, strictest first; the first tier with at
    least `min_results` members is ranked. When no tier is large enough every candidate
    with a known average and vote count is ranked instead.

    priority = 0.3 * adjusted_average + 0.5 * sqrt(vote_volume) + 0.2 * recency
    """

    def __init__(
        self,
        tiers: Sequence[QualityTier] | None = None,
        min_results: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.tiers = list(tiers if tiers is not None else settings.TV_QUALITY_TIERS)
        self.min_results = min_results if min_results is not None else settings.TV_MIN_PRIORITY_RESULTS
        self.clock = clock

    @staticmethod
    def meets_tier(item: ContentItem, tier: QualityTier) -> bool:
        average = item.vote_average if item.vote_average is not None else 0
        votes = item.vote_count if item.vote_count is not None else 0
        return average >= tier.min_average and votes >= tier.min_votes

    def select_candidates(self, items: Sequence[ContentItem]) -> list[ContentItem]:
        if not items:
            return []
        for tier in self.tiers:
            qualified = [item for item in items if self.meets_tier(item, tier)]
            if len(qualified) >= self.min_results:
                return qualified
        # Deliberately no "best non-empty tier" step: a tier below min_results never wins,
        # so three candidates of mixed quality are all ranked rather than only the best one.
        return [item for item in items if item.vote_average is not None and item.vote_count is not None]

    def priority(self, item: ContentItem, max_votes: int, now: float) -> float:
        raw_average = max(0.0, min(10.0, item.vote_average or 0.0)) / 10
        votes = max(0, item.vote_count or 0)
        vote_volume = math.log10(votes + 1) / math.log10(max_votes + 1)

        confidence = min(1.0, votes / CONFIDENCE_VOTES)
        adjusted_average = raw_average * confidence + NEUTRAL_AVERAGE_PRIOR * (1 - confidence)

        recency = 0.5
        released = parse_release_timestamp(item.release_date)
        if released is not None:
            age = now - released
            window = RECENCY_WINDOW_DAYS * SECONDS_PER_DAY
            if age <= 0:
                recency = 1.0
            elif age >= window:
                recency = 0.0
            else:
                recency = 1 - age / window

        return adjusted_average * 0.3 + math.sqrt(max(0.0, vote_volume)) * 0.5 + recency * 0.2

    def rank(self, items: Sequence[ContentItem], keep: Collection[str] = ()) -> list[ContentItem]:
        """Rank the tier selection. Items whose key is in `keep` are ranked even when no tier admits them."""
        candidates = self.select_candidates(items)
        if keep:
            selected = {item.key for item in candidates}
            candidates += [item for item in items if item.key in keep and item.key not in selected]
        if not candidates:
            return []
        max_votes = max([max(0, item.vote_count or 0) for item in candidates] + [1])
        now = self.clock()
        scored = [(self.priority(item, max_votes, now), item) for item in candidates]
        # sorted() is stable, so equal priorities keep their input order
        return [item for _, item in sorted(scored, key=lambda pair: pair[0], reverse=True)]
