import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from narrowdown.models.tv import ContentItem, CriticScores, FeedFilterState
from narrowdown.services.tv.discover_state import DiscoverHistory
from narrowdown.services.tv.preferences import PreferenceStore
from narrowdown.services.tv.sources import DiscoverySources


class AttemptSuperseded(Exception):
    """A newer load attempt started; the current one must stop and discard its result."""


@dataclass(frozen=True)
class AttemptToken:
    number: int
    counter: "AttemptCounter"

    @property
    def is_current(self) -> bool:
        return self.counter.current == self.number

    def ensure_current(self) -> None:
        if not self.is_current:
            raise AttemptSuperseded(f"load attempt {self.number} superseded by {self.counter.current}")


class AttemptCounter:
    def __init__(self) -> None:
        self.current = 0

    def next(self) -> AttemptToken:
        self.current += 1
        return AttemptToken(self.current, self)

    def invalidate(self) -> None:
        """Supersede whatever attempt is in flight without starting a new one."""
        self.current += 1


@dataclass
class FeedStatus:
    message: str = ""
    tone: str = "info"
    spinner: bool = False


@dataclass
class CriticScoreState:
    status: str = "idle"  # idle | loading | loaded | error
    data: CriticScores | None = None
    error: str | None = None


@dataclass
class TvSessionContext:
    """Everything one user's feed pipeline reads and mutates."""

    preferences: PreferenceStore
    sources: DiscoverySources
    history: DiscoverHistory
    user_id: str | None = None
    filters: FeedFilterState = field(default_factory=FeedFilterState)
    candidates: list[ContentItem] = field(default_factory=list)
    # shows whose status was cleared this session, by id; counted in stats
    restored: dict[str, ContentItem] = field(default_factory=dict)
    feed_exhausted: bool = False
    genre_map: dict[int, str] = field(default_factory=dict)
    catalog_metadata: dict[str, Any] | None = None
    catalog_unavailable: bool = False
    attempts: AttemptCounter = field(default_factory=AttemptCounter)
    status: FeedStatus = field(default_factory=FeedStatus)
    critic_states: dict[str, CriticScoreState] = field(default_factory=dict)
    clock: Callable[[], float] = time.time

    def format_time(self, timestamp: float | None = None) -> str:
        moment = datetime.fromtimestamp(timestamp if timestamp is not None else self.clock())
        return moment.strftime("%H:%M:%S")

    def set_status(self, message: str, tone: str = "info", spinner: bool = False) -> None:
        self.status = FeedStatus(message=message, tone=tone, spinner=spinner)
