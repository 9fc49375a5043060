import math
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from narrowdown.core.constants import (
    CRITIC_SCORE_TYPE,
    DEFAULT_INTEREST,
    GENRE_SELECTION_ALL,
    GENRE_SELECTION_NONE,
    MAX_DISCOVER_PAGES,
    MAX_DISCOVER_PAGES_LIMIT,
)
from narrowdown.shared.parsing import (
    clamp,
    dedupe,
    extract_year,
    parse_float,
    parse_imdb_rating,
    parse_int,
    parse_name_list,
    parse_percent,
    parse_score,
)

MAX_TOP_CAST = 5
MAX_DIRECTORS = 3

# Values written by older clients for the genre sentinels
LEGACY_GENRE_SENTINELS = {"__all__": GENRE_SELECTION_ALL, "__none__": GENRE_SELECTION_NONE}


def now_ms() -> int:
    return int(time.time() * 1000)


def _first_present(source: dict, *keys: str) -> Any:
    for key in keys:
        value = source.get(key)
        if value is not None:
            return value
    return None


def _coalesce(*values: Any) -> Any:
    return next((value for value in values if value is not None), None)


def _clean_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _normalize_fetched_at(value: Any) -> str:
    parsed = None
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            parsed = None
    elif isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            parsed = None
    if parsed is None:
        parsed = datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class CriticScores(BaseModel):
    """Critic ratings attached to a show. Missing values stay null."""

    model_config = ConfigDict(populate_by_name=True)

    rotten_tomatoes: int | None = Field(default=None, alias="rottenTomatoes")
    metacritic: int | None = None
    imdb: float | None = None
    source: str = "omdb"
    fetched_at: str | None = Field(default=None, alias="fetchedAt")
    type: str = CRITIC_SCORE_TYPE
    imdb_id: str | None = Field(default=None, alias="imdbId")
    title: str | None = None
    year: str | None = None

    @classmethod
    def from_raw(cls, raw: Any) -> "CriticScores | None":
        """Accepts the rating endpoint payload, a stored snapshot, or a bare OMDb-like dict."""
        if not isinstance(raw, dict):
            return None
        ratings = raw.get("ratings") if isinstance(raw.get("ratings"), dict) else raw
        metadata = raw.get("metadata") if isinstance(raw.get("metadata"), dict) else {}

        rotten = parse_percent(
            _first_present(ratings, "rottenTomatoes", "rotten_tomatoes", "tomatoMeter", "tomato_meter", "rotten", "tomato")
        )
        metacritic = parse_score(
            _coalesce(
                _first_present(ratings, "metacritic", "Metascore", "meta"),
                _first_present(raw, "Metascore", "metacritic"),
            )
        )
        imdb = parse_imdb_rating(
            _coalesce(
                _first_present(ratings, "imdb", "imdbRating"),
                raw.get("imdbRating"),
                _first_present(ratings, "imdb_score", "imdbScore"),
            )
        )
        fetched_source = _coalesce(
            _first_present(raw, "fetchedAt", "fetched_at"),
            _first_present(metadata, "fetchedAt", "fetched_at"),
            _first_present(ratings, "fetchedAt", "fetched_at"),
        )

        return cls(
            rotten_tomatoes=rotten,
            metacritic=metacritic,
            imdb=imdb,
            source=_clean_str(raw.get("source")) or _clean_str(raw.get("provider")) or "omdb",
            fetched_at=_normalize_fetched_at(fetched_source),
            type=_clean_str(raw.get("type")) or CRITIC_SCORE_TYPE,
            imdb_id=_clean_str(raw.get("imdbId")) or _clean_str(raw.get("imdbID")),
            title=_clean_str(raw.get("title")) or _clean_str(raw.get("Title")),
            year=_clean_str(raw.get("year")) or _clean_str(raw.get("Year")),
        )

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)


class ContentItem(BaseModel):
    """A discoverable TV show, decoded from TMDB results, catalog rows, or stored snapshots."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    title: str = ""
    release_date: str = ""
    poster_path: str = ""
    overview: str = ""
    vote_average: float | None = None
    vote_count: int | None = None
    genre_ids: list[int] = Field(default_factory=list)
    top_cast: list[str] = Field(default_factory=list, alias="topCast")
    directors: list[str] = Field(default_factory=list)
    critic_scores: CriticScores | None = Field(default=None, alias="criticScores")
    imdb_id: str | None = None

    @classmethod
    def from_raw(cls, raw: Any) -> "ContentItem | None":
        """Decode any upstream or stored show shape. Returns None when there is no usable id."""
        if isinstance(raw, ContentItem):
            return raw.model_copy(deep=True)
        if not isinstance(raw, dict):
            return None
        item_id = parse_int(raw.get("id"))
        if item_id is None:
            return None

        genre_ids: list[int] = []
        if isinstance(raw.get("genre_ids"), list):
            genre_ids.extend(gid for gid in (parse_int(v) for v in raw["genre_ids"]) if gid is not None)
        if isinstance(raw.get("genres"), list):
            for entry in raw["genres"]:
                gid = parse_int(entry.get("id")) if isinstance(entry, dict) else None
                if gid is not None:
                    genre_ids.append(gid)

        average = raw.get("vote_average")
        if average is None:
            average = raw.get("score")
        votes = raw.get("vote_count")
        if votes is None:
            votes = raw.get("voteCount")

        title = _clean_str(raw.get("title")) or _clean_str(raw.get("name")) or ""
        release = (
            _clean_str(raw.get("release_date"))
            or _clean_str(raw.get("first_air_date"))
            or _clean_str(raw.get("releaseDate"))
            or ""
        )

        return cls(
            id=item_id,
            title=title,
            release_date=release,
            poster_path=_clean_str(raw.get("poster_path")) or "",
            overview=_clean_str(raw.get("overview")) or "",
            vote_average=parse_float(average),
            vote_count=parse_int(votes),
            genre_ids=dedupe(genre_ids),
            top_cast=dedupe(parse_name_list(_first_present(raw, "topCast", "top_cast")))[:MAX_TOP_CAST],
            directors=dedupe(parse_name_list(raw.get("directors")))[:MAX_DIRECTORS],
            critic_scores=CriticScores.from_raw(_first_present(raw, "criticScores", "critic_scores")),
            imdb_id=_clean_str(raw.get("imdb_id")) or _clean_str(raw.get("imdbId")),
        )

    @property
    def key(self) -> str:
        return str(self.id)

    @property
    def release_year(self) -> int | None:
        return extract_year(self.release_date)

    @property
    def genre_id_set(self) -> set[int]:
        return set(self.genre_ids)

    @property
    def has_credits(self) -> bool:
        return bool(self.top_cast) and bool(self.directors)

    def apply_credits(self, credits: Any) -> None:
        """Backfill cast and directors from a TMDB credits payload. Empty lookups never erase."""
        if not isinstance(credits, dict):
            return
        cast = credits.get("cast") if isinstance(credits.get("cast"), list) else []
        crew = credits.get("crew") if isinstance(credits.get("crew"), list) else []

        top_cast = [
            person["name"].strip()
            for person in cast[:MAX_TOP_CAST]
            if isinstance(person, dict) and isinstance(person.get("name"), str) and person["name"].strip()
        ]
        directors = [
            person["name"].strip()
            for person in crew
            if isinstance(person, dict)
            and person.get("job") == "Director"
            and isinstance(person.get("name"), str)
            and person["name"].strip()
        ]
        if top_cast:
            self.top_cast = dedupe(top_cast)[:MAX_TOP_CAST]
        if directors:
            self.directors = dedupe(directors)[:MAX_DIRECTORS]

    def attach_critic_scores(self, scores: CriticScores | None) -> None:
        if scores is not None:
            self.critic_scores = scores

    def snapshot(self) -> "ContentItem":
        return self.model_copy(deep=True)

    def to_document(self) -> dict:
        data = self.model_dump(by_alias=True)
        if data.get("criticScores") is None:
            data.pop("criticScores", None)
        if data.get("imdb_id") is None:
            data.pop("imdb_id", None)
        return data


class PreferenceStatus(str, Enum):
    INTERESTED = "interested"
    WATCHED = "watched"
    NOT_INTERESTED = "notInterested"


# Any classification removes a show from the undecided feed
SUPPRESSED_STATUSES = frozenset(
    {PreferenceStatus.WATCHED, PreferenceStatus.NOT_INTERESTED, PreferenceStatus.INTERESTED}
)


def clamp_user_rating(value: Any) -> float | None:
    number = parse_float(value)
    if number is None:
        return None
    return round(clamp(number, 0, 10) * 2) / 2


class PreferenceEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: PreferenceStatus
    interest: int | None = None
    user_rating: float | None = Field(default=None, alias="userRating")
    movie: ContentItem | None = None
    updated_at: int = Field(default_factory=now_ms, alias="updatedAt")

    @classmethod
    def from_document(cls, raw: Any) -> "PreferenceEntry | None":
        if not isinstance(raw, dict):
            return None
        try:
            status = PreferenceStatus(raw.get("status"))
        except ValueError:
            return None
        entry = cls(status=status, updated_at=parse_int(raw.get("updatedAt")) or 0)
        if status == PreferenceStatus.NOT_INTERESTED:
            return entry
        entry.movie = ContentItem.from_raw(raw.get("movie"))
        if status == PreferenceStatus.INTERESTED:
            interest = parse_int(raw.get("interest"))
            entry.interest = int(clamp(interest, 1, 5)) if interest is not None else DEFAULT_INTEREST
        elif status == PreferenceStatus.WATCHED:
            entry.user_rating = clamp_user_rating(raw.get("userRating"))
        return entry

    def to_document(self) -> dict:
        data: dict[str, Any] = {"status": self.status.value, "updatedAt": self.updated_at}
        if self.interest is not None:
            data["interest"] = self.interest
        if self.user_rating is not None:
            data["userRating"] = self.user_rating
        if self.movie is not None:
            data["movie"] = self.movie.to_document()
        return data


class DiscoverCursor(BaseModel):
    """Paging progress of one query signature."""

    model_config = ConfigDict(populate_by_name=True)

    next_page: int = Field(default=1, alias="nextPage")
    allowed_pages: int = Field(default=MAX_DISCOVER_PAGES, alias="allowedPages")
    total_pages: int | None = Field(default=None, alias="totalPages")
    exhausted: bool = False
    updated_at: int = Field(default_factory=now_ms, alias="updatedAt")
    last_attempt: int | None = Field(default=None, alias="lastAttempt")

    @classmethod
    def normalize(cls, raw: Any) -> "DiscoverCursor | None":
        if isinstance(raw, DiscoverCursor):
            raw = raw.to_document()
        if not isinstance(raw, dict):
            return None
        next_raw = parse_float(raw.get("nextPage"))
        allowed_raw = parse_float(raw.get("allowedPages"))
        total_raw = parse_float(raw.get("totalPages"))
        updated_raw = parse_float(_first_present(raw, "updatedAt", "lastAttempt"))
        attempt_raw = parse_float(raw.get("lastAttempt"))

        next_page = math.floor(next_raw) if next_raw and next_raw > 0 else 1
        allowed = math.floor(allowed_raw) if allowed_raw and allowed_raw > 0 else MAX_DISCOVER_PAGES
        return cls(
            next_page=max(1, next_page),
            allowed_pages=min(MAX_DISCOVER_PAGES_LIMIT, max(MAX_DISCOVER_PAGES, allowed, next_page)),
            total_pages=math.floor(total_raw) if total_raw and total_raw >= 1 else None,
            exhausted=bool(raw.get("exhausted")),
            updated_at=math.floor(updated_raw) if updated_raw and updated_raw > 0 else now_ms(),
            last_attempt=math.floor(attempt_raw) if attempt_raw and attempt_raw > 0 else None,
        )

    def same_progress(self, other: "DiscoverCursor | None") -> bool:
        return (
            other is not None
            and self.next_page == other.next_page
            and self.allowed_pages == other.allowed_pages
            and self.total_pages == other.total_pages
            and self.exhausted == other.exhausted
        )

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)


def sanitize_filter_value(name: str, raw: Any) -> str:
    value = "" if raw is None else str(raw).strip()

    if name == "selectedGenres":
        if not value:
            return GENRE_SELECTION_ALL
        value = LEGACY_GENRE_SENTINELS.get(value, value)
        if value in (GENRE_SELECTION_ALL, GENRE_SELECTION_NONE):
            return value
        numbers = [n for n in (parse_int(part) for part in value.split(",")) if n is not None]
        if not numbers:
            return GENRE_SELECTION_NONE
        return ",".join(str(n) for n in sorted(set(numbers)))

    if not value:
        return ""
    if name == "minRating":
        number = parse_float(value.replace(",", ".", 1))
        if number is None:
            return ""
        clamped = clamp(number, 0, 10)
        return str(int(clamped)) if float(clamped).is_integer() else str(clamped)
    if name == "minVotes":
        number = parse_int(value)
        return "" if number is None else str(max(0, number))
    if name in ("startYear", "endYear"):
        number = parse_int(value)
        return "" if number is None else str(number)
    return value


def _bounded_float(value: str, low: float, high: float) -> float | None:
    number = parse_float(value.replace(",", ".", 1)) if value else None
    return None if number is None else clamp(number, low, high)


def _bounded_int(value: str, low: float, high: float) -> int | None:
    number = parse_int(value) if value else None
    return None if number is None else int(clamp(number, low, high))


class FeedFilterState(BaseModel):
    """User constraints on the undecided feed. Every field is sanitised on construction."""

    model_config = ConfigDict(populate_by_name=True)

    min_rating: str = Field(default="", alias="minRating")
    min_votes: str = Field(default="", alias="minVotes")
    start_year: str = Field(default="", alias="startYear")
    end_year: str = Field(default="", alias="endYear")
    selected_genres: str = Field(default=GENRE_SELECTION_ALL, alias="selectedGenres")

    @field_validator("*", mode="before")
    @classmethod
    def _sanitize(cls, value: Any, info: ValidationInfo) -> str:
        alias = cls.model_fields[info.field_name].alias or info.field_name
        return sanitize_filter_value(alias, value)

    @classmethod
    def from_document(cls, raw: Any) -> "FeedFilterState":
        if not isinstance(raw, dict):
            return cls()
        known = {name: raw.get(name) for name in ("minRating", "minVotes", "startYear", "endYear", "selectedGenres")}
        return cls.model_validate({k: v for k, v in known.items() if v is not None})

    def updated(self, **changes: Any) -> "FeedFilterState":
        """Copy with some fields replaced, keyed by either the python or the stored name."""
        data = self.to_document()
        for key, value in changes.items():
            field = FeedFilterState.model_fields.get(key)
            data[field.alias if field and field.alias else key] = value
        return FeedFilterState.from_document(data)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)

    @property
    def rating_floor(self) -> float | None:
        return _bounded_float(self.min_rating, 0, 10)

    @property
    def votes_floor(self) -> int | None:
        return _bounded_int(self.min_votes, 0, math.inf)

    @property
    def year_bounds(self) -> tuple[int | None, int | None]:
        start = _bounded_int(self.start_year, 1800, 3000)
        end = _bounded_int(self.end_year, 1800, 3000)
        if start is not None and end is not None and end < start:
            start, end = end, start
        return start, end

    @property
    def genre_mode(self) -> str:
        if self.selected_genres == GENRE_SELECTION_ALL:
            return "all"
        if self.selected_genres == GENRE_SELECTION_NONE:
            return "none"
        return "custom"

    @property
    def selected_genre_ids(self) -> set[int]:
        if self.genre_mode != "custom":
            return set()
        return {n for n in (parse_int(part) for part in self.selected_genres.split(",")) if n is not None}
