from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from narrowdown.core.constants import GENRE_SELECTION_ALL, GENRE_SELECTION_NONE
from narrowdown.models.tv import ContentItem, FeedFilterState
from narrowdown.shared.parsing import parse_int


@dataclass(frozen=True)
class GenreQuery:
    block_all: bool = False
    with_genres: str | None = None


def has_active_filters(filters: FeedFilterState) -> bool:
    if any(value.strip() for value in (filters.min_rating, filters.min_votes, filters.start_year, filters.end_year)):
        return True
    return filters.genre_mode != "all"


def build_genre_query(filters: FeedFilterState) -> GenreQuery:
    """Discovery parameters for the genre selection: `with_genres` joined by `|`, or block everything."""
    mode = filters.genre_mode
    if mode == "all":
        return GenreQuery()
    ids = sorted(filters.selected_genre_ids)
    if mode == "none" or not ids:
        return GenreQuery(block_all=True)
    return GenreQuery(with_genres="|".join(str(gid) for gid in ids))


def normalize_genre_selection(values: Iterable[Any], genre_map: dict[int, str]) -> str:
    """
    Serialise a set of selected genre ids against the available genres: every genre
    selected collapses to `all`, no valid genre to `none`.
    """
    available = sorted(genre_map)
    if not available:
        return GENRE_SELECTION_ALL
    available_set = set(available)
    selected = {gid for gid in (parse_int(v) for v in values) if gid is not None and gid in available_set}
    if not selected:
        return GENRE_SELECTION_NONE
    if len(selected) == len(available):
        return GENRE_SELECTION_ALL
    return ",".join(str(gid) for gid in sorted(selected))


def reconcile_genre_selection(filters: FeedFilterState, genre_map: dict[int, str]) -> FeedFilterState:
    """Drop selected ids that are no longer offered. Returns the same object when nothing changes."""
    if filters.genre_mode != "custom" or not genre_map:
        return filters
    current = filters.selected_genre_ids
    value = normalize_genre_selection(current, genre_map)
    if value == filters.selected_genres:
        return filters
    return filters.updated(selected_genres=value)


def describe_genre_selection(filters: FeedFilterState, genre_map: dict[int, str]) -> str:
    mode = filters.genre_mode
    if mode == "all":
        return "All genres selected"
    ids = sorted(filters.selected_genre_ids)
    if mode == "none" or not ids:
        return "No genres selected"
    names = [genre_map.get(gid) or f"Genre {gid}" for gid in ids]
    if len(names) <= 3:
        return ", ".join(names)
    return f"{len(names)} genres selected"


class FeedFilter:
    """Narrows a ranked candidate list by the user's constraints and classifications. No side effects."""

    @staticmethod
    def apply(
        candidates: Sequence[ContentItem],
        filters: FeedFilterState,
        suppressed: Iterable[str] = (),
    ) -> list[ContentItem]:
        if not candidates or filters.genre_mode == "none":
            return []

        suppressed_ids = {str(s) for s in suppressed}
        min_rating = filters.rating_floor
        min_votes = filters.votes_floor
        start_year, end_year = filters.year_bounds
        selected = filters.selected_genre_ids
        filter_by_genre = filters.genre_mode == "custom" and bool(selected)

        def keep(item: ContentItem) -> bool:
            if item.key in suppressed_ids:
                return False
            if min_rating is not None and (item.vote_average is None or item.vote_average < min_rating):
                return False
            if min_votes is not None and (item.vote_count is None or item.vote_count < min_votes):
                return False
            if start_year is not None or end_year is not None:
                year = item.release_year
                if year is None:
                    return False
                if start_year is not None and year < start_year:
                    return False
                if end_year is not None and year > end_year:
                    return False
            if filter_by_genre:
                genres = item.genre_id_set
                # at least one selected genre and nothing outside the selection
                if not genres & selected or genres - selected:
                    return False
            return True

        return [item for item in candidates if keep(item)]
