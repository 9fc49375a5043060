"""
Core constants used across the application. Keep these simple and documented.
"""

# Feed engine
DEFAULT_INTEREST: int = 3
INITIAL_DISCOVER_PAGES: int = 3
MAX_DISCOVER_PAGES: int = 10
MAX_DISCOVER_PAGES_LIMIT: int = 30
MAX_CREDIT_REQUESTS: int = 20
NEUTRAL_AVERAGE_PRIOR: float = 0.6
CONFIDENCE_VOTES: int = 150
RECENCY_WINDOW_DAYS: int = 365

# Discover cursor history
TMDB_DISCOVER_HISTORY_LIMIT: int = 50
TMDB_DISCOVER_STATE_VERSION: int = 1
TMDB_DISCOVER_STATE_FIELD: str = "tmdbTvDiscoverState"

# Anonymous (not signed-in) storage keys
LOCAL_PREFS_KEY: str = "tvPreferences"
LOCAL_DISCOVER_STATE_KEY: str = "tvDiscoverState"
LOCAL_FEED_FILTERS_KEY: str = "tvFeedFilters"

# Genre selection sentinels for FeedFilterState.selectedGenres
GENRE_SELECTION_ALL: str = "all"
GENRE_SELECTION_NONE: str = "none"

# Server-side TV catalog (/api/tv)
TV_DISCOVER_CACHE_COLLECTION: str = "tvDiscoverCache"
TV_DISCOVER_DEFAULT_LIMIT: int = 20
TV_DISCOVER_MAX_LIMIT: int = 60
TV_DISCOVER_MAX_PAGES: int = 5

# Critic scores
OMDB_BASE_URL: str = "https://www.omdbapi.com/"
OMDB_CACHE_COLLECTION: str = "omdbRatings"
CRITIC_SCORE_TYPE: str = "series"

TV_RATING_BUCKETS: list[tuple[str, float, float]] = [
    ("9-10", 9, float("inf")),
    ("8-8.9", 8, 9),
    ("7-7.9", 7, 8),
    ("6-6.9", 6, 7),
    ("< 6", float("-inf"), 6),
]
