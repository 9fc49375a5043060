from narrowdown.shared.parsing import parse_int

# Used when neither the catalog nor the genre upstream returned a list
series_genres = {
    10759: "Action & Adventure",
    16: "Animation",
    35: "Comedy",
    80: "Crime",
    99: "Documentary",
    18: "Drama",
    10751: "Family",
    10762: "Kids",
    9648: "Mystery",
    10763: "News",
    10764: "Reality",
    10765: "Sci-Fi & Fantasy",
    10766: "Soap",
    10767: "Talk",
    10768: "War & Politics",
    37: "Western",
}


def normalize_genre_map(raw) -> dict[int, str] | None:
    """
    Accepts `[{id, name}, ...]` (TMDB genre list) or `{id: name}` (catalog genreMap).
    Returns None when nothing usable is present.
    """
    entries: dict[int, str] = {}
    if isinstance(raw, dict) and isinstance(raw.get("genres"), list):
        raw = raw["genres"]
    if isinstance(raw, list):
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            genre_id = parse_int(entry.get("id"))
            name = entry.get("name").strip() if isinstance(entry.get("name"), str) else ""
            if genre_id is not None and name:
                entries[genre_id] = name
    elif isinstance(raw, dict):
        for key, value in raw.items():
            genre_id = parse_int(key)
            name = value.strip() if isinstance(value, str) else ""
            if genre_id is not None and name:
                entries[genre_id] = name
    return entries or None


def normalize_credits_map(raw) -> dict[str, dict] | None:
    """`{id: {cast, crew}}` keeping only entries with at least one person."""
    if not isinstance(raw, dict):
        return None
    normalized = {}
    for key, credits in raw.items():
        if not isinstance(credits, dict):
            continue
        cast = credits.get("cast") if isinstance(credits.get("cast"), list) else []
        crew = credits.get("crew") if isinstance(credits.get("crew"), list) else []
        if not cast and not crew:
            continue
        normalized[str(key)] = {"cast": cast, "crew": crew}
    return normalized or None
