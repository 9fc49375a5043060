import math
import re
from typing import Any

_FLOAT_PREFIX = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")
_INT_PREFIX = re.compile(r"^[+-]?\d+")
_YEAR_PREFIX = re.compile(r"^(\d{4})")


def parse_float(value: Any) -> float | None:
    """Lenient float parse: numbers pass through, strings use their leading numeric prefix.

    Returns None for empty, non-numeric or non-finite input.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    text = str(value).strip()
    match = _FLOAT_PREFIX.match(text)
    if not match:
        return None
    number = float(match.group(0))
    return number if math.isfinite(number) else None


def parse_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return math.trunc(value) if math.isfinite(value) else None
    match = _INT_PREFIX.match(str(value).strip())
    return int(match.group(0)) if match else None


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def extract_year(value: Any) -> int | None:
    if not isinstance(value, str):
        return None
    match = _YEAR_PREFIX.match(value.strip())
    return int(match.group(1)) if match else None


def parse_name_list(value: Any) -> list[str]:
    """Names from a list of strings, a list of {name} objects, or a comma separated string."""
    if not value:
        return []
    if isinstance(value, str):
        return [name.strip() for name in value.split(",") if name.strip()]
    if isinstance(value, (list, tuple)):
        names = []
        for entry in value:
            if isinstance(entry, str):
                name = entry.strip()
            elif isinstance(entry, dict) and isinstance(entry.get("name"), str):
                name = entry["name"].strip()
            else:
                name = ""
            if name:
                names.append(name)
        return names
    return []


def dedupe(values: list) -> list:
    seen = set()
    result = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


def parse_id_set(raw: Any) -> set[str]:
    """Split comma, pipe or whitespace separated ids (or a list of such strings) into a set."""
    ids: set[str] = set()
    values = raw if isinstance(raw, (list, tuple, set)) else [raw]
    for value in values:
        if value is None or value == "":
            continue
        for part in re.split(r"[,|\s]+", str(value)):
            part = part.strip()
            if part:
                ids.add(part)
    return ids


def _parse_rating_text(value: Any) -> float | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() == "n/a":
        return None
    return parse_float(text)


def parse_percent(value: Any) -> int | None:
    """'87%' -> 87. Clamped to 0..100."""
    if value is None:
        return None
    text = str(value).strip()
    if text.endswith("%"):
        text = text[:-1]
    number = _parse_rating_text(text)
    if number is None:
        return None
    return int(clamp(round(number), 0, 100))


def parse_score(value: Any) -> int | None:
    """Metascore style 0..100 integer."""
    number = _parse_rating_text(value)
    if number is None:
        return None
    return int(clamp(round(number), 0, 100))


def parse_imdb_rating(value: Any) -> float | None:
    """IMDb style 0.0..10.0, one decimal."""
    number = _parse_rating_text(value)
    if number is None:
        return None
    return round(clamp(number, 0, 10) * 10) / 10
