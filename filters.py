"""
filters.py – list helpers shared by the admin dashboards and the materials browser

Dashboard filters treat ``"all"`` (or an empty value) as "no filter", the same
convention the select boxes in the UI use.
"""

from datetime import datetime, timezone
from typing import Any, Iterable, Optional


def is_unset(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, str) and value.lower() == "all")


def as_list(data: Any, *keys: str) -> list:
    """Backend list endpoints return either a bare list or ``{<key>: [...]}``."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in keys + ("items", "results", "data"):
            value = data.get(key)
            if isinstance(value, list):
                return value
    return []


def split_csv(value: Any) -> list[str]:
    """``"a, b,,c"`` → ``["a", "b", "c"]``; lists pass through trimmed."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        parts = value
    else:
        parts = str(value).split(",")
    return [str(p).strip() for p in parts if str(p).strip()]


def text_matches(term: Optional[str], *values: Any) -> bool:
    """Case-insensitive substring match of *term* against strings or string lists."""
    if not term:
        return True
    needle = term.lower()
    for value in values:
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            if any(needle in str(v).lower() for v in value):
                return True
        elif needle in str(value).lower():
            return True
    return False


def field_equals(item: dict, field: str, wanted: Any) -> bool:
    return is_unset(wanted) or item.get(field) == wanted


def field_contains(item: dict, field: str, wanted: Any) -> bool:
    return is_unset(wanted) or wanted in (item.get(field) or [])


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def as_utc(value: datetime) -> datetime:
    """Naive timestamps from the backend are UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def paginate(items: list, offset: int, limit: int) -> dict:
    """Slice for infinite scroll: the client asks for ``next_offset`` until ``has_more`` is false."""
    offset = max(0, offset)
    page = items[offset:offset + limit]
    end = offset + len(page)
    has_more = end < len(items)
    return {
        "items":       page,
        "total":       len(items),
        "offset":      offset,
        "limit":       limit,
        "has_more":    has_more,
        "next_offset": end if has_more else None,
    }


def count_by(items: Iterable[dict], field: str) -> dict[str, int]:
    counts: dict[str, int] = {}
    for item in items:
        key = str(item.get(field) or "unknown")
        counts[key] = counts.get(key, 0) + 1
    return counts
