"""
Client-side filtering of a subscribed snapshot.

Everything here is pure: the same snapshot and parameters always give the same
ordered subsequence, and absent fields never raise.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

ALL = "All"
ACTIVE = "Active"
EXPIRED = "Expired"

TextField = Union[str, Callable[[Any], Any]]


def field_value(item: Any, name: str) -> Any:
    """Read a field from a model (attribute) or a raw document (key)."""
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def _text(item: Any, field: TextField) -> Optional[str]:
    value = field(item) if callable(field) else field_value(item, field)
    return value if isinstance(value, str) else None


def matches_search(item: Any, term: str, fields: Sequence[TextField]) -> bool:
    """Case-insensitive substring match over any of `fields`."""
    needle = (term or "").strip().lower()
    if not needle:
        return True
    for field in fields:
        text = _text(item, field)
        if text is not None and needle in text.lower():
            return True
    return False


def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """Expired iff an expiry is set and it is not after `now`."""
    if expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= now


def expiry_status(item: Any, now: Optional[datetime] = None) -> str:
    return EXPIRED if is_expired(field_value(item, "expires_at"), now) else ACTIVE


def project(
    items: Iterable[Any],
    search: str = "",
    search_fields: Sequence[TextField] = (),
    category: str = ALL,
    category_field: Optional[str] = None,
    status: str = ALL,
    classify: Optional[Callable[[Any], str]] = None,
) -> List[Any]:
    """
    Filter a snapshot, keeping input order.

    `category` is an exact match on `category_field`; `status` is an exact match on
    the label `classify(item)` derives (e.g. Active/Expired). ALL disables either.
    """
    result = []
    for item in items:
        if search and not matches_search(item, search, search_fields):
            continue
        if category != ALL and category_field and field_value(item, category_field) != category:
            continue
        if status != ALL and classify is not None and classify(item) != status:
            continue
        result.append(item)
    return result


def tally(items: Iterable[Any], field: str, choices: Sequence[str]) -> Dict[str, int]:
    counts = {choice: 0 for choice in choices}
    for item in items:
        value = field_value(item, field)
        if value in counts:
            counts[value] += 1
    return counts
