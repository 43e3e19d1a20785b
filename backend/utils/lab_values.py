"""Helpers for the text-typed bloodwork values.

Marker values and reference ranges are stored exactly as the lab printed them
("5.4", "<1.0", "1,200", "positive"). These helpers give callers a numeric view
when one exists without forcing it onto the stored column.
"""
import re
from datetime import date, datetime

_NUMBER_RE = re.compile(r"[-+]?\d[\d,]*(?:\.\d+)?|[-+]?\.\d+")
_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%d.%m.%Y", "%b %d, %Y", "%B %d, %Y", "%Y/%m/%d")


def parse_marker_value(value: str | int | float | None) -> float | None:
    """Return the first number in ``value``, or None for qualitative results.

    Comparators are kept as the bare bound: "<1.0" -> 1.0, ">= 60" -> 60.0.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    match = _NUMBER_RE.search(text)
    if not match:
        return None
    try:
        return float(match.group(0).replace(",", ""))
    except ValueError:
        return None


def is_outside_range(value: str | None, min_range: str | None, max_range: str | None) -> bool | None:
    """Compare a marker against its reference range.

    Returns None when the value or both bounds cannot be read as numbers.
    """
    numeric = parse_marker_value(value)
    low = parse_marker_value(min_range)
    high = parse_marker_value(max_range)
    if numeric is None or (low is None and high is None):
        return None
    if low is not None and numeric < low:
        return True
    if high is not None and numeric > high:
        return True
    return False


def parse_result_date(value: str | date | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None
