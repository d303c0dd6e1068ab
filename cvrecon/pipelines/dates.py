"""Best-effort date normalization for free-form CV text.

Strategies are tried in order and the first one that yields a plausible date
wins:

1. year range ("1999-2005", "2018 - Present") -> start year
2. first bare year in the text, only inside the 1950-2030 window
3. "Month YYYY" ("Jan. 2020", "March, 1987") -> first of that month
4. ISO-like "YYYY-MM[-DD]"

The result is lossy on purpose. Because strategy 2 runs before the month and
ISO patterns, "2019-06-15" normalizes to 2019-01-01. Entries that end up
without a date are surfaced for a later re-run or a manual fix.
"""
from __future__ import annotations

import datetime as dt
import logging
import re

from .normalization import normalize_dashes, normalize_whitespace

logger = logging.getLogger(__name__)

MIN_YEAR = 1900
MAX_YEAR = 2100

# Window for the bare-year scan
SCAN_MIN_YEAR = 1950
SCAN_MAX_YEAR = 2030

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

_RANGE = re.compile(
    r"\b(\d{4})\s*-\s*(?:\d{4}|present|current|now)\b",
    re.IGNORECASE,
)
_BARE_YEAR = re.compile(r"\b(?:19|20)\d{2}\b")
_MONTH_YEAR = re.compile(
    r"\b(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?"
    r"|aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
    r"\.?\s*,?\s*(\d{4})\b",
    re.IGNORECASE,
)
_ISO = re.compile(r"\b(\d{4})-(\d{1,2})(?:-(\d{1,2}))?\b")


def _safe_date(year: int, month: int = 1, day: int = 1) -> dt.date | None:
    if not MIN_YEAR <= year <= MAX_YEAR:
        return None
    try:
        return dt.date(year, month, day)
    except ValueError:
        return None


def _from_range(text: str) -> dt.date | None:
    match = _RANGE.search(text)
    if not match:
        return None
    return _safe_date(int(match.group(1)))


def _from_first_year(text: str) -> dt.date | None:
    # Only the first year counts, even when a later one would be in window
    match = _BARE_YEAR.search(text)
    if not match:
        return None
    year = int(match.group(0))
    if not SCAN_MIN_YEAR <= year <= SCAN_MAX_YEAR:
        return None
    return _safe_date(year)


def _from_month_year(text: str) -> dt.date | None:
    match = _MONTH_YEAR.search(text)
    if not match:
        return None
    month = MONTHS[match.group(1)[:3].lower()]
    return _safe_date(int(match.group(2)), month)


def _from_iso(text: str) -> dt.date | None:
    match = _ISO.search(text)
    if not match:
        return None
    year, month, day = match.group(1), match.group(2), match.group(3)
    return _safe_date(int(year), int(month), int(day) if day else 1)


_STRATEGIES = (
    ("range", _from_range),
    ("first_year", _from_first_year),
    ("month_year", _from_month_year),
    ("iso", _from_iso),
)


def normalize_date(text: str | None) -> dt.date | None:
    """Turn a free-text date expression into a calendar date.

    Never raises: unparseable or out-of-range input gives None.

    >>> normalize_date("2018 - Present")
    datetime.date(2018, 1, 1)
    >>> normalize_date("1899") is None
    True
    """
    if not text:
        return None

    normalized = normalize_whitespace(normalize_dashes(text))
    if not normalized:
        return None

    for name, strategy in _STRATEGIES:
        result = strategy(normalized)
        if result is not None:
            logger.debug(f"Date '{normalized[:60]}' -> {result} via {name}")
            return result
    return None


def resolve_entry_date(
    raw_date_text: str | None,
    title: str | None = None,
    description: str | None = None,
) -> dt.date | None:
    """Date for an extracted entry.

    The model's date text is used first; when it yields nothing the title
    and description are scanned together.
    """
    date = normalize_date(raw_date_text)
    if date is not None:
        return date
    combined = " ".join(part for part in (title, description) if part)
    return normalize_date(combined)
