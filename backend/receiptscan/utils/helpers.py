"""Miscellaneous parsing helpers for inference output."""

from __future__ import annotations

import datetime as dt
import re
import unicodedata
from typing import Any, Iterable, Optional

# Gregorian year of each era's first year (元年)
_ERA_OFFSETS = {
    "令和": 2018,
    "平成": 1988,
    "昭和": 1925,
    "R": 2018,
    "H": 1988,
    "S": 1925,
}

_ERA_DATE_RE = re.compile(
    r"(?P<era>令和|平成|昭和|[RHS])\s*(?P<year>元|\d{1,2})\s*[年./\-]\s*"
    r"(?P<month>\d{1,2})\s*[月./\-]\s*(?P<day>\d{1,2})\s*日?",
    re.IGNORECASE,
)
_WESTERN_DATE_RE = re.compile(
    r"(?P<year>\d{4})\s*[年./\-]\s*(?P<month>\d{1,2})\s*[月./\-]\s*(?P<day>\d{1,2})\s*日?"
)
_AMOUNT_STRIP_RE = re.compile(r"[,\s¥￥円$]|JPY", re.IGNORECASE)
# "1,200-" and "1,200円(税込)" style endings on printed totals
_AMOUNT_SUFFIX_RE = re.compile(r"(?<=\d)(?:-|\(税込\)|税込)$")


def _safe_date(year: int, month: int, day: int) -> Optional[dt.date]:
    try:
        return dt.date(year, month, day)
    except ValueError:
        return None


def parse_receipt_date(value: Any) -> Optional[dt.date]:
    """Parse a receipt date into a Gregorian :class:`date`.

    Accepts ``date``/``datetime`` objects, ISO strings, ``YYYY/MM/DD``
    style strings and Japanese era dates such as ``令和7年3月4日``,
    ``平成元年1月8日`` or ``R7.3.4``. Full-width digits are folded
    first. Returns ``None`` when nothing date-like is found.
    """
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    text = unicodedata.normalize("NFKC", str(value)).strip()
    if not text:
        return None

    match = _ERA_DATE_RE.search(text)
    if match:
        era = match.group("era")
        offset = _ERA_OFFSETS.get(era) or _ERA_OFFSETS.get(era.upper())
        year_token = match.group("year")
        era_year = 1 if year_token == "元" else int(year_token)
        return _safe_date(offset + era_year, int(match.group("month")), int(match.group("day")))

    match = _WESTERN_DATE_RE.search(text)
    if match:
        return _safe_date(int(match.group("year")), int(match.group("month")), int(match.group("day")))

    try:
        return dt.datetime.fromisoformat(text).date()
    except ValueError:
        return None


def parse_amount(value: Any) -> Optional[int]:
    """Parse a monetary amount into an integer in the smallest unit.

    Thousands separators, whitespace and currency marks are removed, as
    is a trailing "-" or "(税込)" after the digits.
    Fractions are truncated. Returns ``None`` for missing or unparsable
    values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    text = _AMOUNT_STRIP_RE.sub("", unicodedata.normalize("NFKC", str(value)))
    text = _AMOUNT_SUFFIX_RE.sub("", text)
    if not text:
        return None
    try:
        return int(float(text))
    except ValueError:
        return None


def largest_amount(candidates: Iterable[Any]) -> Optional[int]:
    """Return the largest parsable amount among ``candidates``."""
    parsed = [amount for amount in (parse_amount(c) for c in candidates) if amount is not None]
    return max(parsed) if parsed else None


def clamp_confidence(value: Any, default: float = 0.0) -> float:
    """Coerce ``value`` to a float within ``[0.0, 1.0]``."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return min(1.0, max(0.0, number))


def strip_code_fences(text: str) -> str:
    """Remove Markdown code fences models sometimes wrap JSON in."""
    return re.sub(r"```(?:json)?\n?|\n?```", "", text or "").strip()
