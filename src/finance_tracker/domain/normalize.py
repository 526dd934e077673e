"""Coercion of untrusted amount and date values.

Payloads arrive from manual entry, OCR output and bulk imports, so nothing
here raises: unparsable input is replaced by a safe default (``0.0`` or the
current time), logged, and counted on the caller's ``FallbackCounter``
when one is given.
"""

import math
import re
from collections import Counter
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from finance_tracker.logger import get_logger

logger = get_logger(__name__)

_AMOUNT_DISALLOWED = re.compile(r"[^\d.\-]")
_AMOUNT_PREFIX = re.compile(r"-?(?:\d+\.?\d*|\.\d+)")

_YEAR_FIRST = re.compile(r"^(\d{4})([-/])(\d{1,2})\2(\d{1,2})(?:$|[ T])")
_DAY_FIRST = re.compile(r"^(\d{1,2})([-/])(\d{1,2})\2(\d{4}|\d{2})$")


class FallbackCounter:
    """Per-field tally of values the normalizers had to replace."""

    def __init__(self) -> None:
        self._counts: Counter[str] = Counter()

    def record(self, kind: str, value: Any) -> None:
        self._counts[kind] += 1
        logger.warning(
            "[NORMALIZE] Could not parse %s %r; using default (fallbacks so far: %d).",
            kind,
            value,
            self._counts[kind],
        )

    def counts(self) -> dict[str, int]:
        return {"amount": self._counts["amount"], "date": self._counts["date"]}

    def reset(self) -> None:
        self._counts.clear()


def _record_fallback(kind: str, value: Any, fallbacks: FallbackCounter | None) -> None:
    if fallbacks is None:
        logger.warning("[NORMALIZE] Could not parse %s %r; using default.", kind, value)
    else:
        fallbacks.record(kind, value)


def _finite_magnitude(number: float) -> float | None:
    if not math.isfinite(number):
        return None
    return abs(number)


def normalize_amount(value: Any, fallbacks: FallbackCounter | None = None) -> float:
    """Return a finite, non-negative amount; ``0.0`` when nothing usable is found."""
    if isinstance(value, bool):
        _record_fallback("amount", value, fallbacks)
        return 0.0

    if isinstance(value, (int, float, Decimal)):
        try:
            magnitude = _finite_magnitude(float(value))
        except OverflowError:
            magnitude = None
        if magnitude is not None:
            return magnitude
        _record_fallback("amount", value, fallbacks)
        return 0.0

    if isinstance(value, str):
        cleaned = _AMOUNT_DISALLOWED.sub("", value)
        match = _AMOUNT_PREFIX.match(cleaned)
        if match:
            magnitude = _finite_magnitude(float(match.group()))
            if magnitude is not None:
                return magnitude

    _record_fallback("amount", value, fallbacks)
    return 0.0


def _build_date(year: int, month: int, day: int) -> datetime | None:
    try:
        return datetime(year, month, day)
    except ValueError:
        return None


def _parse_date_string(value: str) -> datetime | None:
    text = value.strip()
    if not text:
        return None

    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass

    match = _YEAR_FIRST.match(text)
    if match:
        parsed = _build_date(int(match.group(1)), int(match.group(3)), int(match.group(4)))
        if parsed:
            return parsed

    match = _DAY_FIRST.match(text)
    if match:
        year_text = match.group(4)
        year = int(year_text) if len(year_text) == 4 else 2000 + int(year_text)
        return _build_date(year, int(match.group(3)), int(match.group(1)))

    return None


def normalize_date(value: Any, fallbacks: FallbackCounter | None = None) -> datetime:
    """Return a usable datetime; the current time when the input cannot be read.

    Day-first is the only ambiguous convention accepted: ``15/03/2024`` and
    ``03/04/24`` are read as DD/MM.
    """
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        parsed = _parse_date_string(value)
        if parsed is not None:
            return parsed

    _record_fallback("date", value, fallbacks)
    return datetime.now()
