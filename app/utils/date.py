"""
Date parsing utilities for spreadsheet cells.

Debt files mix US and international layouts (``03/04/2021``, ``2021-04-03``,
``4-Mar-21``). Values are parsed with pandas and stored as calendar dates
(``YYYY-MM-DD``).
"""

import logging
import re
from typing import Any, Optional

import pandas as pd

from app.core.config import settings

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100
NULL_TOKENS = {"", "null", "none", "undefined", "nan", "n/a", "na"}

_failure_stats: dict = {}


def _record_parse_failure(value: Any, context: Optional[str], error: Exception) -> None:
    """
    Collect failure stats and emit limited logs (sampled warnings + periodic summaries).
    """
    key = context or "default"
    stats = _failure_stats.setdefault(key, {"count": 0, "samples": []})
    stats["count"] += 1
    count = stats["count"]

    if len(stats["samples"]) < FAILED_SAMPLE_LIMIT:
        stats["samples"].append(value)
        logger.warning("Failed to parse date%s value '%s': %s", f" ({key})" if context else "", value, error)
        return

    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse warnings after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def _prefer_dayfirst(value: str) -> Optional[bool]:
    """Return the day-first preference for ``NN/NN/YYYY`` style values, None otherwise."""
    match = re.match(r"^(\d{1,2})[/-](\d{1,2})[/-]\d{2,4}", value)
    if not match:
        return None
    first, second = int(match.group(1)), int(match.group(2))
    if first > 12 and second <= 12:
        return True
    if second > 12 and first <= 12:
        return False
    return settings.date_default_dayfirst


def parse_calendar_date(value: Any, *, log_context: Optional[str] = None, log_failures: bool = True) -> Optional[str]:
    """
    Parse a cell into a ``YYYY-MM-DD`` string.

    Ambiguous numeric dates (``03/04/2021``) follow ``settings.date_default_dayfirst``;
    unambiguous ones (``25/12/2020``) pick the only valid reading.

    Returns:
        The calendar date, or None when the value is blank or unparseable.
    """
    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in NULL_TOKENS:
        return None

    dayfirst = _prefer_dayfirst(text)
    attempts = []
    if dayfirst is not None:
        attempts.append(dayfirst)
        attempts.append(not dayfirst)
    attempts.append(None)

    last_error: Optional[Exception] = None
    for attempt in attempts:
        try:
            if attempt is None:
                parsed = pd.to_datetime(text, errors="raise")
            else:
                parsed = pd.to_datetime(text, dayfirst=attempt, errors="raise")
        except (ValueError, TypeError, OverflowError) as exc:
            last_error = exc
            continue
        if pd.isna(parsed):
            continue
        return parsed.strftime("%Y-%m-%d")

    if log_failures:
        _record_parse_failure(text, log_context, last_error or ValueError("Unable to determine format"))
    return None


def is_parseable_date(value: Any) -> bool:
    return parse_calendar_date(value, log_failures=False) is not None
