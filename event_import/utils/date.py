"""
Date parsing utilities for flexible date format handling.

Values are parsed from the usual spreadsheet formats and standardized to
ISO 8601 UTC strings.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

import pandas as pd

from event_import.core.config import settings

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

_failure_stats: dict = {}

# Plain numbers are never dates; pandas would happily read "2024" or "17" as one
_NUMERIC_RE = re.compile(r"^[+-]?\d+(\.\d+)?$")
_DATE_HINT_RE = re.compile(r"\d{1,4}[-/.]\d{1,2}([-/.]\d{1,4})?|[A-Za-z]{3,}\.? \d{1,2}|\d{1,2} [A-Za-z]{3,}")


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


def _to_timestamp(value: Any, *, log_context: Optional[str], log_failures: bool) -> Optional[pd.Timestamp]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    if isinstance(value, (datetime, pd.Timestamp)):
        ts = pd.Timestamp(value)
        return ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")
    if not isinstance(value, str):
        return None

    value = value.strip()
    if value == "" or _NUMERIC_RE.match(value) or not _DATE_HINT_RE.search(value):
        return None

    parse_attempts = []
    numeric_match = re.match(r"^(\d{1,2})[/-](\d{1,2})[/-]\d{2,4}", value)
    if numeric_match:
        first, second = int(numeric_match.group(1)), int(numeric_match.group(2))

        # Decide whether day-first is more plausible
        if first > 12 and second <= 31:
            dayfirst_preferred = True
        elif second > 12 and first <= 12:
            dayfirst_preferred = False
        else:
            dayfirst_preferred = settings.date_default_dayfirst

        parse_attempts.append(lambda v, df=dayfirst_preferred: pd.to_datetime(v, utc=True, dayfirst=df, errors="raise"))
        parse_attempts.append(lambda v, df=not dayfirst_preferred: pd.to_datetime(v, utc=True, dayfirst=df, errors="raise"))

    # Fallback: let pandas infer the format
    parse_attempts.append(lambda v: pd.to_datetime(v, utc=True, errors="raise"))

    last_error = None
    for attempt in parse_attempts:
        try:
            return attempt(value)
        except (ValueError, TypeError, OverflowError) as exc:
            last_error = exc

    if log_failures:
        _record_parse_failure(value, log_context, last_error or ValueError("Unable to determine format"))
    return None


def parse_flexible_date(value: Any, *, log_context: Optional[str] = None, log_failures: bool = True) -> Optional[str]:
    """
    Parse a date value from various formats and return an ISO 8601 string.

    Supports ISO 8601, DD/MM/YYYY, MM/DD/YYYY, YYYY-MM-DD and the other
    formats pandas can infer. Returns None when parsing fails.
    """
    ts = _to_timestamp(value, log_context=log_context, log_failures=log_failures)
    if ts is None:
        return None
    return ts.strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_datetime(value: Any) -> Optional[datetime]:
    """Like ``parse_flexible_date`` but returns an aware ``datetime``."""
    ts = _to_timestamp(value, log_context=None, log_failures=False)
    if ts is None:
        return None
    return ts.to_pydatetime().astimezone(timezone.utc)


def looks_like_date(value: Any) -> bool:
    return parse_flexible_date(value, log_failures=False) is not None
