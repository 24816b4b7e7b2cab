"""
Comparison periods — shift a time range by an offset like "-1_month".

Offsets use fixed day multipliers (week=7, month=30, quarter=90, year=365),
so "-1_month" of 2025-03-01..2025-03-31 is 2025-01-30..2025-03-01.
"""

import logging
import re
from datetime import date, timedelta
from typing import Optional

logger = logging.getLogger(__name__)

_OFFSET_RE = re.compile(r"^(-?\d+)_(day|week|month|quarter|year)$")

UNIT_DAYS = {
    "day": 1,
    "week": 7,
    "month": 30,
    "quarter": 90,
    "year": 365,
}

DEFAULT_SHIFT_DAYS = -30


def parse_offset(offset: Optional[str]) -> Optional[int]:
    """Offset string → signed day shift, or None when it doesn't parse."""
    if not isinstance(offset, str):
        return None
    match = _OFFSET_RE.match(offset.strip().lower())
    if not match:
        return None
    return int(match.group(1)) * UNIT_DAYS[match.group(2)]


def comparison_range(start: date, end: date, offset: Optional[str]) -> tuple[date, date]:
    shift = parse_offset(offset)
    if shift is None:
        logger.debug("Unparseable comparison offset %r; shifting back 30 days", offset)
        shift = DEFAULT_SHIFT_DAYS
    delta = timedelta(days=shift)
    return start + delta, end + delta
