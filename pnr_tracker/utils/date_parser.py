"""
Travel date parsing
Upstream dates are free text; try the known layouts first, then fall back to dateutil
"""
from datetime import datetime
from typing import Optional
import logging

from dateutil import parser as dateutil_parser

logger = logging.getLogger(__name__)

# Tried in order; day-first layouts win over the generic parser
KNOWN_DATE_FORMATS = (
    "%d-%m-%Y",
    "%d/%m/%Y",
    "%d.%m.%Y",
    "%d %b %Y",
)


def parse_travel_date(text: Optional[str]) -> Optional[datetime]:
    """
    Parse a travel date string

    Args:
        text: e.g. "15-01-2024", "15/01/2024", "15.01.2024", "5 Jan 2024"

    Returns:
        Naive datetime at midnight, or None when nothing matches
    """
    if not text or not text.strip():
        return None

    value = text.strip()

    for fmt in KNOWN_DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue

    try:
        parsed = dateutil_parser.parse(value)
    except (ValueError, OverflowError):
        logger.debug(f"Unparseable travel date: {value!r}")
        return None

    return parsed.replace(tzinfo=None)
