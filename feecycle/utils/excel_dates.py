"""
Date coercion for spreadsheet cells.

Cells arrive as whatever the reader produced:
  - datetime / date / pandas.Timestamp  → used as is
  - int / float                         → Excel serial day number
  - str                                 → parsed, unless it is a placeholder
                                          ("need to start batch", "TBD", "pending")
                                          partial dates ("March") are absent
  - None / NaN / ""                     → absent

Unusable values are treated as absent (None), never as errors.
"""
import math
from datetime import date, datetime, timedelta
from typing import Any, Optional

from dateutil import parser as date_parser

# Excel counts from 1900-01-01 and treats 1900 as a leap year.
EXCEL_EPOCH = datetime(1900, 1, 1)
EXCEL_LEAP_YEAR_CORRECTION = 2

PLACEHOLDER_TOKENS = ("need", "start", "batch", "tbd", "pending")

# Differ in year, month and day: a part dateutil had to fill in shows up as a mismatch
PARTIAL_DATE_DEFAULTS = (datetime(2000, 1, 1), datetime(2001, 2, 2))


def is_placeholder_date_text(text: str) -> bool:
    """'need to start', 'TBD', 'pending'... are notes, not dates."""
    t = text.strip().lower()
    return any(token in t for token in PLACEHOLDER_TOKENS)


def parse_excel_date(value: Any) -> Optional[datetime]:
    """
    Converts a spreadsheet cell to a naive datetime.

    Examples:
      45672                    → datetime(2025, 1, 15)
      "2026-01-15"             → datetime(2026, 1, 15)
      "need to start batch"    → None
      float('nan')             → None
    """
    if value is None:
        return None

    # datetime first: pandas.Timestamp and datetime are both date subclasses
    if isinstance(value, datetime):
        if value != value:  # NaT
            return None
        return value.replace(tzinfo=None)

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return None
        try:
            return EXCEL_EPOCH + timedelta(days=value - EXCEL_LEAP_YEAR_CORRECTION)
        except OverflowError:
            return None

    if isinstance(value, str):
        text = value.strip()
        if not text or is_placeholder_date_text(text):
            return None
        try:
            first, second = (date_parser.parse(text, default=d) for d in PARTIAL_DATE_DEFAULTS)
        except (ValueError, OverflowError):
            return None
        # "March", "2026-03", "15 March" are not a day
        return first if first == second else None

    return None


def parse_excel_day(value: Any) -> Optional[date]:
    """Same as parse_excel_date but truncated to the calendar day."""
    parsed = parse_excel_date(value)
    return parsed.date() if parsed else None
