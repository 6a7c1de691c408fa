"""
Parser for batch schedule codes typed in the student spreadsheet.

Format:  <DAYS>:<HOUR>:<MINUTE>[(<SUFFIX>)]

  - "WF:2:30(U)"  → wednesday + friday at 14:30, suffix "(U)" kept
  - "SS:4:30"     → saturday + sunday at 16:30
  - "TTH:12:00"   → tuesday + thursday at 12:00

The hour is always read as PM: every class runs in the afternoon or
evening, so 12 stays 12 and 1..11 become 13..23. This is not configurable.

The parenthesised suffix is part of the batch identity ("WF:2:30(U)" and
"WF:2:30" are different batches) and is re-attached verbatim.
"""
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from feecycle.exceptions import InvalidBatchCodeFormat, UnknownDayCode

DAY_CODES = {
    # Single days
    'M': ['monday'],
    'T': ['tuesday'],
    'W': ['wednesday'],
    'TH': ['thursday'],
    'F': ['friday'],
    'S': ['saturday'],
    'SU': ['sunday'],
    # Common combinations
    'MW': ['monday', 'wednesday'],
    'WF': ['wednesday', 'friday'],
    'TT': ['tuesday', 'thursday'],
    'SS': ['saturday', 'sunday'],
    'MWF': ['monday', 'wednesday', 'friday'],
    'TTH': ['tuesday', 'thursday'],
}

# 0 = Sunday ... 6 = Saturday (same numbering as batch_schedule_entries)
DAY_NUMBERS = {
    'sunday': 0, 'monday': 1, 'tuesday': 2, 'wednesday': 3,
    'thursday': 4, 'friday': 5, 'saturday': 6,
}

STAGE_CODES = {'B': 'beginner', 'I': 'intermediate', 'A': 'advanced'}

_SUFFIX_RE = re.compile(r'\([^)]*\)$')
_MINUTE_RE = re.compile(r'^[0-5]\d$')

FORMAT_HINT = "Expected format: DAY:HOUR:MINUTE (e.g., WF:2:30)"


@dataclass
class ParsedBatchCode:
    raw: str
    normalized_code: str
    days: List[str] = field(default_factory=list)
    time: str = ""
    suffix: str = ""
    is_valid: bool = False
    error: Optional[str] = None

    @property
    def base_code(self) -> str:
        """Code without the parenthesised suffix."""
        if self.suffix and self.normalized_code.endswith(self.suffix):
            return self.normalized_code[: -len(self.suffix)]
        return self.normalized_code


def _split_suffix(code: str) -> Tuple[str, str]:
    m = _SUFFIX_RE.search(code)
    if not m:
        return code, ""
    return code[: m.start()].strip(), m.group(0)


def _to_24h(hour_text: str, raw: str) -> int:
    """12 stays 12, 1..11 are PM."""
    try:
        hour = int(hour_text.strip())
    except ValueError:
        raise InvalidBatchCodeFormat(f"Invalid hour '{hour_text}' in batch code '{raw}'. {FORMAT_HINT}")
    if hour < 1 or hour > 12:
        raise InvalidBatchCodeFormat(f"Hour must be between 1 and 12 in batch code '{raw}'")
    return 12 if hour == 12 else hour + 12


def parse_batch_code(raw: str) -> ParsedBatchCode:
    """
    Parses a batch code or raises.

    Raises:
        InvalidBatchCodeFormat: empty input, not exactly 3 ':' parts, bad hour/minute
        UnknownDayCode: day code not in DAY_CODES
    """
    if not raw or not isinstance(raw, str) or not raw.strip():
        raise InvalidBatchCodeFormat("Batch code is empty or invalid")

    original = raw.strip()
    code, suffix = _split_suffix(original)

    parts = code.split(':')
    if len(parts) != 3:
        raise InvalidBatchCodeFormat(f"Invalid batch code format '{original}'. {FORMAT_HINT}")

    day_code = parts[0].strip().upper()
    days = DAY_CODES.get(day_code)
    if not days:
        raise UnknownDayCode(
            f"Unknown day code: {day_code}. Supported codes: {', '.join(DAY_CODES)}"
        )

    hour24 = _to_24h(parts[1], original)
    minute = parts[2].strip()
    if not _MINUTE_RE.match(minute):
        raise InvalidBatchCodeFormat(f"Invalid minute '{minute}' in batch code '{original}'. {FORMAT_HINT}")

    return ParsedBatchCode(
        raw=raw,
        normalized_code=code + suffix,
        days=list(days),
        time=f"{hour24:02d}:{minute}",
        suffix=suffix,
        is_valid=True,
    )


def try_parse_batch_code(raw: Optional[str]) -> ParsedBatchCode:
    """Non-raising variant for bulk rows: returns is_valid=False with the reason."""
    try:
        return parse_batch_code(raw)
    except (InvalidBatchCodeFormat, UnknownDayCode) as e:
        original = raw.strip() if isinstance(raw, str) else ""
        return ParsedBatchCode(raw=raw or "", normalized_code=original, is_valid=False, error=e.message)


def schedule_entries(parsed: ParsedBatchCode) -> List[Tuple[int, str]]:
    """[(day_of_week, 'HH:MM'), ...] ordered by day number."""
    return sorted((DAY_NUMBERS[d], parsed.time) for d in parsed.days)


# ══════════════════════════════════════════════════════════
# Other spreadsheet columns
# ══════════════════════════════════════════════════════════

def parse_course_level(text: Optional[str]) -> Tuple[Optional[str], Optional[int]]:
    """
    'B1' → ('beginner', 1), 'I 2' → ('intermediate', 2), 'A3' → ('advanced', 3).
    Anything else → (None, None).
    """
    if not text or not isinstance(text, str):
        return None, None
    cleaned = re.sub(r'\s+', '', text).upper()
    m = re.match(r'^([BIA])(\d)$', cleaned)
    if not m:
        return None, None
    return STAGE_CODES[m.group(1)], int(m.group(2))


def clean_phone_number(phone) -> str:
    """Keeps digits and '+'."""
    if phone is None:
        return ""
    if isinstance(phone, float):
        if phone != phone:  # NaN
            return ""
        phone = int(phone)
    return re.sub(r'[^\d+]', '', str(phone).strip())


def clean_email(email) -> str:
    if not email or not isinstance(email, str):
        return ""
    e = email.strip().lower()
    if '@' in e and '.' in e:
        return e
    return ""


def is_discontinued(status) -> bool:
    if not status or not isinstance(status, str):
        return False
    s = status.strip().lower()
    return any(token in s for token in ('discontin', 'stopped', 'left', 'withdrawn'))
