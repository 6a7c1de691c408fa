"""
Unique display codes for batches that share a schedule code.

Two batches can run on the same days and time (e.g. two "WF:2:30" groups,
one beginner and one intermediate). The first keeps the bare code, the rest
get an ordinal suffix:

    WF:2:30, WF:2:30-I, WF:2:30-II, ... WF:2:30-X, WF:2:30-11, WF:2:30-12 ...

After the tenth roman numeral suffixes switch to plain numbers. Codes already
issued with that convention must keep resolving, so the switch is kept.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from itertools import count
from typing import Callable, Dict, Iterable, Iterator, List, Optional, NamedTuple

from feecycle.models import BatchStatus

logger = logging.getLogger(__name__)

ORDINAL_TABLE_SIZE = 10

_ROMAN = [(10, 'X'), (9, 'IX'), (5, 'V'), (4, 'IV'), (1, 'I')]


def _to_roman(n: int) -> str:
    out = []
    for value, symbol in _ROMAN:
        while n >= value:
            out.append(symbol)
            n -= value
    return ''.join(out)


def ordinal_suffixes() -> Iterator[str]:
    """I, II, ... X, then 11, 12, 13 ..."""
    for n in count(1):
        yield _to_roman(n) if n <= ORDINAL_TABLE_SIZE else str(n)


def with_suffix(base_code: str, suffix: str) -> str:
    return f"{base_code}-{suffix}"


def _as_date(value) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    return value


class BatchIdentity(NamedTuple):
    """What makes two rows "the same logical batch"."""
    start_date: Optional[date]
    stage: str
    level: int

    def matches(self, other: "BatchIdentity") -> bool:
        return (
            _as_date(self.start_date) == _as_date(other.start_date)
            and self.stage == other.stage
            and self.level == other.level
        )


@dataclass(frozen=True)
class CodeCandidate:
    base_code: str
    start_date: Optional[date]
    stage: str
    level: int
    status: str = BatchStatus.DRAFT.value


def _group_sort_key(c: CodeCandidate):
    return (
        0 if c.status == BatchStatus.ACTIVE.value else 1,
        c.start_date is None,
        c.start_date or date.min,
        c.stage or '',
        c.level or 0,
    )


def allocate_display_codes(candidates: Iterable[CodeCandidate]) -> Dict[CodeCandidate, str]:
    """
    Assigns a display code to every distinct candidate.

    Candidates sharing a base code are ordered active first, then by start
    date (missing dates last), then stage/level; the first keeps the bare
    code and the others get -I, -II, ... in that order. The same input
    always yields the same assignment.
    """
    groups: Dict[str, List[CodeCandidate]] = {}
    for c in candidates:
        group = groups.setdefault(c.base_code, [])
        if c not in group:
            group.append(c)

    assigned: Dict[CodeCandidate, str] = {}
    for base_code, group in groups.items():
        ordered = sorted(group, key=_group_sort_key)
        assigned[ordered[0]] = base_code
        for c, suffix in zip(ordered[1:], ordinal_suffixes()):
            assigned[c] = with_suffix(base_code, suffix)
    return assigned


def resolve_unique_code(
    base_code: str,
    start_date: Optional[date],
    stage: str,
    level: int,
    lookup: Callable[[str], Optional[BatchIdentity]],
) -> str:
    """
    Picks the code for a batch about to be inserted.

    Probes base, base-I ... base-X and accepts the first code that is free or
    already held by the same (start_date, stage, level). Past the ordinal
    table only a free code is accepted: base-11, base-12 ...

    `lookup(code)` returns the identity of the batch holding `code`, or None.
    """
    wanted = BatchIdentity(_as_date(start_date), stage, level)

    candidates = [base_code] + [
        with_suffix(base_code, s) for s, _ in zip(ordinal_suffixes(), range(ORDINAL_TABLE_SIZE))
    ]
    for code in candidates:
        holder = lookup(code)
        if holder is None or holder.matches(wanted):
            return code

    for n in count(ORDINAL_TABLE_SIZE + 1):
        code = with_suffix(base_code, str(n))
        if lookup(code) is None:
            logger.warning(f"Ordinal table exhausted for {base_code}, using {code}")
            return code
