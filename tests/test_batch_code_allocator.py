from datetime import date
from itertools import islice

from feecycle.models import BatchStatus
from feecycle.services.batch_code_allocator import (
    BatchIdentity, CodeCandidate, allocate_display_codes, ordinal_suffixes, resolve_unique_code,
)

ACTIVE = BatchStatus.ACTIVE.value
DRAFT = BatchStatus.DRAFT.value


def test_ordinal_suffixes_switch_to_numbers_after_ten():
    assert list(islice(ordinal_suffixes(), 13)) == [
        "I", "II", "III", "IV", "V", "VI", "VII", "VIII", "IX", "X", "11", "12", "13",
    ]


def test_single_batch_keeps_base_code():
    c = CodeCandidate("WF:2:30", date(2026, 1, 1), "beginner", 1, ACTIVE)
    assert allocate_display_codes([c]) == {c: "WF:2:30"}


def test_group_order_is_active_first_then_start_date():
    draft = CodeCandidate("WF:2:30", None, "beginner", 1, DRAFT)
    feb = CodeCandidate("WF:2:30", date(2026, 2, 1), "beginner", 2, ACTIVE)
    jan = CodeCandidate("WF:2:30", date(2026, 1, 1), "intermediate", 1, ACTIVE)
    other = CodeCandidate("SS:4:30", date(2026, 1, 1), "beginner", 1, ACTIVE)

    codes = allocate_display_codes([draft, feb, jan, other])

    assert codes[jan] == "WF:2:30"
    assert codes[feb] == "WF:2:30-I"
    assert codes[draft] == "WF:2:30-II"
    assert codes[other] == "SS:4:30"


def test_allocation_is_deterministic():
    candidates = [
        CodeCandidate("WF:2:30", date(2026, 1, 1), stage, level, ACTIVE)
        for stage in ("beginner", "intermediate") for level in (1, 2, 3)
    ]
    first = allocate_display_codes(candidates)
    again = allocate_display_codes(list(reversed(candidates)))

    assert first == again
    assert sum(1 for code in first.values() if code == "WF:2:30") == 1
    assert len(set(first.values())) == len(candidates)


def test_allocation_overflows_to_numbers():
    candidates = [CodeCandidate("M:5:00", date(2026, 1, d), "beginner", 1, ACTIVE) for d in range(1, 14)]
    codes = allocate_display_codes(candidates)
    assert codes[candidates[0]] == "M:5:00"
    assert codes[candidates[10]] == "M:5:00-X"
    assert codes[candidates[11]] == "M:5:00-11"
    assert codes[candidates[12]] == "M:5:00-12"


def _lookup(taken):
    return lambda code: taken.get(code)


def test_resolve_free_base_code():
    assert resolve_unique_code("WF:2:30", date(2026, 1, 1), "beginner", 1, _lookup({})) == "WF:2:30"


def test_resolve_reuses_same_logical_batch():
    taken = {"WF:2:30": BatchIdentity(date(2026, 1, 1), "beginner", 1)}
    assert resolve_unique_code("WF:2:30", date(2026, 1, 1), "beginner", 1, _lookup(taken)) == "WF:2:30"


def test_resolve_skips_codes_held_by_other_batches():
    taken = {
        "WF:2:30": BatchIdentity(date(2026, 1, 1), "beginner", 1),
        "WF:2:30-I": BatchIdentity(None, "beginner", 2),
    }
    code = resolve_unique_code("WF:2:30", date(2026, 3, 1), "beginner", 1, _lookup(taken))
    assert code == "WF:2:30-II"


def test_resolve_past_the_ordinal_table():
    other = BatchIdentity(date(2025, 1, 1), "advanced", 1)
    taken = {"T:6:00": other}
    taken.update({f"T:6:00-{s}": other for s in islice(ordinal_suffixes(), 11)})

    code = resolve_unique_code("T:6:00", date(2026, 1, 1), "beginner", 1, _lookup(taken))
    assert code == "T:6:00-12"
