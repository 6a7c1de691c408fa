import pytest

from feecycle.exceptions import InvalidBatchCodeFormat, UnknownDayCode
from feecycle.services.batch_code_parser import (
    clean_email, clean_phone_number, is_discontinued, parse_batch_code,
    parse_course_level, schedule_entries, try_parse_batch_code,
)


def test_suffix_is_kept_verbatim():
    parsed = parse_batch_code("WF:2:30(U)")
    assert parsed.is_valid
    assert set(parsed.days) == {"wednesday", "friday"}
    assert parsed.time == "14:30"
    assert parsed.suffix == "(U)"
    assert parsed.normalized_code == "WF:2:30(U)"
    assert parsed.base_code == "WF:2:30"


def test_weekend_code():
    parsed = parse_batch_code("SS:4:30")
    assert set(parsed.days) == {"saturday", "sunday"}
    assert parsed.time == "16:30"
    assert parsed.suffix == ""


@pytest.mark.parametrize("code,expected", [
    ("TTH:12:00", "12:00"),
    ("M:1:05", "13:05"),
    ("F:11:45", "23:45"),
])
def test_hours_are_pm(code, expected):
    assert parse_batch_code(code).time == expected


def test_day_code_is_case_insensitive():
    assert set(parse_batch_code(" mwf:6:00 ").days) == {"monday", "wednesday", "friday"}


@pytest.mark.parametrize("code", ["", "   ", "WF:2", "WF", "WF:2:30:00", "WF:x:30", "WF:13:00", "WF:2:3", "WF:2:75"])
def test_malformed_codes(code):
    with pytest.raises(InvalidBatchCodeFormat):
        parse_batch_code(code)


def test_unknown_day_code_lists_supported_codes():
    with pytest.raises(UnknownDayCode) as exc:
        parse_batch_code("XY:2:30")
    assert "WF" in exc.value.message
    assert "TTH" in exc.value.message


def test_try_parse_does_not_raise():
    parsed = try_parse_batch_code("XY:2:30(B)")
    assert not parsed.is_valid
    assert "Unknown day code" in parsed.error

    assert try_parse_batch_code(None).is_valid is False


def test_schedule_entries_use_sunday_zero():
    assert schedule_entries(parse_batch_code("WF:2:30")) == [(3, "14:30"), (5, "14:30")]
    assert schedule_entries(parse_batch_code("SS:4:30")) == [(0, "16:30"), (6, "16:30")]


@pytest.mark.parametrize("text,expected", [
    ("B1", ("beginner", 1)),
    ("i 2", ("intermediate", 2)),
    ("A3", ("advanced", 3)),
    ("X1", (None, None)),
    ("", (None, None)),
    (None, (None, None)),
])
def test_parse_course_level(text, expected):
    assert parse_course_level(text) == expected


def test_clean_contact_fields():
    assert clean_phone_number("+91 98765-43210") == "+919876543210"
    assert clean_phone_number(9876543210.0) == "9876543210"
    assert clean_phone_number(float("nan")) == ""
    assert clean_email("  Asha@Example.COM ") == "asha@example.com"
    assert clean_email("not-an-email") == ""


def test_is_discontinued():
    assert is_discontinued("Discontinued")
    assert is_discontinued("left in March")
    assert not is_discontinued("Active")
    assert not is_discontinued(None)
