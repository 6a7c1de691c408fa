from collections import namedtuple
from datetime import date, datetime

import pytest

from feecycle.exceptions import CourseNotConfigured, LevelNotConfigured, NotFoundError, ValidationError
from feecycle.models import Course
from feecycle.models_fee_ledger import FeeRecord
from feecycle.services import fee_cycle_service
from feecycle.services.fee_cycle_service import (
    END_OF_DAY, FeeCycleService, derive_fee_status, due_date_for_month, match_payment_for_month,
    months_between, plan_obligation_months, remaining_duration, resolve_cycle_start,
)

NOW = datetime(2026, 4, 1, 9, 0)


# ══════════════════════════════════════════════════════════
# Pure helpers
# ══════════════════════════════════════════════════════════

@pytest.mark.parametrize("fee,paid,due,expected", [
    (1000, 1000, datetime(2026, 1, 15), "paid"),
    (1000, 1200, datetime(2026, 1, 15), "paid"),
    (1000, 400, datetime(2026, 1, 15), "partially_paid"),
    (1000, 400, datetime(2026, 12, 15), "partially_paid"),
    (1000, 0, datetime(2026, 3, 31), "overdue"),
    (1000, 0, datetime(2026, 4, 15), "upcoming"),
])
def test_derive_fee_status(fee, paid, due, expected):
    assert derive_fee_status(fee, paid, due, None, NOW) == expected


def test_payment_date_does_not_change_status():
    due = datetime(2026, 3, 1)
    assert derive_fee_status(1000, 0, due, datetime(2026, 3, 2), NOW) == "overdue"
    assert derive_fee_status(1000, 0, due, None, NOW) == "overdue"


def test_due_date_is_end_of_day_and_clamped():
    start = date(2026, 1, 31)
    assert due_date_for_month(date(2026, 2, 1), start) == datetime.combine(date(2026, 2, 28), END_OF_DAY)
    assert due_date_for_month(date(2028, 2, 1), start) == datetime.combine(date(2028, 2, 29), END_OF_DAY)
    assert due_date_for_month(date(2026, 4, 1), start).day == 30


def test_resolve_cycle_start_takes_later_date():
    assert resolve_cycle_start(date(2026, 1, 10), date(2026, 1, 20)) == date(2026, 1, 20)
    assert resolve_cycle_start(date(2026, 2, 1), date(2026, 1, 20)) == date(2026, 2, 1)
    assert resolve_cycle_start(None, date(2026, 1, 20)) == date(2026, 1, 20)
    assert resolve_cycle_start(None, None) is None


def test_months_and_remaining_duration():
    assert months_between(date(2026, 1, 31), date(2026, 3, 1)) == 2
    assert months_between(date(2026, 3, 1), date(2026, 1, 1)) == -2
    assert remaining_duration(6, date(2026, 1, 1), date(2026, 3, 15)) == 4
    assert remaining_duration(2, date(2026, 1, 1), date(2026, 6, 1)) == 1
    assert remaining_duration(6, None, date(2026, 3, 15)) == 6


def test_plan_stops_at_current_month():
    plan = plan_obligation_months(date(2026, 1, 15), NOW)
    assert [m for m, _ in plan] == ["2026-01", "2026-02", "2026-03", "2026-04"]
    assert plan[0][1] == datetime.combine(date(2026, 1, 15), END_OF_DAY)


def test_plan_respects_month_limit_and_hard_cap(monkeypatch):
    assert len(plan_obligation_months(date(2026, 1, 15), NOW, month_limit=2)) == 2

    monkeypatch.setattr(fee_cycle_service, "FEE_GENERATION_MAX_MONTHS", 3)
    assert len(plan_obligation_months(date(2020, 1, 1), NOW)) == 3


def test_match_payment_prefers_due_month():
    Cycle = namedtuple("Cycle", "due_date paid_date")
    p_a = Cycle(None, date(2026, 3, 5))
    p_b = Cycle(date(2026, 3, 10), date(2026, 4, 1))
    payments = [p_a, p_b]

    assert match_payment_for_month(payments, "2026-03") is p_b
    assert match_payment_for_month(payments, "2026-04") is p_b
    assert match_payment_for_month(payments, "2026-05") is None
    assert match_payment_for_month([p_a], "2026-03") is p_a


# ══════════════════════════════════════════════════════════
# Service
# ══════════════════════════════════════════════════════════

@pytest.fixture
def enrolled(courses, make_batch, make_student):
    batch = make_batch(start_date=date(2026, 1, 15))
    return make_student(
        email="asha@example.com", batch=batch,
        enrollment_date=date(2026, 1, 15), fee_cycle_start_date=date(2026, 1, 15),
    )


def test_generate_obligations_up_to_current_month(db, enrolled):
    service = FeeCycleService(db)
    created = service.generate_obligations(enrolled, now=NOW)
    db.commit()

    assert [f.fee_month for f in created] == ["2026-01", "2026-02", "2026-03", "2026-04"]
    assert all(f.fee_amount == 1000.0 for f in created)
    assert [f.status_at(NOW) for f in created] == ["overdue", "overdue", "overdue", "upcoming"]


def test_generate_obligations_is_idempotent(db, enrolled):
    service = FeeCycleService(db)
    service.generate_obligations(enrolled, now=NOW)
    assert service.generate_obligations(enrolled, now=NOW) == []
    assert db.query(FeeRecord).count() == 4


def test_generation_picks_up_new_months(db, enrolled):
    service = FeeCycleService(db)
    service.generate_obligations(enrolled, now=datetime(2026, 2, 1))
    created = service.generate_obligations(enrolled, now=NOW)
    assert [f.fee_month for f in created] == ["2026-03", "2026-04"]


def test_late_joiner_owes_nothing_before_cycle_start(db, courses, make_batch, make_student):
    batch = make_batch(start_date=date(2026, 1, 1))
    student = make_student(batch=batch, enrollment_date=date(2026, 3, 10))

    created = FeeCycleService(db).generate_obligations(student, now=NOW, cycle_start=date(2026, 3, 10))

    assert [f.fee_month for f in created] == ["2026-03", "2026-04"]
    assert created[0].due_date.date() == date(2026, 3, 10)


def test_generation_is_capped_by_course_duration(db, courses, make_batch, make_student):
    batch = make_batch(stage="advanced", level=1, start_date=date(2025, 6, 1))
    student = make_student(stage="advanced", level=1, batch=batch, enrollment_date=date(2025, 6, 1))

    created = FeeCycleService(db).generate_obligations(student, now=NOW)
    assert [f.fee_month for f in created] == ["2025-06", "2025-07", "2025-08", "2025-09"]


def test_draft_batch_generates_nothing(db, courses, make_batch, make_student):
    batch = make_batch(code="SS:4:30", start_date=None)
    student = make_student(batch=batch)
    assert batch.is_draft
    assert FeeCycleService(db).generate_obligations(student, now=NOW) == []


def test_missing_level_fee_is_a_configuration_error(db, courses, make_batch, make_student):
    batch = make_batch(stage="advanced", level=2)
    student = make_student(stage="advanced", level=2, batch=batch)
    with pytest.raises(LevelNotConfigured):
        FeeCycleService(db).generate_obligations(student, now=NOW)


def test_inactive_course_is_a_configuration_error(db, courses):
    db.query(Course).filter(Course.course_name == "beginner").update({Course.is_active: False})
    db.commit()
    with pytest.raises(CourseNotConfigured):
        FeeCycleService(db).lookup_course_fee("beginner", 1)


def test_payable_fees(db, enrolled):
    service = FeeCycleService(db)
    service.generate_obligations(enrolled, now=NOW)
    jan = service.get_student_fees(enrolled.id)[0]
    service.record_payment(jan.id, datetime(2026, 1, 14), paid_amount=400)

    payable = service.get_payable_fees(enrolled.id, now=NOW)

    assert [f.fee_month for f in payable["overdue"]] == ["2026-02", "2026-03"]
    assert [f.fee_month for f in payable["partially_paid"]] == ["2026-01"]
    assert payable["next_upcoming"].fee_month == "2026-04"


def test_record_payment(db, enrolled):
    service = FeeCycleService(db)
    service.generate_obligations(enrolled, now=NOW)
    fee = service.get_student_fees(enrolled.id)[0]

    paid = service.record_payment(fee.id, datetime(2026, 1, 10), payment_method="upi")
    assert paid.paid_amount == 1000.0
    assert paid.status_at(NOW) == "paid"
    assert paid.payment_method == "upi"

    with pytest.raises(ValidationError):
        service.record_payment(fee.id, datetime(2026, 1, 10), paid_amount=1200)

    cleared = service.record_payment(fee.id, None)
    assert cleared.paid_amount == 0
    assert cleared.payment_method is None
    assert cleared.status_at(NOW) == "overdue"

    with pytest.raises(NotFoundError):
        service.record_payment(9999, datetime(2026, 1, 10))


def test_explicit_zero_payment_stays_unpaid(db, enrolled):
    service = FeeCycleService(db)
    service.generate_obligations(enrolled, now=NOW)
    fee = service.get_student_fees(enrolled.id)[0]

    recorded = service.record_payment(fee.id, datetime(2026, 1, 10), paid_amount=0)

    assert recorded.paid_amount == 0
    assert recorded.payment_date == datetime(2026, 1, 10)
    assert recorded.status_at(NOW) == "overdue"
