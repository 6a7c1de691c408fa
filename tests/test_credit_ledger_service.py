from datetime import date, datetime

import pytest

from feecycle.exceptions import InsufficientCreditError, NotFoundError, ValidationError
from feecycle.models_fee_ledger import StudentCredit
from feecycle.services.credit_ledger_service import CreditLedgerService
from feecycle.services.fee_cycle_service import FeeCycleService

NOW = datetime(2026, 3, 20, 10, 0)


@pytest.fixture
def student(courses, make_batch, make_student):
    batch = make_batch(start_date=date(2026, 1, 15))
    return make_student(email="asha@example.com", batch=batch, enrollment_date=date(2026, 1, 15))


@pytest.fixture
def ledger(db):
    return CreditLedgerService(db)


def test_balance_is_chained(ledger, student):
    first = ledger.add_credit(student.id, 500, "Advance", now=datetime(2026, 1, 1))
    second = ledger.add_credit(student.id, 300, "Advance", now=datetime(2026, 1, 2))

    assert (first.balance_before, first.balance_after) == (0.0, 500.0)
    assert (second.balance_before, second.balance_after) == (500.0, 800.0)
    assert ledger.get_balance(student.id) == 800.0


@pytest.mark.parametrize("amount", [0, -10, None])
def test_credit_amount_must_be_positive(ledger, student, amount):
    with pytest.raises(ValidationError):
        ledger.add_credit(student.id, amount, "Advance")


def test_unknown_student(ledger, courses):
    with pytest.raises(NotFoundError):
        ledger.add_credit(9999, 100, "Advance")


def test_transaction_id_is_not_credited_twice(db, ledger, student):
    a = ledger.add_credit(student.id, 500, "Advance", transaction_id="rcpt-1", now=NOW)
    b = ledger.add_credit(student.id, 500, "Advance", transaction_id="rcpt-1", now=NOW)

    assert a.id == b.id
    assert ledger.get_balance(student.id) == 500.0
    assert db.query(StudentCredit).count() == 1


def test_apply_credit_oldest_fee_first(db, ledger, student):
    fees = FeeCycleService(db).generate_obligations(student, now=NOW)
    db.commit()
    ledger.add_credit(student.id, 1500, "Advance", paid_date=datetime(2026, 1, 5), payment_method="cash")

    result = ledger.apply_credits_to_obligations(student.id, now=NOW)

    assert result.amount_applied == 1500.0
    assert result.months_paid == 2
    assert result.remaining_balance == 0.0
    assert ledger.get_balance(student.id) == 0.0
    assert [f.status_at(NOW) for f in fees] == ["paid", "partially_paid", "overdue"]
    assert sum(f.paid_amount for f in fees) == 1500.0
    assert fees[0].payment_date == datetime(2026, 1, 5)
    assert fees[0].payment_method == "cash"


def test_apply_credit_never_overpays(db, ledger, student):
    fees = FeeCycleService(db).generate_obligations(student, now=NOW)
    db.commit()
    ledger.add_credit(student.id, 5000, "Advance", now=NOW)

    result = ledger.apply_credits_to_obligations(student.id, now=NOW)

    assert result.amount_applied == 3000.0
    assert all(f.paid_amount == f.fee_amount for f in fees)
    assert ledger.get_balance(student.id) == 2000.0
    assert ledger.apply_credits_to_obligations(student.id, now=NOW).amount_applied == 0


def test_consumption_is_fifo(ledger, student):
    old = ledger.add_credit(student.id, 400, "Old", now=datetime(2026, 1, 1))
    new = ledger.add_credit(student.id, 800, "New", now=datetime(2026, 1, 2))

    used = ledger.use_credit(student.id, 600, "Books", now=NOW)

    assert [(u.source_credit_id, u.amount) for u in used] == [(old.id, -400.0), (new.id, -200.0)]
    assert [(s.id, unspent) for s, unspent in ledger.unspent_sources(student.id)] == [(new.id, 600.0)]
    assert ledger.get_balance(student.id) == 600.0


def test_use_credit_beyond_balance(ledger, student):
    ledger.add_credit(student.id, 100, "Advance", now=NOW)
    with pytest.raises(InsufficientCreditError):
        ledger.use_credit(student.id, 150, "Books")
    assert ledger.get_balance(student.id) == 100.0


def test_adjustments(ledger, student):
    with pytest.raises(ValidationError):
        ledger.make_adjustment(student.id, 0, "Nothing")

    [bonus] = ledger.make_adjustment(student.id, 500, "Goodwill", now=datetime(2026, 1, 1))
    assert bonus.transaction_type == "credit_adjustment"
    assert ledger.get_balance(student.id) == 500.0

    with pytest.raises(InsufficientCreditError) as exc:
        ledger.make_adjustment(student.id, -700, "Too much")
    assert "negative balance" in exc.value.message

    [correction] = ledger.make_adjustment(student.id, -200, "Typo", now=NOW)
    assert correction.amount == -200.0
    assert correction.source_credit_id == bonus.id
    assert ledger.get_balance(student.id) == 300.0


def test_refund_funds_the_balance(ledger, student):
    refund = ledger.add_refund(student.id, 250, "Class cancelled", now=NOW)
    assert refund.transaction_type == "credit_refund"
    assert ledger.unspent_sources(student.id)[0][1] == 250.0


def test_history_is_newest_first(ledger, student):
    ledger.add_credit(student.id, 100, "One", now=datetime(2026, 1, 1))
    ledger.add_credit(student.id, 200, "Two", now=datetime(2026, 1, 2))
    ledger.use_credit(student.id, 50, "Three", now=datetime(2026, 1, 3))

    history = ledger.get_history(student.id)
    assert [h.description for h in history] == ["Three", "Two", "One"]
    assert [h.description for h in ledger.get_history(student.id, limit=1, skip=1)] == ["Two"]


def test_balances_for_many_students(ledger, student, make_student):
    other = make_student(name="Ben", phone="9876543210")
    ledger.add_credit(student.id, 100, "One", now=NOW)
    ledger.add_credit(student.id, 50, "Two", now=NOW)

    balances = ledger.get_balances_for_students([student.id, other.id])
    assert balances == {student.id: 150.0, other.id: 0.0}
    assert ledger.get_balances_for_students([]) == {}


def test_release_restores_credit_spent_on_deleted_records(db, ledger, student):
    fees = FeeCycleService(db).generate_obligations(student, now=NOW)
    db.commit()
    source = ledger.add_credit(student.id, 1500, "Advance", now=datetime(2026, 1, 5))
    ledger.apply_credits_to_obligations(student.id, now=NOW)
    assert ledger.get_balance(student.id) == 0.0

    restored = ledger.release_fee_records(student.id, [f.id for f in fees], now=NOW)

    assert restored == 1500.0
    assert ledger.get_balance(student.id) == 1500.0
    assert ledger.unspent_amount(source) == 1500.0
    assert ledger.fee_record_usage(f.id for f in fees) == []
    assert ledger.release_fee_records(student.id, [f.id for f in fees], now=NOW) == 0.0
    assert ledger.get_balance(student.id) == 1500.0


def test_consume_source_draws_from_that_row_only(db, ledger, student):
    fees = FeeCycleService(db).generate_obligations(student, now=NOW)
    db.commit()
    older = ledger.add_credit(student.id, 500, "Advance", now=datetime(2026, 1, 1))
    newer = ledger.add_credit(student.id, 1000, "Payment", now=datetime(2026, 1, 2))

    entry = ledger.consume_source(newer, 1200, "Settled", fee_record=fees[0], now=NOW)

    assert entry.amount == -1000.0
    assert entry.fee_month == fees[0].fee_month
    assert ledger.unspent_amount(older) == 500.0
    assert ledger.unspent_amount(newer) == 0.0
    assert ledger.consume_source(newer, 100, "Settled", now=NOW) is None
    assert ledger.get_balance(student.id) == 500.0
