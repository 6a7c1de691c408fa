"""
Service: Monthly fee cycle
feecycle/services/fee_cycle_service.py

PRINCIPLE: a student owes one fee per month from their cycle start up to the
current month. Each month is a FeeRecord keyed by (student_id, 'YYYY-MM').

    Status = f(fee_amount, paid_amount, due_date, payment_date, now)

Status is never stored. derive_fee_status() is the only place the rule lives;
listings, filters and reports all go through it.

Cycle start:
  - student.fee_cycle_start_date, or enrollment_date when not set
  - when attaching to a batch, the LATER of batch start and student start
    (nobody owes months before they joined)

Due date: same day-of-month as the cycle start, clamped to the month length
(start on the 31st → due Feb 28/29), at end of day.
"""

import logging
from calendar import monthrange
from datetime import date, datetime, time
from typing import Dict, Iterable, List, NamedTuple, Optional, Set, Tuple

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from feecycle.config import FEE_GENERATION_MAX_MONTHS
from feecycle.exceptions import (
    CourseNotConfigured, LevelNotConfigured, NotFoundError, ValidationError
)
from feecycle.models import Course, Student
from feecycle.models_fee_ledger import FeeRecord, FeeStatus, PaymentMethod

logger = logging.getLogger(__name__)

END_OF_DAY = time(23, 59, 59, 999999)


class CourseFee(NamedTuple):
    fee_amount: float
    duration_months: int


# ══════════════════════════════════════════════════════════
# Pure helpers
# ══════════════════════════════════════════════════════════

def derive_fee_status(
    fee_amount: float,
    paid_amount: float,
    due_date: datetime,
    payment_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    paid_amount >= fee_amount       → paid
    0 < paid_amount < fee_amount    → partially_paid (payment_date irrelevant)
    paid_amount == 0, due < now     → overdue
    otherwise                       → upcoming

    payment_date is accepted so every caller passes the same payment facts,
    but it never changes the outcome.
    """
    now = now or datetime.now()
    fee = fee_amount or 0
    paid = paid_amount or 0

    if paid >= fee:
        return FeeStatus.PAID.value
    if paid > 0:
        return FeeStatus.PARTIALLY_PAID.value
    if due_date is not None and due_date < now:
        return FeeStatus.OVERDUE.value
    return FeeStatus.UPCOMING.value


def _as_date(value) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    return value


def effective_cycle_start(student) -> Optional[date]:
    return _as_date(student.fee_cycle_start_date or student.enrollment_date)


def resolve_cycle_start(batch_start: Optional[date], student_start: Optional[date]) -> Optional[date]:
    """Later of the two; either may be missing."""
    batch_start, student_start = _as_date(batch_start), _as_date(student_start)
    if batch_start and student_start:
        return max(batch_start, student_start)
    return batch_start or student_start


def month_start(d) -> date:
    return date(d.year, d.month, 1)


def fee_month_key(d) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def months_between(start, end) -> int:
    """Calendar months from start to end; negative when end is earlier."""
    return (end.year - start.year) * 12 + (end.month - start.month)


def due_date_for_month(month_anchor, cycle_start) -> datetime:
    last_day = monthrange(month_anchor.year, month_anchor.month)[1]
    day = min(cycle_start.day, last_day)
    return datetime.combine(date(month_anchor.year, month_anchor.month, day), END_OF_DAY)


def remaining_duration(total_months: int, batch_start, student_start) -> int:
    """A late joiner only owes what is left of the course, never less than one month."""
    if not batch_start or not student_start:
        return max(1, total_months)
    return max(1, total_months - months_between(batch_start, student_start))


def plan_obligation_months(
    cycle_start: date,
    now: datetime,
    month_limit: Optional[int] = None,
) -> List[Tuple[str, datetime]]:
    """
    [(fee_month, due_date), ...] from the cycle start month up to and
    including the current month, at most month_limit entries and never more
    than FEE_GENERATION_MAX_MONTHS.
    """
    limit = FEE_GENERATION_MAX_MONTHS
    if month_limit is not None:
        limit = min(limit, month_limit)

    current = month_start(now)
    anchor = month_start(cycle_start)
    plan = []
    for i in range(limit):
        m = anchor + relativedelta(months=i)
        if m > current:
            break
        plan.append((fee_month_key(m), due_date_for_month(m, cycle_start)))
    return plan


def match_payment_for_month(payments: Iterable, month_key: str):
    """
    Finds the snapshot payment cycle that belongs to `month_key`.

    Pass 1: a cycle whose due date falls in that month.
    Pass 2: a cycle whose paid date falls in that month (rows where the due
    date was never typed in).
    """
    payments = list(payments)
    for p in payments:
        if p.due_date and fee_month_key(p.due_date) == month_key:
            return p
    for p in payments:
        if p.paid_date and fee_month_key(p.paid_date) == month_key:
            return p
    return None


# ══════════════════════════════════════════════════════════
# Service
# ══════════════════════════════════════════════════════════

class FeeCycleService:

    def __init__(self, db: Session):
        self.db = db

    def lookup_course_fee(self, stage: str, level: int) -> CourseFee:
        course = self.db.query(Course).filter(
            Course.course_name == (stage or '').lower(),
            Course.is_active == True,  # noqa: E712
        ).first()
        if not course or not course.levels:
            raise CourseNotConfigured(stage)

        level_config = course.get_level(level)
        if not level_config:
            raise LevelNotConfigured(stage, level)

        return CourseFee(level_config.fee_amount, level_config.duration_months)

    def existing_months(self, student_id: int) -> Set[str]:
        rows = self.db.query(FeeRecord.fee_month).filter(FeeRecord.student_id == student_id).all()
        return {r[0] for r in rows}

    def generate_obligations(
        self,
        student: Student,
        now: Optional[datetime] = None,
        cycle_start: Optional[date] = None,
        total_duration: Optional[int] = None,
        updated_by: Optional[int] = None,
    ) -> List[FeeRecord]:
        """
        Creates the missing FeeRecords for `student` up to the current month.

        Months that already have a record are skipped, so running this twice
        creates nothing the second time. Students without a batch, or in a
        draft batch, get nothing. The number of months is capped by what is
        left of the course (total_duration, or the level's duration_months).

        Records are flushed, not committed; the caller owns the transaction.

        Raises:
            CourseNotConfigured, LevelNotConfigured
        """
        now = now or datetime.now()
        batch = student.batch
        if batch is None or batch.is_draft:
            logger.info(f"Student {student.id} has no billable batch, no fees generated")
            return []

        start = _as_date(cycle_start) or effective_cycle_start(student)
        if start is None:
            logger.warning(f"Student {student.id} has no cycle start date, no fees generated")
            return []

        course_fee = self.lookup_course_fee(student.stage, student.level)
        duration = total_duration or course_fee.duration_months
        limit = remaining_duration(duration, batch.start_date, start) if duration else None

        present = self.existing_months(student.id)
        created = []
        for month_key, due in plan_obligation_months(start, now, limit):
            if month_key in present:
                continue
            record = FeeRecord(
                student_id=student.id,
                student_name=student.student_name,
                stage=student.stage,
                level=student.level,
                fee_month=month_key,
                due_date=due,
                fee_amount=course_fee.fee_amount,
                paid_amount=0.0,
                updated_by=updated_by,
            )
            self.db.add(record)
            created.append(record)

        if created:
            self.db.flush()
            logger.info(
                f"Generated {len(created)} fee records for student {student.id} "
                f"({created[0].fee_month} → {created[-1].fee_month})"
            )
        return created

    def get_student_fees(self, student_id: int) -> List[FeeRecord]:
        return self.db.query(FeeRecord).filter(
            FeeRecord.student_id == student_id
        ).order_by(FeeRecord.due_date).all()

    def get_payable_fees(self, student_id: int, now: Optional[datetime] = None) -> Dict:
        """Overdue and partially paid fees, plus the next upcoming one."""
        now = now or datetime.now()
        overdue, partial, next_upcoming = [], [], None
        for fee in self.get_student_fees(student_id):
            status = fee.status_at(now)
            if status == FeeStatus.OVERDUE.value:
                overdue.append(fee)
            elif status == FeeStatus.PARTIALLY_PAID.value:
                partial.append(fee)
            elif status == FeeStatus.UPCOMING.value and next_upcoming is None:
                next_upcoming = fee
        return {"overdue": overdue, "partially_paid": partial, "next_upcoming": next_upcoming}

    def record_payment(
        self,
        fee_record_id: int,
        payment_date: Optional[datetime],
        paid_amount: Optional[float] = None,
        payment_method: Optional[str] = None,
        transaction_id: Optional[str] = None,
        remarks: Optional[str] = None,
        updated_by: Optional[int] = None,
        commit: bool = True,
    ) -> FeeRecord:
        """
        Sets the payment facts of one month.

        A payment date without an amount means the full fee was paid. An
        explicit 0 is kept, the month stays unpaid.
        Clearing the payment date resets the paid amount to 0.
        """
        fee = self.db.query(FeeRecord).filter(FeeRecord.id == fee_record_id).first()
        if not fee:
            raise NotFoundError("Fee record")

        if payment_date is None:
            paid_amount = 0.0
        elif paid_amount is None:
            paid_amount = fee.fee_amount

        if paid_amount < 0:
            raise ValidationError("Paid amount cannot be negative")
        if paid_amount > fee.fee_amount:
            raise ValidationError(
                f"Paid amount ({paid_amount}) cannot exceed fee amount ({fee.fee_amount})"
            )

        fee.paid_amount = paid_amount
        fee.payment_date = payment_date
        fee.payment_method = (payment_method or PaymentMethod.OTHER.value) if payment_date else None
        fee.transaction_id = transaction_id
        if remarks is not None:
            fee.remarks = remarks
        fee.updated_by = updated_by

        if commit:
            self.db.commit()
            self.db.refresh(fee)
        else:
            self.db.flush()
        logger.info(f"Payment recorded on fee {fee.id} ({fee.fee_month}): {paid_amount}")
        return fee
