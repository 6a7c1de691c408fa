"""
Service: Stage / level / batch transitions
feecycle/services/transition_service.py

When a student moves to another batch mid-course:

  1. the destination batch must teach the requested stage/level
  2. unpaid future fees (paid_amount == 0, due today or later) are dropped
  3. billing restarts at max(batch start, today)
  4. the student is moved
  5. fees are regenerated under the new stage/level and credit is applied

Paid and overdue history is never touched. All or nothing: any failure
rolls the whole transition back.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional

from sqlalchemy.orm import Session

from feecycle.exceptions import FeeLedgerError, IncompatibleBatchError, NotFoundError
from feecycle.models import Batch, Student
from feecycle.models_fee_ledger import FeeRecord
from feecycle.services.credit_ledger_service import CreditLedgerService
from feecycle.services.fee_cycle_service import FeeCycleService

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    student_id: int
    deleted: int
    created: int
    effective_date: date
    credits_applied: float = 0.0


class TransitionService:

    def __init__(self, db: Session):
        self.db = db
        self.fees = FeeCycleService(db)
        self.credits = CreditLedgerService(db)

    def handle_stage_level_transition(
        self,
        student_id: int,
        batch_id: int,
        new_stage: str,
        new_level: int,
        acting_admin_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        now = now or datetime.now()
        today = now.date()

        student = self.db.query(Student).filter(Student.id == student_id).first()
        if not student:
            raise NotFoundError("Student")
        batch = self.db.query(Batch).filter(Batch.id == batch_id).first()
        if not batch:
            raise NotFoundError("Batch")

        if batch.stage != new_stage or batch.level != new_level:
            raise IncompatibleBatchError(
                f"Batch {batch.batch_code} is {batch.stage} L{batch.level}, "
                f"cannot move student to {new_stage} L{new_level}"
            )
        if batch.is_draft:
            raise IncompatibleBatchError(
                f"Batch {batch.batch_code} is a draft and has no start date to bill from"
            )
        # Fails before anything is written
        self.fees.lookup_course_fee(new_stage, new_level)

        try:
            start_of_today = datetime.combine(today, time.min)
            stale = self.db.query(FeeRecord).filter(
                FeeRecord.student_id == student.id,
                FeeRecord.paid_amount == 0,
                FeeRecord.due_date >= start_of_today,
            ).all()
            self.credits.detach_fee_records(f.id for f in stale)
            for fee in stale:
                self.db.delete(fee)
            self.db.flush()

            effective_date = max(batch.start_date, today) if batch.start_date else today

            student.fee_cycle_start_date = effective_date
            student.stage = new_stage
            student.level = new_level
            student.batch = batch
            self.db.flush()

            created = self.fees.generate_obligations(
                student, now=now, cycle_start=effective_date, updated_by=acting_admin_id
            )
            applied = self.credits.apply_credits_to_obligations(
                student.id, processed_by=acting_admin_id, now=now, commit=False
            )
            self.db.commit()
        except FeeLedgerError:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.error(f"Transition failed for student {student_id}", exc_info=True)
            raise

        logger.info(
            f"Student {student_id} moved to {batch.batch_code} ({new_stage} L{new_level}): "
            f"{len(stale)} fees dropped, {len(created)} created, effective {effective_date}"
        )
        return TransitionResult(
            student_id=student_id,
            deleted=len(stale),
            created=len(created),
            effective_date=effective_date,
            credits_applied=applied.amount_applied,
        )
