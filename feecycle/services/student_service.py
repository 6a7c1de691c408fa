"""
Service: Student enrollment
feecycle/services/student_service.py

A student and their identity account are created together or not at all.

Students created without a batch (or in a draft batch) get no fee records:
anything they pay goes to the credit ledger, and that credit is applied
when they are attached to a billable batch.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from feecycle.exceptions import (
    DuplicateError, FeeLedgerError, IncompatibleBatchError, NotFoundError, ValidationError
)
from feecycle.models import Batch, Student, User, UserRole
from feecycle.models_fee_ledger import FeeRecord
from feecycle.services.batch_code_parser import clean_email, clean_phone_number
from feecycle.services.batch_service import validate_stage_level
from feecycle.services.credit_ledger_service import CreditLedgerService
from feecycle.services.fee_cycle_service import FeeCycleService, resolve_cycle_start
from feecycle.services.transition_service import TransitionResult, TransitionService

logger = logging.getLogger(__name__)


@dataclass
class EnrollmentResult:
    student: Student
    fees_created: List[FeeRecord] = field(default_factory=list)
    credits_applied: float = 0.0
    transition: Optional[TransitionResult] = None

    @property
    def has_batch(self) -> bool:
        return self.student.batch_id is not None


class StudentService:

    def __init__(self, db: Session):
        self.db = db
        self.fees = FeeCycleService(db)
        self.credits = CreditLedgerService(db)

    def _get_batch(self, batch_id: int) -> Batch:
        batch = self.db.query(Batch).filter(Batch.id == batch_id).first()
        if not batch:
            raise NotFoundError("Batch")
        return batch

    def find_or_create_user(self, email: str, phone: str) -> User:
        """Reuses the account that owns the email, else the phone."""
        user = None
        if email:
            user = self.db.query(User).filter(User.email == email).first()
        if not user and phone:
            user = self.db.query(User).filter(User.phone == phone).first()
        if user:
            return user

        user = User(
            username=email or phone,
            email=email or None,
            phone=phone or None,
            role=UserRole.STUDENT.value,
            is_active=True,
        )
        self.db.add(user)
        self.db.flush()
        return user

    def _attach(self, student: Student, batch: Batch, acting_admin_id: Optional[int], now: datetime):
        """Bills from the later of batch start and enrollment, then spends credit."""
        student.batch = batch
        if batch.is_draft:
            return [], 0.0

        student.fee_cycle_start_date = resolve_cycle_start(batch.start_date, student.enrollment_date)
        self.db.flush()
        created = self.fees.generate_obligations(student, now=now, updated_by=acting_admin_id)
        applied = self.credits.apply_credits_to_obligations(
            student.id, processed_by=acting_admin_id, now=now, commit=False
        )
        return created, applied.amount_applied

    def create_student(
        self,
        student_name: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        stage: Optional[str] = None,
        level: Optional[int] = None,
        batch_id: Optional[int] = None,
        enrollment_date: Optional[date] = None,
        parent_name: Optional[str] = None,
        remarks: Optional[str] = None,
        acting_admin_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> EnrollmentResult:
        now = now or datetime.now()
        name = (student_name or "").strip()
        if not name:
            raise ValidationError("Student name is required")

        email = clean_email(email)
        phone = clean_phone_number(phone)
        if not email and not phone:
            raise ValidationError("Student must have either email or phone number")

        batch = self._get_batch(batch_id) if batch_id else None
        if batch:
            stage = stage or batch.stage
            level = level or batch.level
            if (stage, level) != (batch.stage, batch.level):
                raise IncompatibleBatchError(
                    f"Batch {batch.batch_code} is {batch.stage} L{batch.level}, student is {stage} L{level}"
                )
        if stage or level:
            validate_stage_level(stage, level)

        try:
            user = self.find_or_create_user(email, phone)
            student = Student(
                student_name=name,
                email=email or None,
                phone=phone or None,
                parent_name=parent_name,
                stage=stage,
                level=level,
                user=user,
                enrollment_date=enrollment_date or now.date(),
                is_active=True,
                remarks=remarks,
            )
            self.db.add(student)
            self.db.flush()

            created, applied = [], 0.0
            if batch:
                created, applied = self._attach(student, batch, acting_admin_id, now)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise DuplicateError(f"Student or account already exists: {e.orig}")
        except FeeLedgerError:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.error(f"Student creation failed for {name}", exc_info=True)
            raise

        self.db.refresh(student)
        logger.info(
            f"Student created: {student.id} {name} "
            f"({'batch ' + batch.batch_code if batch else 'no batch'}, {len(created)} fees)"
        )
        return EnrollmentResult(student=student, fees_created=created, credits_applied=applied)

    def assign_batch(
        self,
        student_id: int,
        batch_id: int,
        acting_admin_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> EnrollmentResult:
        """
        First batch for a student. Students already in a batch go through
        TransitionService instead.
        """
        now = now or datetime.now()
        student = self.db.query(Student).filter(Student.id == student_id).first()
        if not student:
            raise NotFoundError("Student")
        batch = self._get_batch(batch_id)

        if student.batch_id is not None:
            result = TransitionService(self.db).handle_stage_level_transition(
                student.id, batch.id, batch.stage, batch.level,
                acting_admin_id=acting_admin_id, now=now,
            )
            self.db.refresh(student)
            return EnrollmentResult(
                student=student,
                fees_created=[],
                credits_applied=result.credits_applied,
                transition=result,
            )

        if student.stage and (student.stage, student.level) != (batch.stage, batch.level):
            raise IncompatibleBatchError(
                f"Batch {batch.batch_code} is {batch.stage} L{batch.level}, "
                f"student is {student.stage} L{student.level}"
            )
        student.stage, student.level = batch.stage, batch.level

        try:
            created, applied = self._attach(student, batch, acting_admin_id, now)
            self.db.commit()
        except FeeLedgerError:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.error(f"Batch assignment failed for student {student_id}", exc_info=True)
            raise

        logger.info(f"Student {student_id} assigned to {batch.batch_code}: {len(created)} fees, {applied} credit applied")
        return EnrollmentResult(student=student, fees_created=created, credits_applied=applied)
