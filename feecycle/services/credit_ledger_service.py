"""
Service: Student credit ledger
feecycle/services/credit_ledger_service.py

Money received for a student that is not attached to a month yet (paid
while waiting for a batch, refunds, manual corrections).

APPEND-ONLY: rows are never updated or deleted. Every row stores
balance_before / balance_after, so the balance is the balance_after of the
latest row for the student.

FIFO: funding rows (credit_added, credit_refund, positive adjustment) are
consumed oldest first. Each consumption row points to the funding row it
draws from (source_credit_id), so:

    unspent(funding row) = amount - sum(consumptions pointing to it)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from feecycle.exceptions import InsufficientCreditError, NotFoundError, ValidationError
from feecycle.models import Student
from feecycle.models_fee_ledger import (
    CreditTransactionType, FeeRecord, FeeStatus, FUNDING_TYPES, PaymentMethod, StudentCredit
)

logger = logging.getLogger(__name__)


def _money(x: float) -> float:
    return round(x or 0.0, 2)


@dataclass
class CreditApplication:
    amount_applied: float = 0.0
    records_touched: List[int] = field(default_factory=list)
    remaining_balance: float = 0.0

    @property
    def months_paid(self) -> int:
        return len(self.records_touched)


class CreditLedgerService:

    def __init__(self, db: Session):
        self.db = db

    # ══════════════════════════════════════════════════════════
    # Reads
    # ══════════════════════════════════════════════════════════

    def get_balance(self, student_id: int) -> float:
        last = self.db.query(StudentCredit.balance_after).filter(
            StudentCredit.student_id == student_id
        ).order_by(StudentCredit.id.desc()).first()
        return _money(last[0]) if last else 0.0

    def get_history(self, student_id: int, limit: Optional[int] = None, skip: int = 0) -> List[StudentCredit]:
        q = self.db.query(StudentCredit).filter(
            StudentCredit.student_id == student_id
        ).order_by(StudentCredit.id.desc())
        if skip:
            q = q.offset(skip)
        if limit:
            q = q.limit(limit)
        return q.all()

    def get_balances_for_students(self, student_ids: Iterable[int]) -> Dict[int, float]:
        ids = list(student_ids)
        if not ids:
            return {}
        latest = self.db.query(
            func.max(StudentCredit.id).label("id")
        ).filter(
            StudentCredit.student_id.in_(ids)
        ).group_by(StudentCredit.student_id).subquery()

        rows = self.db.query(StudentCredit.student_id, StudentCredit.balance_after).join(
            latest, StudentCredit.id == latest.c.id
        ).all()

        balances = {sid: 0.0 for sid in ids}
        balances.update({sid: _money(bal) for sid, bal in rows})
        return balances

    def find_by_transaction_id(self, student_id: int, transaction_id: str) -> Optional[StudentCredit]:
        return self.db.query(StudentCredit).filter(
            StudentCredit.student_id == student_id,
            StudentCredit.transaction_id == transaction_id,
        ).first()

    def unspent_sources(self, student_id: int) -> List[tuple]:
        """[(funding_row, unspent_amount), ...] oldest first, unspent > 0 only."""
        funding = self.db.query(StudentCredit).filter(
            StudentCredit.student_id == student_id,
            StudentCredit.transaction_type.in_(FUNDING_TYPES),
            StudentCredit.source_credit_id.is_(None),
            StudentCredit.amount > 0,
        ).order_by(StudentCredit.processed_at, StudentCredit.id).all()
        if not funding:
            return []

        consumed_rows = self.db.query(
            StudentCredit.source_credit_id, func.sum(StudentCredit.amount)
        ).filter(
            StudentCredit.student_id == student_id,
            StudentCredit.source_credit_id.isnot(None),
        ).group_by(StudentCredit.source_credit_id).all()
        consumed = {sid: abs(total or 0) for sid, total in consumed_rows}

        sources = []
        for row in funding:
            unspent = _money(row.amount - consumed.get(row.id, 0.0))
            if unspent > 0:
                sources.append((row, unspent))
        return sources

    def unspent_amount(self, source: StudentCredit) -> float:
        consumed = self.db.query(func.sum(StudentCredit.amount)).filter(
            StudentCredit.source_credit_id == source.id
        ).scalar()
        return _money(source.amount - abs(consumed or 0))

    def fee_record_usage(self, fee_record_ids: Iterable[int]) -> List[StudentCredit]:
        """credit_used rows still pointing at the given fee records."""
        ids = list(fee_record_ids)
        if not ids:
            return []
        return self.db.query(StudentCredit).filter(
            StudentCredit.fee_record_id.in_(ids),
            StudentCredit.transaction_type == CreditTransactionType.CREDIT_USED.value,
            StudentCredit.source_credit_id.isnot(None),
        ).order_by(StudentCredit.id).all()

    # ══════════════════════════════════════════════════════════
    # Writes
    # ══════════════════════════════════════════════════════════

    def _student(self, student_id: int) -> Student:
        student = self.db.query(Student).filter(Student.id == student_id).first()
        if not student:
            raise NotFoundError("Student")
        return student

    def _append(self, student: Student, transaction_type: str, amount: float,
                balance_before: float, description: str, processed_at: datetime,
                **extra) -> StudentCredit:
        entry = StudentCredit(
            student_id=student.id,
            student_name=student.student_name,
            transaction_type=transaction_type,
            amount=_money(amount),
            balance_before=_money(balance_before),
            balance_after=_money(balance_before + amount),
            description=description,
            processed_at=processed_at,
            **extra,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def _finish(self, commit: bool):
        if commit:
            self.db.commit()

    def add_credit(
        self,
        student_id: int,
        amount: float,
        description: str,
        processed_by: Optional[int] = None,
        payment_method: Optional[str] = None,
        transaction_id: Optional[str] = None,
        remarks: Optional[str] = None,
        due_date: Optional[datetime] = None,
        paid_date: Optional[datetime] = None,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> StudentCredit:
        """
        Appends a prepayment. A transaction_id already on the student's
        ledger returns the existing row instead of crediting twice.
        """
        if amount is None or amount <= 0:
            raise ValidationError("Credit amount must be positive")

        student = self._student(student_id)
        if transaction_id:
            existing = self.find_by_transaction_id(student_id, transaction_id)
            if existing:
                logger.info(f"Credit {transaction_id} already recorded for student {student_id}")
                return existing

        entry = self._append(
            student, CreditTransactionType.CREDIT_ADDED.value, amount,
            self.get_balance(student_id), description,
            processed_at=paid_date or now or datetime.now(),
            payment_method=payment_method,
            transaction_id=transaction_id,
            processed_by=processed_by,
            remarks=remarks,
            due_date=due_date,
            paid_date=paid_date,
        )
        self._finish(commit)
        logger.info(f"Credit added for student {student_id}: {amount} (balance {entry.balance_after})")
        return entry

    def add_refund(
        self,
        student_id: int,
        amount: float,
        description: str,
        processed_by: Optional[int] = None,
        fee_record_id: Optional[int] = None,
        remarks: Optional[str] = None,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> StudentCredit:
        if amount is None or amount <= 0:
            raise ValidationError("Refund amount must be positive")

        student = self._student(student_id)
        entry = self._append(
            student, CreditTransactionType.CREDIT_REFUND.value, amount,
            self.get_balance(student_id), description,
            processed_at=now or datetime.now(),
            fee_record_id=fee_record_id,
            processed_by=processed_by,
            remarks=remarks,
        )
        self._finish(commit)
        return entry

    def _consume(self, student: Student, transaction_type: str, amount: float,
                 description: str, processed_at: datetime, sign: int = 1,
                 fee_record: Optional[FeeRecord] = None, **extra) -> List[StudentCredit]:
        """Draws `amount` from funding rows, oldest first. One row per slice."""
        balance = self.get_balance(student.id)
        if balance < _money(amount):
            raise InsufficientCreditError(
                f"Insufficient credit balance. Available: {balance}, Required: {amount}"
            )

        entries = []
        pending = _money(amount)
        for source, unspent in self.unspent_sources(student.id):
            if pending <= 0:
                break
            take = min(pending, unspent)
            entries.append(self._append(
                student, transaction_type, sign * take, balance, description,
                processed_at=processed_at,
                source_credit_id=source.id,
                fee_record_id=fee_record.id if fee_record else None,
                fee_month=fee_record.fee_month if fee_record else None,
                **extra,
            ))
            balance = _money(balance + sign * take)
            pending = _money(pending - take)
        return entries

    def use_credit(
        self,
        student_id: int,
        amount: float,
        description: str,
        processed_by: Optional[int] = None,
        fee_record: Optional[FeeRecord] = None,
        remarks: Optional[str] = None,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> List[StudentCredit]:
        if amount is None or amount <= 0:
            raise ValidationError("Credit usage amount must be positive")

        student = self._student(student_id)
        entries = self._consume(
            student, CreditTransactionType.CREDIT_USED.value, amount, description,
            processed_at=now or datetime.now(), sign=-1, fee_record=fee_record,
            processed_by=processed_by, remarks=remarks,
        )
        self._finish(commit)
        return entries

    def make_adjustment(
        self,
        student_id: int,
        amount: float,
        description: str,
        processed_by: Optional[int] = None,
        remarks: Optional[str] = None,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> List[StudentCredit]:
        """Signed correction. Negative amounts draw from the oldest credit first."""
        if not amount:
            raise ValidationError("Adjustment amount cannot be zero")

        student = self._student(student_id)
        processed_at = now or datetime.now()

        if amount > 0:
            entries = [self._append(
                student, CreditTransactionType.CREDIT_ADJUSTMENT.value, amount,
                self.get_balance(student_id), description,
                processed_at=processed_at, processed_by=processed_by, remarks=remarks,
            )]
        else:
            balance = self.get_balance(student_id)
            if balance + amount < 0:
                raise InsufficientCreditError(
                    f"Adjustment would result in negative balance. Current: {balance}, Adjustment: {amount}"
                )
            entries = self._consume(
                student, CreditTransactionType.CREDIT_ADJUSTMENT.value, -amount, description,
                processed_at=processed_at, sign=-1, processed_by=processed_by, remarks=remarks,
            )
        self._finish(commit)
        return entries

    def apply_credits_to_obligations(
        self,
        student_id: int,
        processed_by: Optional[int] = None,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> CreditApplication:
        """
        Pays unpaid fee records (oldest due date first) with the student's
        unspent credit, oldest credit first.

        A record only partly covered ends up partially_paid. The balance never
        goes below zero and no record is paid beyond its fee amount.
        """
        now = now or datetime.now()
        result = CreditApplication()
        student = self._student(student_id)

        sources = self.unspent_sources(student_id)
        if not sources:
            return result

        unpaid = [
            f for f in self.db.query(FeeRecord).filter(
                FeeRecord.student_id == student_id
            ).order_by(FeeRecord.due_date, FeeRecord.id).all()
            if f.status_at(now) != FeeStatus.PAID.value
        ]

        balance = self.get_balance(student_id)
        src_iter = iter(sources)
        source, available = next(src_iter, (None, 0.0))

        for fee in unpaid:
            while source is not None and fee.remaining_amount > 0:
                take = _money(min(fee.remaining_amount, available))
                self._append(
                    student, CreditTransactionType.CREDIT_USED.value, -take, balance,
                    f"Applied to fee {fee.fee_month}",
                    processed_at=now,
                    source_credit_id=source.id,
                    fee_record_id=fee.id,
                    fee_month=fee.fee_month,
                    processed_by=processed_by,
                )
                balance = _money(balance - take)
                available = _money(available - take)

                fee.paid_amount = _money((fee.paid_amount or 0) + take)
                fee.payment_date = source.paid_date or source.processed_at
                fee.payment_method = source.payment_method or PaymentMethod.OTHER.value
                fee.updated_by = processed_by
                if fee.id not in result.records_touched:
                    result.records_touched.append(fee.id)
                result.amount_applied = _money(result.amount_applied + take)

                if available <= 0:
                    source, available = next(src_iter, (None, 0.0))
            if source is None:
                break

        result.remaining_balance = balance
        self.db.flush()
        self._finish(commit)
        if result.amount_applied:
            logger.info(
                f"Applied {result.amount_applied} credit to {result.months_paid} fee records "
                f"for student {student_id} (remaining {balance})"
            )
        return result

    def consume_source(
        self,
        source: StudentCredit,
        amount: float,
        description: str,
        fee_record: Optional[FeeRecord] = None,
        processed_by: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[StudentCredit]:
        """Draws up to `amount` from one specific funding row. None when it is spent."""
        take = _money(min(amount, self.unspent_amount(source)))
        if take <= 0:
            return None
        student = self._student(source.student_id)
        return self._append(
            student, CreditTransactionType.CREDIT_USED.value, -take,
            self.get_balance(student.id), description,
            processed_at=now or datetime.now(),
            source_credit_id=source.id,
            fee_record_id=fee_record.id if fee_record else None,
            fee_month=fee_record.fee_month if fee_record else None,
            processed_by=processed_by,
        )

    def release_fee_records(
        self,
        student_id: int,
        fee_record_ids: Iterable[int],
        processed_by: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> float:
        """
        Gives back the credit spent on fee records that are about to be
        deleted, then detaches the ledger from them.

        Each credit_used slice gets a reversing credit_adjustment of the same
        size against the same funding row, so that row is unspent again and
        the balance goes back up. Returns the amount restored.
        """
        ids = list(fee_record_ids)
        usage = self.fee_record_usage(ids)
        restored = 0.0
        if usage:
            student = self._student(student_id)
            balance = self.get_balance(student_id)
            for used in usage:
                amount = _money(-used.amount)
                self._append(
                    student, CreditTransactionType.CREDIT_ADJUSTMENT.value, amount, balance,
                    f"Reversal of credit used on fee {used.fee_month}",
                    processed_at=now or datetime.now(),
                    source_credit_id=used.source_credit_id,
                    fee_month=used.fee_month,
                    processed_by=processed_by,
                )
                balance = _money(balance + amount)
                restored = _money(restored + amount)
            logger.info(f"Restored {restored} credit from {len(ids)} fee records of student {student_id}")
        self.detach_fee_records(ids)
        return restored

    def detach_fee_records(self, fee_record_ids: Iterable[int]) -> int:
        """Clears fee_record_id on ledger rows before those records are deleted."""
        ids = list(fee_record_ids)
        if not ids:
            return 0
        return self.db.query(StudentCredit).filter(
            StudentCredit.fee_record_id.in_(ids)
        ).update({StudentCredit.fee_record_id: None}, synchronize_session=False)
