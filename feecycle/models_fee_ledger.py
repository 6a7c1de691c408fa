"""
Module: Fee Ledger, SQLAlchemy models
feecycle/models_fee_ledger.py

Principles:
1. ONE ROW PER STUDENT PER MONTH: (student_id, fee_month) is unique,
   fee_month is always 'YYYY-MM'.
2. STATUS IS DERIVED: there is no status column. It is computed on read from
   fee_amount, paid_amount, due_date, payment_date and "now"
   (see services/fee_cycle_service.derive_fee_status).
3. APPEND-ONLY CREDIT: student_credits rows are never updated; the running
   balance is the balance_after of the latest row.
"""

from sqlalchemy import (
    Column, Integer, String, Float, Text, DateTime,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from feecycle.database import Base


# ═══════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════

class FeeStatus(str, enum.Enum):
    """Derived payment status. Never persisted."""
    PAID = "paid"
    PARTIALLY_PAID = "partially_paid"
    OVERDUE = "overdue"
    UPCOMING = "upcoming"

class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    ONLINE = "online"
    CARD = "card"
    UPI = "upi"
    OTHER = "other"

class CreditTransactionType(str, enum.Enum):
    CREDIT_ADDED = "credit_added"           # prepayment received
    CREDIT_USED = "credit_used"             # consumed by a fee record
    CREDIT_REFUND = "credit_refund"         # refund credited back
    CREDIT_ADJUSTMENT = "credit_adjustment" # signed manual correction

# Entries that fund the balance and can later be consumed FIFO
FUNDING_TYPES = (
    CreditTransactionType.CREDIT_ADDED.value,
    CreditTransactionType.CREDIT_REFUND.value,
    CreditTransactionType.CREDIT_ADJUSTMENT.value,
)


# ═══════════════════════════════════════════════════════════
# TABLE: FEE RECORDS
# ═══════════════════════════════════════════════════════════

class FeeRecord(Base):
    """
    One month's obligation for a student.

    Created in monthly runs by the fee cycle engine; deleted wholesale
    (unpaid, future-dated) on stage/level transitions; otherwise only
    mutated to record a payment.
    """
    __tablename__ = "fee_records"
    __table_args__ = (
        UniqueConstraint("student_id", "fee_month", name="uq_fee_record_student_month"),
        Index("ix_fee_records_student_due", "student_id", "due_date"),
        Index("ix_fee_records_student_payment", "student_id", "payment_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    student_name = Column(String(100), nullable=False)

    stage = Column(String(20), nullable=False)
    level = Column(Integer, nullable=False)

    fee_month = Column(String(7), nullable=False)       # '2026-01'
    due_date = Column(DateTime, nullable=False)         # end of day, 23:59:59.999999

    fee_amount = Column(Float, nullable=False)
    paid_amount = Column(Float, nullable=False, default=0.0)
    payment_date = Column(DateTime, nullable=True)
    payment_method = Column(String(20), nullable=True)
    transaction_id = Column(String(100), nullable=True)
    remarks = Column(String(500), nullable=True)

    updated_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    student = relationship("Student", back_populates="fee_records")

    @property
    def remaining_amount(self) -> float:
        return max(0.0, (self.fee_amount or 0) - (self.paid_amount or 0))

    def status_at(self, now=None) -> str:
        from feecycle.services.fee_cycle_service import derive_fee_status
        return derive_fee_status(self.fee_amount, self.paid_amount, self.due_date, self.payment_date, now)


# ═══════════════════════════════════════════════════════════
# TABLE: STUDENT CREDITS (append-only ledger)
# ═══════════════════════════════════════════════════════════

class StudentCredit(Base):
    """
    Ledger entry for money held on a student's account that is not attached
    to a month yet.

    - credit_added / credit_refund / positive credit_adjustment fund the
      balance (amount > 0).
    - credit_used and negative credit_adjustment consume a funding entry,
      referenced by source_credit_id.
    - Unspent amount of a funding entry = amount - sum(consumptions of it).
    """
    __tablename__ = "student_credits"
    __table_args__ = (
        Index("ix_student_credits_student", "student_id", "id"),
        Index("ix_student_credits_type", "transaction_type", "processed_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    student_name = Column(String(100), nullable=False)

    transaction_type = Column(String(30), nullable=False)
    amount = Column(Float, nullable=False)
    balance_before = Column(Float, nullable=False, default=0.0)
    balance_after = Column(Float, nullable=False, default=0.0)
    description = Column(String(500), nullable=False)

    payment_method = Column(String(20), nullable=True)
    transaction_id = Column(String(150), nullable=True, index=True)
    source_credit_id = Column(Integer, ForeignKey("student_credits.id"), nullable=True)
    fee_record_id = Column(Integer, ForeignKey("fee_records.id", ondelete="SET NULL"), nullable=True)
    fee_month = Column(String(7), nullable=True)
    due_date = Column(DateTime, nullable=True)
    paid_date = Column(DateTime, nullable=True)

    processed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    processed_at = Column(DateTime, nullable=False)
    remarks = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
