"""
Module: Fees, credits and enrollment API
feecycle/routers/fees.py

Thin HTTP layer over the services. Domain errors carry their own HTTP
status; here they only become HTTPException.
"""
from datetime import date, datetime
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from feecycle.database import get_db
from feecycle.exceptions import FeeLedgerError
from feecycle.models import LEVELS, STAGES
from feecycle.models_fee_ledger import FeeRecord, PaymentMethod, StudentCredit
from feecycle.services.batch_service import BatchService
from feecycle.services.credit_ledger_service import CreditLedgerService
from feecycle.services.fee_cycle_service import FeeCycleService
from feecycle.services.reconciliation_service import resolve_acting_admin
from feecycle.services.student_service import StudentService
from feecycle.services.transition_service import TransitionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Fees"])


def get_acting_admin_id(db: Session = Depends(get_db)) -> Optional[int]:
    # Requests never create the system account; the reconcile task does
    return resolve_acting_admin(db, create=False)


def _http_error(e: FeeLedgerError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


def _fee_dict(fee: FeeRecord, now: Optional[datetime] = None) -> dict:
    return {
        "id": fee.id,
        "student_id": fee.student_id,
        "fee_month": fee.fee_month,
        "stage": fee.stage,
        "level": fee.level,
        "due_date": fee.due_date.isoformat() if fee.due_date else None,
        "fee_amount": fee.fee_amount,
        "paid_amount": fee.paid_amount,
        "remaining_amount": fee.remaining_amount,
        "payment_date": fee.payment_date.isoformat() if fee.payment_date else None,
        "payment_method": fee.payment_method,
        "status": fee.status_at(now),
    }


def _credit_dict(entry: StudentCredit) -> dict:
    return {
        "id": entry.id,
        "transaction_type": entry.transaction_type,
        "amount": entry.amount,
        "balance_before": entry.balance_before,
        "balance_after": entry.balance_after,
        "description": entry.description,
        "fee_month": entry.fee_month,
        "source_credit_id": entry.source_credit_id,
        "transaction_id": entry.transaction_id,
        "processed_at": entry.processed_at.isoformat() if entry.processed_at else None,
    }


# ══════════════════════════════════════════════════════════
# Schemas
# ══════════════════════════════════════════════════════════

class StageLevelMixin(BaseModel):
    stage: Optional[str] = None
    level: Optional[int] = None

    @field_validator("stage")
    @classmethod
    def stage_is_known(cls, v):
        if v is None:
            return v
        v = v.strip().lower()
        if v not in STAGES:
            raise ValueError(f"Stage must be one of {', '.join(STAGES)}")
        return v

    @field_validator("level")
    @classmethod
    def level_is_known(cls, v):
        if v is not None and v not in LEVELS:
            raise ValueError(f"Level must be one of {LEVELS}")
        return v


class BatchCreateRequest(StageLevelMixin):
    batch_code: str
    stage: str
    level: int
    start_date: Optional[date] = None
    description: str = ""


class StudentCreateRequest(StageLevelMixin):
    student_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    parent_name: Optional[str] = None
    batch_id: Optional[int] = None
    enrollment_date: Optional[date] = None
    remarks: Optional[str] = None


class AssignBatchRequest(BaseModel):
    batch_id: int


class TransitionRequest(StageLevelMixin):
    batch_id: int
    stage: str
    level: int


class PaymentRequest(BaseModel):
    payment_date: Optional[datetime] = None
    paid_amount: Optional[float] = None
    payment_method: Optional[PaymentMethod] = None
    transaction_id: Optional[str] = None
    remarks: Optional[str] = None

    @field_validator("paid_amount")
    @classmethod
    def amount_not_negative(cls, v):
        if v is not None and v < 0:
            raise ValueError("Paid amount cannot be negative")
        return round(v, 2) if v is not None else v


class CreditRequest(BaseModel):
    amount: float
    description: str
    payment_method: Optional[PaymentMethod] = None
    transaction_id: Optional[str] = None
    remarks: Optional[str] = None
    paid_date: Optional[datetime] = None

    @field_validator("amount")
    @classmethod
    def amount_positive(cls, v):
        if v <= 0:
            raise ValueError("Amount must be greater than 0")
        return round(v, 2)


class AdjustmentRequest(BaseModel):
    amount: float
    description: str
    remarks: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def amount_not_zero(cls, v):
        if v == 0:
            raise ValueError("Adjustment amount cannot be zero")
        return round(v, 2)


# ══════════════════════════════════════════════════════════
# Batches and students
# ══════════════════════════════════════════════════════════

@router.post("/batches", status_code=201)
def create_batch(body: BatchCreateRequest, db: Session = Depends(get_db),
                 admin_id: Optional[int] = Depends(get_acting_admin_id)):
    try:
        batch = BatchService(db).create_batch(
            body.batch_code, body.stage, body.level, body.start_date,
            created_by=admin_id, description=body.description,
        )
    except FeeLedgerError as e:
        raise _http_error(e)
    return {
        "id": batch.id,
        "batch_code": batch.batch_code,
        "status": batch.status,
        "start_date": batch.start_date.isoformat() if batch.start_date else None,
        "schedule": [{"day_of_week": s.day_of_week, "start_time": s.start_time} for s in batch.schedule],
    }


@router.post("/students", status_code=201)
def create_student(body: StudentCreateRequest, db: Session = Depends(get_db),
                   admin_id: Optional[int] = Depends(get_acting_admin_id)):
    try:
        result = StudentService(db).create_student(
            body.student_name, email=body.email, phone=body.phone,
            stage=body.stage, level=body.level, batch_id=body.batch_id,
            enrollment_date=body.enrollment_date, parent_name=body.parent_name,
            remarks=body.remarks, acting_admin_id=admin_id,
        )
    except FeeLedgerError as e:
        raise _http_error(e)

    student = result.student
    return {
        "id": student.id,
        "user_id": student.user_id,
        "has_batch": result.has_batch,
        "fee_cycle_start_date": student.fee_cycle_start_date.isoformat() if student.fee_cycle_start_date else None,
        "initial_fees": [_fee_dict(f) for f in result.fees_created],
        "message": None if result.has_batch else
            "Student created without batch. Payments will be kept as credit until a batch is assigned.",
    }


@router.post("/students/{student_id}/batch")
def assign_batch(student_id: int, body: AssignBatchRequest, db: Session = Depends(get_db),
                 admin_id: Optional[int] = Depends(get_acting_admin_id)):
    try:
        result = StudentService(db).assign_batch(student_id, body.batch_id, acting_admin_id=admin_id)
    except FeeLedgerError as e:
        raise _http_error(e)
    return {
        "student_id": student_id,
        "batch_id": result.student.batch_id,
        "fees_created": len(result.fees_created) if result.transition is None else result.transition.created,
        "credits_applied": result.credits_applied,
    }


@router.post("/students/{student_id}/transition")
def transition_student(student_id: int, body: TransitionRequest, db: Session = Depends(get_db),
                       admin_id: Optional[int] = Depends(get_acting_admin_id)):
    try:
        result = TransitionService(db).handle_stage_level_transition(
            student_id, body.batch_id, body.stage, body.level, acting_admin_id=admin_id,
        )
    except FeeLedgerError as e:
        raise _http_error(e)
    return {
        "student_id": result.student_id,
        "deleted": result.deleted,
        "created": result.created,
        "effective_date": result.effective_date.isoformat(),
        "credits_applied": result.credits_applied,
    }


# ══════════════════════════════════════════════════════════
# Fees
# ══════════════════════════════════════════════════════════

@router.get("/students/{student_id}/fees")
def list_student_fees(student_id: int, status: Optional[str] = Query(None), db: Session = Depends(get_db)):
    now = datetime.now()
    fees = [_fee_dict(f, now) for f in FeeCycleService(db).get_student_fees(student_id)]
    if status:
        fees = [f for f in fees if f["status"] == status]
    return {"student_id": student_id, "fees": fees}


@router.get("/students/{student_id}/fees/payable")
def payable_fees(student_id: int, db: Session = Depends(get_db)):
    now = datetime.now()
    payable = FeeCycleService(db).get_payable_fees(student_id, now)
    return {
        "overdue": [_fee_dict(f, now) for f in payable["overdue"]],
        "partially_paid": [_fee_dict(f, now) for f in payable["partially_paid"]],
        "next_upcoming": _fee_dict(payable["next_upcoming"], now) if payable["next_upcoming"] else None,
    }


@router.post("/fees/{fee_id}/payment")
def record_payment(fee_id: int, body: PaymentRequest, db: Session = Depends(get_db),
                   admin_id: Optional[int] = Depends(get_acting_admin_id)):
    try:
        fee = FeeCycleService(db).record_payment(
            fee_id, body.payment_date, paid_amount=body.paid_amount,
            payment_method=body.payment_method.value if body.payment_method else None,
            transaction_id=body.transaction_id, remarks=body.remarks, updated_by=admin_id,
        )
    except FeeLedgerError as e:
        raise _http_error(e)
    return _fee_dict(fee)


# ══════════════════════════════════════════════════════════
# Credits
# ══════════════════════════════════════════════════════════

@router.get("/credits/summary")
def credit_summary(student_ids: List[int] = Query(...), db: Session = Depends(get_db)):
    balances = CreditLedgerService(db).get_balances_for_students(student_ids)
    return {str(k): v for k, v in balances.items()}


@router.get("/credits/{student_id}")
def credit_balance(student_id: int, db: Session = Depends(get_db)):
    return {"student_id": student_id, "balance": CreditLedgerService(db).get_balance(student_id)}


@router.get("/credits/{student_id}/history")
def credit_history(student_id: int, limit: int = Query(50, ge=1, le=500), skip: int = Query(0, ge=0),
                   db: Session = Depends(get_db)):
    entries = CreditLedgerService(db).get_history(student_id, limit=limit, skip=skip)
    return {"student_id": student_id, "history": [_credit_dict(e) for e in entries]}


@router.post("/credits/{student_id}/add", status_code=201)
def add_credit(student_id: int, body: CreditRequest, db: Session = Depends(get_db),
               admin_id: Optional[int] = Depends(get_acting_admin_id)):
    try:
        entry = CreditLedgerService(db).add_credit(
            student_id, body.amount, body.description, processed_by=admin_id,
            payment_method=body.payment_method.value if body.payment_method else None,
            transaction_id=body.transaction_id, remarks=body.remarks, paid_date=body.paid_date,
        )
    except FeeLedgerError as e:
        raise _http_error(e)
    return _credit_dict(entry)


@router.post("/credits/{student_id}/refund", status_code=201)
def add_refund(student_id: int, body: CreditRequest, db: Session = Depends(get_db),
               admin_id: Optional[int] = Depends(get_acting_admin_id)):
    try:
        entry = CreditLedgerService(db).add_refund(
            student_id, body.amount, body.description, processed_by=admin_id, remarks=body.remarks,
        )
    except FeeLedgerError as e:
        raise _http_error(e)
    return _credit_dict(entry)


@router.post("/credits/{student_id}/adjust", status_code=201)
def adjust_credit(student_id: int, body: AdjustmentRequest, db: Session = Depends(get_db),
                  admin_id: Optional[int] = Depends(get_acting_admin_id)):
    try:
        entries = CreditLedgerService(db).make_adjustment(
            student_id, body.amount, body.description, processed_by=admin_id, remarks=body.remarks,
        )
    except FeeLedgerError as e:
        raise _http_error(e)
    return {"entries": [_credit_dict(e) for e in entries]}


@router.post("/credits/{student_id}/apply")
def apply_credits(student_id: int, db: Session = Depends(get_db),
                  admin_id: Optional[int] = Depends(get_acting_admin_id)):
    try:
        result = CreditLedgerService(db).apply_credits_to_obligations(student_id, processed_by=admin_id)
    except FeeLedgerError as e:
        raise _http_error(e)
    return {
        "amount_applied": result.amount_applied,
        "months_paid": result.months_paid,
        "remaining_balance": result.remaining_balance,
    }
