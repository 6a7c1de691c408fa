"""
Service: Reconciliation against the student spreadsheet
feecycle/services/reconciliation_service.py

The spreadsheet is the authority. A run:

PHASE 1  Batches
  Groups students by (batch code, batch start, stage, level), picks a unique
  display code for each group and creates the batch (active with a start
  date, draft without) or updates the stored one.

PHASE 2  Students and fees
  For each spreadsheet student:
  - finds the stored student (email, then phone, then name)
  - diffs stage / level / batch / fee cycle start / active
  - billable batch: audits the stored fees, then deletes and regenerates them
    from the cycle start and replays the spreadsheet payments
  - draft batch or none: removes stored fees and moves observed payments to
    the credit ledger

Credit spent on a deleted record is reversed before the delete and applied
again afterwards. A replayed payment that was credited earlier retires its
own credit row, so one payment never pays two months.

Every finding is reported as an issue, never raised. Everything that goes in
the report is computed from reads before any write, so a dry run prints
exactly what the live run will do; dry_run only skips the writes.

A student that fails is rolled back and counted; the run goes on.
"""

import logging
from collections import Counter, OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from feecycle.config import SYSTEM_ADMIN_EMAIL, SYSTEM_ADMIN_USERNAME
from feecycle.exceptions import CourseNotConfigured, LevelNotConfigured
from feecycle.models import Batch, BatchStatus, Student, User, UserRole
from feecycle.models_fee_ledger import FeeRecord, PaymentMethod
from feecycle.services.batch_code_allocator import (
    BatchIdentity, CodeCandidate, allocate_display_codes
)
from feecycle.services.batch_code_parser import ParsedBatchCode, try_parse_batch_code
from feecycle.services.batch_service import BatchService, batch_status_for
from feecycle.services.credit_ledger_service import CreditLedgerService
from feecycle.services.fee_cycle_service import (
    FeeCycleService, fee_month_key, match_payment_for_month,
    plan_obligation_months, remaining_duration,
)
from feecycle.services.snapshot_rows import SnapshotStudent

logger = logging.getLogger(__name__)


class IssueKind:
    MISSING_MONTH = "missing_month"
    NO_FEE_RECORDS = "no_fee_records"
    PAYMENT_WITHOUT_RECORD = "payment_without_record"
    PAID_NOT_MARKED = "paid_not_marked"
    PAYMENT_DATE_ZERO_AMOUNT = "payment_date_zero_amount"
    FEE_BEFORE_CYCLE_START = "fee_before_cycle_start"
    STUDENT_NOT_FOUND = "student_not_found"
    AMBIGUOUS_STUDENT = "ambiguous_student"
    INVALID_BATCH_CODE = "invalid_batch_code"
    INVALID_LEVEL = "invalid_level"
    COURSE_NOT_CONFIGURED = "course_not_configured"
    LEVEL_NOT_CONFIGURED = "level_not_configured"


# ══════════════════════════════════════════════════════════
# Run context
# ══════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RunContext:
    """Resolved once before the run starts; read-only afterwards."""
    acting_admin_id: Optional[int]
    dry_run: bool
    now: datetime


def resolve_acting_admin(db: Session, create: bool = True) -> Optional[int]:
    """
    Id of the superadmin that signs batch operations. Creates the system
    account when none exists and `create` is set; otherwise returns None.
    """
    admin = db.query(User).filter(
        User.role == UserRole.SUPERADMIN.value,
        User.is_active == True,  # noqa: E712
    ).order_by(User.id).first()
    if admin:
        return admin.id
    if not create:
        logger.warning("No superadmin found, changes will not be attributed")
        return None

    admin = User(
        username=SYSTEM_ADMIN_USERNAME,
        email=SYSTEM_ADMIN_EMAIL,
        role=UserRole.SUPERADMIN.value,
        is_active=True,
    )
    db.add(admin)
    db.commit()
    db.refresh(admin)
    logger.info(f"System admin created: {admin.username} (id {admin.id})")
    return admin.id


def build_run_context(db: Session, dry_run: bool, now: Optional[datetime] = None) -> RunContext:
    return RunContext(
        acting_admin_id=resolve_acting_admin(db, create=not dry_run),
        dry_run=dry_run,
        now=now or datetime.now(),
    )


# ══════════════════════════════════════════════════════════
# Report
# ══════════════════════════════════════════════════════════

@dataclass
class Issue:
    kind: str
    student: str
    message: str
    month: Optional[str] = None
    row_number: Optional[int] = None


@dataclass
class BatchOutcome:
    base_code: str
    code: Optional[str]
    stage: str
    level: int
    start_date: Optional[date]
    status: str
    students: List[str] = field(default_factory=list)
    created: bool = False
    updates: Dict[str, tuple] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def is_draft(self) -> bool:
        return self.status == BatchStatus.DRAFT.value


@dataclass
class StudentOutcome:
    name: str
    row_number: int
    student_id: Optional[int] = None
    batch_code: Optional[str] = None
    result: str = "ok"                  # ok | skipped | failed
    updates: Dict[str, tuple] = field(default_factory=dict)
    issues: List[Issue] = field(default_factory=list)
    fees_deleted: int = 0
    fees_created: int = 0
    fees_paid: int = 0
    credits_added: float = 0.0
    credits_applied: float = 0.0
    credits_settled: float = 0.0
    error: Optional[str] = None


@dataclass
class ReconciliationReport:
    dry_run: bool
    batches: List[BatchOutcome] = field(default_factory=list)
    students: List[StudentOutcome] = field(default_factory=list)

    @property
    def issues(self) -> List[Issue]:
        return [i for s in self.students for i in s.issues]

    def summary(self) -> Dict:
        results = Counter(s.result for s in self.students)
        return {
            "batches": len(self.batches),
            "batches_created": sum(1 for b in self.batches if b.created),
            "batches_updated": sum(1 for b in self.batches if b.updates),
            "batches_failed": sum(1 for b in self.batches if b.error),
            "students": len(self.students),
            "succeeded": results.get("ok", 0),
            "skipped": results.get("skipped", 0),
            "failed": results.get("failed", 0),
            "fees_deleted": sum(s.fees_deleted for s in self.students),
            "fees_created": sum(s.fees_created for s in self.students),
            "fees_paid": sum(s.fees_paid for s in self.students),
            "credits_added": round(sum(s.credits_added for s in self.students), 2),
            "credits_applied": round(sum(s.credits_applied for s in self.students), 2),
            "credits_settled": round(sum(s.credits_settled for s in self.students), 2),
            "issues": dict(Counter(i.kind for i in self.issues)),
        }

    def to_dict(self, include_mode: bool = True) -> Dict:
        data = {
            "batches": [asdict(b) for b in self.batches],
            "students": [asdict(s) for s in self.students],
            "summary": self.summary(),
        }
        if include_mode:
            data["dry_run"] = self.dry_run
        return data


GroupKey = Tuple[str, Optional[date], str, int]


def batch_group_key(s: SnapshotStudent, parsed: ParsedBatchCode) -> GroupKey:
    return (parsed.normalized_code, s.batch_start_date, s.stage, s.level)


def snapshot_transaction_id(student_id: int, payment) -> str:
    """Ledger key of a spreadsheet payment credited while the student had no billable batch."""
    return f"snapshot:{student_id}:{payment.paid_date.isoformat()}:{payment.index}"


def _as_datetime(d: Optional[date]) -> Optional[datetime]:
    if d is None:
        return None
    return datetime(d.year, d.month, d.day)


# ══════════════════════════════════════════════════════════
# Driver
# ══════════════════════════════════════════════════════════

class ReconciliationDriver:

    def __init__(self, db: Session, ctx: RunContext):
        self.db = db
        self.ctx = ctx
        self.batches = BatchService(db)
        self.fees = FeeCycleService(db)
        self.credits = CreditLedgerService(db)

    def run(self, students: List[SnapshotStudent]) -> ReconciliationReport:
        mode = "DRY RUN" if self.ctx.dry_run else "LIVE"
        logger.info(f"Reconciliation started ({mode}): {len(students)} spreadsheet students")

        report = ReconciliationReport(dry_run=self.ctx.dry_run)
        plans = self.reconcile_batches(students, report)
        for s in students:
            report.students.append(self.reconcile_student(s, plans))

        if self.ctx.dry_run:
            self.db.rollback()
        logger.info(f"Reconciliation finished ({mode}): {report.summary()}")
        return report

    # ── PHASE 1 ───────────────────────────────────────────

    def reconcile_batches(self, students: List[SnapshotStudent],
                          report: ReconciliationReport) -> Dict[GroupKey, BatchOutcome]:
        groups: "OrderedDict[GroupKey, Tuple[ParsedBatchCode, List[str]]]" = OrderedDict()
        for s in students:
            if not s.batch_code or not s.stage:
                continue
            parsed = try_parse_batch_code(s.batch_code)
            if not parsed.is_valid:
                continue
            key = batch_group_key(s, parsed)
            groups.setdefault(key, (parsed, []))[1].append(s.name)

        # Same order the display-code preview uses
        def order(key: GroupKey):
            base, start, stage, level = key
            return (base, start is None, start or date.min, stage, level)

        pending: Dict[str, BatchIdentity] = {}
        plans: Dict[GroupKey, BatchOutcome] = {}
        for key in sorted(groups, key=order):
            parsed, names = groups[key]
            outcome = self._reconcile_batch(key, parsed, names, pending)
            plans[key] = outcome
            report.batches.append(outcome)
        return plans

    def _reconcile_batch(self, key: GroupKey, parsed: ParsedBatchCode,
                         names: List[str], pending: Dict[str, BatchIdentity]) -> BatchOutcome:
        base, start, stage, level = key
        outcome = BatchOutcome(
            base_code=base, code=None, stage=stage, level=level,
            start_date=start, status=batch_status_for(start), students=list(names),
        )
        try:
            code = self.batches.resolve_code(base, start, stage, level, pending)
            pending[code] = BatchIdentity(start, stage, level)
            outcome.code = code

            existing = self.batches.find_by_code(code)
            if existing is None:
                outcome.created = True
                if not self.ctx.dry_run:
                    self.db.add(self.batches.build_batch(
                        parsed, code, stage, level, start, created_by=self.ctx.acting_admin_id
                    ))
            else:
                outcome.updates = self.batches.batch_diff(existing, stage, level, start)
                if outcome.updates and not self.ctx.dry_run:
                    for name, (_, value) in outcome.updates.items():
                        setattr(existing, name, value)

            if not self.ctx.dry_run:
                self.db.commit()
            logger.info(
                f"Batch {code}: {'created' if outcome.created else 'exists'}"
                f"{', updated ' + str(outcome.updates) if outcome.updates else ''}"
            )
        except Exception as e:
            self.db.rollback()
            outcome.error = str(e)
            logger.error(f"Batch {base} ({stage} L{level}) failed: {e}", exc_info=True)
        return outcome

    # ── PHASE 2 ───────────────────────────────────────────

    def find_student(self, s: SnapshotStudent, outcome: StudentOutcome) -> Optional[Student]:
        """Email first, then phone; the name is only a fallback join key."""
        lookups = []
        if s.email:
            lookups.append(("email", Student.email == s.email))
        if s.phone:
            lookups.append(("phone", Student.phone == s.phone))
        lookups.append(("name", func.lower(Student.student_name) == s.name.lower()))

        for label, condition in lookups:
            matches = self.db.query(Student).filter(condition).all()
            if len(matches) == 1:
                return matches[0]
            if len(matches) > 1:
                outcome.issues.append(Issue(
                    IssueKind.AMBIGUOUS_STUDENT, s.name,
                    f"{len(matches)} stored students share this {label}",
                    row_number=s.row_number,
                ))
                return None

        outcome.issues.append(Issue(
            IssueKind.STUDENT_NOT_FOUND, s.name, "Not found in database", row_number=s.row_number,
        ))
        return None

    def reconcile_student(self, s: SnapshotStudent, plans: Dict[GroupKey, BatchOutcome]) -> StudentOutcome:
        outcome = StudentOutcome(name=s.name, row_number=s.row_number)
        try:
            self._reconcile_student(s, plans, outcome)
            if not self.ctx.dry_run:
                self.db.commit()
        except Exception as e:
            self.db.rollback()
            outcome.result = "failed"
            outcome.error = str(e)
            logger.error(f"Student {s.name} (row {s.row_number}) failed: {e}", exc_info=True)
        return outcome

    def _issue(self, outcome: StudentOutcome, s: SnapshotStudent, kind: str, message: str,
               month: Optional[str] = None):
        outcome.issues.append(Issue(kind, s.name, message, month=month, row_number=s.row_number))

    def _batch_plan(self, s: SnapshotStudent, plans, outcome) -> Optional[BatchOutcome]:
        if not s.batch_code:
            return None
        parsed = try_parse_batch_code(s.batch_code)
        if not parsed.is_valid:
            self._issue(outcome, s, IssueKind.INVALID_BATCH_CODE, parsed.error)
            return None
        plan = plans.get(batch_group_key(s, parsed))
        if plan is None or plan.error or plan.code is None:
            return None
        return plan

    def _reconcile_student(self, s: SnapshotStudent, plans, outcome: StudentOutcome):
        student = self.find_student(s, outcome)
        if student is None:
            outcome.result = "skipped"
            return
        outcome.student_id = student.id

        if not s.stage:
            self._issue(outcome, s, IssueKind.INVALID_LEVEL, f"Unrecognized level '{s.level_text}'")
            outcome.result = "skipped"
            return

        plan = self._batch_plan(s, plans, outcome)
        billable = plan is not None and not plan.is_draft
        cycle_start = s.cycle_start if billable else None
        outcome.batch_code = plan.code if plan else None

        outcome.updates = self._student_diff(student, s, plan, cycle_start)

        existing = self.db.query(FeeRecord).filter(
            FeeRecord.student_id == student.id
        ).order_by(FeeRecord.fee_month).all()

        if billable:
            self._audit_fees(s, existing, cycle_start, outcome)
            try:
                course_fee = self.fees.lookup_course_fee(s.stage, s.level)
            except CourseNotConfigured as e:
                self._issue(outcome, s, IssueKind.COURSE_NOT_CONFIGURED, e.message)
                outcome.result = "failed"
                outcome.error = e.message
                logger.warning(f"{s.name}: {e.message}")
                return
            except LevelNotConfigured as e:
                self._issue(outcome, s, IssueKind.LEVEL_NOT_CONFIGURED, e.message)
                outcome.result = "failed"
                outcome.error = e.message
                logger.warning(f"{s.name}: {e.message}")
                return

            self._apply_student_updates(student, outcome.updates, plan)
            self._regenerate_fees(student, s, existing, cycle_start, course_fee, outcome)
        else:
            self._apply_student_updates(student, outcome.updates, plan)
            self._move_payments_to_credit(student, s, existing, plan, outcome)

    def _student_diff(self, student: Student, s: SnapshotStudent, plan: Optional[BatchOutcome],
                      cycle_start: Optional[date]) -> Dict[str, tuple]:
        stored_code = student.batch.batch_code if student.batch else None
        wanted = {
            "stage": s.stage,
            "level": s.level,
            "batch": plan.code if plan else None,
            "is_active": not s.discontinued,
        }
        stored = {
            "stage": student.stage,
            "level": student.level,
            "batch": stored_code,
            "is_active": bool(student.is_active),
        }
        if plan is not None and cycle_start:
            wanted["fee_cycle_start_date"] = cycle_start
            stored["fee_cycle_start_date"] = student.fee_cycle_start_date
        return {k: (stored[k], v) for k, v in wanted.items() if stored[k] != v}

    def _apply_student_updates(self, student: Student, updates: Dict[str, tuple],
                               plan: Optional[BatchOutcome]):
        if self.ctx.dry_run or not updates:
            return
        for name, (_, value) in updates.items():
            if name == "batch":
                student.batch = self.batches.find_by_code(plan.code) if plan else None
            else:
                setattr(student, name, value)
        self.db.flush()

    def _audit_fees(self, s: SnapshotStudent, existing: List[FeeRecord], cycle_start: date,
                    outcome: StudentOutcome):
        if not existing:
            self._issue(outcome, s, IssueKind.NO_FEE_RECORDS, "No fee records exist")
            return

        by_month = {f.fee_month: f for f in existing}
        start_key = fee_month_key(cycle_start)

        for month_key, _ in plan_obligation_months(cycle_start, self.ctx.now):
            if month_key not in by_month:
                self._issue(outcome, s, IssueKind.MISSING_MONTH, f"Missing month: {month_key}", month_key)

        for f in existing:
            if f.fee_month < start_key:
                self._issue(outcome, s, IssueKind.FEE_BEFORE_CYCLE_START,
                            f"Fee {f.fee_month} precedes cycle start {cycle_start}", f.fee_month)
            if f.payment_date and not f.paid_amount:
                self._issue(outcome, s, IssueKind.PAYMENT_DATE_ZERO_AMOUNT,
                            f"Fee {f.fee_month} has a payment date but 0 paid", f.fee_month)

        for p in s.payments:
            if not p.paid_date:
                continue
            month_key = fee_month_key(p.due_date or p.paid_date)
            record = by_month.get(month_key)
            if record is None:
                self._issue(outcome, s, IssueKind.PAYMENT_WITHOUT_RECORD,
                            f"Payment in spreadsheet but no fee record: {month_key}", month_key)
            elif (record.paid_amount or 0) < record.fee_amount:
                self._issue(outcome, s, IssueKind.PAID_NOT_MARKED,
                            f"Fee exists but not marked paid: {month_key}", month_key)

    def _regenerate_fees(self, student: Student, s: SnapshotStudent, existing: List[FeeRecord],
                         cycle_start: date, course_fee, outcome: StudentOutcome):
        total = s.duration or course_fee.duration_months
        limit = remaining_duration(total, s.batch_start_date, cycle_start)
        plan = plan_obligation_months(cycle_start, self.ctx.now, limit)

        rows = []
        for month_key, due in plan:
            payment = match_payment_for_month(s.payments, month_key)
            if not (payment and payment.paid_date):
                payment = None
            rows.append((month_key, due, payment))

        outcome.fees_deleted = len(existing)
        outcome.fees_created = len(rows)
        outcome.fees_paid = sum(1 for _, _, payment in rows if payment)

        # Credit spent on the records about to be deleted comes back first
        released: Dict[int, float] = {}
        for used in self.credits.fee_record_usage(f.id for f in existing):
            released[used.source_credit_id] = released.get(used.source_credit_id, 0.0) - used.amount

        settlements = self._plan_settlements(student, rows, course_fee, released)
        outcome.credits_settled = round(sum(take for _, _, take in settlements), 2)

        balance = self.credits.get_balance(student.id) + sum(released.values()) - outcome.credits_settled
        unpaid_total = course_fee.fee_amount * (outcome.fees_created - outcome.fees_paid)
        planned_credit = round(max(min(balance, unpaid_total), 0.0), 2)

        logger.info(
            f"{s.name}: cycle start {cycle_start}, {total} month course, {limit} remaining, "
            f"{len(existing)} fees → {len(rows)} ({outcome.fees_paid} paid)"
        )
        if self.ctx.dry_run:
            outcome.credits_applied = planned_credit
            return

        self.credits.release_fee_records(
            student.id, [f.id for f in existing], processed_by=self.ctx.acting_admin_id, now=self.ctx.now
        )
        for f in existing:
            self.db.delete(f)
        self.db.flush()

        created: Dict[str, FeeRecord] = {}
        for month_key, due, payment in rows:
            record = FeeRecord(
                student_id=student.id,
                student_name=student.student_name,
                stage=s.stage,
                level=s.level,
                fee_month=month_key,
                due_date=due,
                fee_amount=course_fee.fee_amount,
                paid_amount=course_fee.fee_amount if payment else 0.0,
                payment_date=_as_datetime(payment.paid_date) if payment else None,
                payment_method=PaymentMethod.OTHER.value if payment else None,
                updated_by=self.ctx.acting_admin_id,
            )
            self.db.add(record)
            created[month_key] = record
        self.db.flush()

        for month_key, source, take in settlements:
            self.credits.consume_source(
                source, take, f"Settled by spreadsheet payment for {month_key}",
                fee_record=created[month_key],
                processed_by=self.ctx.acting_admin_id,
                now=self.ctx.now,
            )

        applied = self.credits.apply_credits_to_obligations(
            student.id, processed_by=self.ctx.acting_admin_id, now=self.ctx.now, commit=False
        )
        outcome.credits_applied = applied.amount_applied

    def _plan_settlements(self, student: Student, rows, course_fee,
                          released: Dict[int, float]) -> List[Tuple[str, object, float]]:
        """
        A replayed payment that was credited while the student had no
        billable batch already sits on the ledger. That credit is retired
        against the replayed month instead of paying a second month.
        """
        remaining: Dict[int, float] = {}
        settlements = []
        for month_key, _, payment in rows:
            if payment is None:
                continue
            source = self.credits.find_by_transaction_id(
                student.id, snapshot_transaction_id(student.id, payment)
            )
            if source is None:
                continue
            if source.id not in remaining:
                remaining[source.id] = self.credits.unspent_amount(source) + released.get(source.id, 0.0)
            take = round(min(course_fee.fee_amount, remaining[source.id]), 2)
            if take <= 0:
                continue
            remaining[source.id] = round(remaining[source.id] - take, 2)
            settlements.append((month_key, source, take))
        return settlements

    def _move_payments_to_credit(self, student: Student, s: SnapshotStudent, existing: List[FeeRecord],
                                 plan: Optional[BatchOutcome], outcome: StudentOutcome):
        outcome.fees_deleted = len(existing)
        if existing and not self.ctx.dry_run:
            self.credits.release_fee_records(
                student.id, [f.id for f in existing], processed_by=self.ctx.acting_admin_id, now=self.ctx.now
            )
            for f in existing:
                self.db.delete(f)
            self.db.flush()
            logger.info(f"{s.name}: removed {len(existing)} fee records (no billable batch)")

        paid = [p for p in s.payments if p.paid_date]
        if not paid:
            return
        try:
            course_fee = self.fees.lookup_course_fee(s.stage, s.level)
        except (CourseNotConfigured, LevelNotConfigured) as e:
            kind = (IssueKind.COURSE_NOT_CONFIGURED if isinstance(e, CourseNotConfigured)
                    else IssueKind.LEVEL_NOT_CONFIGURED)
            self._issue(outcome, s, kind, f"{e.message}; payments not moved to credit")
            return

        where = f"draft batch {plan.code}" if plan else "no batch"
        for p in paid:
            transaction_id = snapshot_transaction_id(student.id, p)
            if self.credits.find_by_transaction_id(student.id, transaction_id):
                continue
            outcome.credits_added = round(outcome.credits_added + course_fee.fee_amount, 2)
            if self.ctx.dry_run:
                continue
            self.credits.add_credit(
                student.id, course_fee.fee_amount,
                f"Payment of {p.paid_date.isoformat()} received while in {where}",
                processed_by=self.ctx.acting_admin_id,
                payment_method=PaymentMethod.OTHER.value,
                transaction_id=transaction_id,
                due_date=_as_datetime(p.due_date),
                paid_date=_as_datetime(p.paid_date),
                now=self.ctx.now,
                commit=False,
            )


# ══════════════════════════════════════════════════════════
# Read-only checks
# ══════════════════════════════════════════════════════════

def analyze_snapshot_batches(students: List[SnapshotStudent]) -> List[Dict]:
    """Display codes the spreadsheet batches would get, without touching the database."""
    members: Dict[CodeCandidate, List[str]] = OrderedDict()
    for s in students:
        if not s.batch_code or not s.stage:
            continue
        parsed = try_parse_batch_code(s.batch_code)
        if not parsed.is_valid:
            continue
        status = BatchStatus.DRAFT.value if s.is_draft or s.discontinued else BatchStatus.ACTIVE.value
        candidate = CodeCandidate(parsed.normalized_code, s.batch_start_date, s.stage, s.level, status)
        members.setdefault(candidate, []).append(s.name)

    codes = allocate_display_codes(members)
    rows = [
        {
            "base_code": c.base_code,
            "display_code": codes[c],
            "stage": c.stage,
            "level": c.level,
            "start_date": c.start_date,
            "status": c.status,
            "students": names,
        }
        for c, names in members.items()
    ]
    return sorted(rows, key=lambda r: (r["base_code"], r["display_code"]))


def find_dangling_fee_records(db: Session) -> List[Dict]:
    """Fee records of students that have no billable batch (or no longer exist)."""
    rows = db.query(FeeRecord, Student, Batch).outerjoin(
        Student, FeeRecord.student_id == Student.id
    ).outerjoin(
        Batch, Student.batch_id == Batch.id
    ).filter(or_(
        Student.id.is_(None),
        Student.batch_id.is_(None),
        Batch.status == BatchStatus.DRAFT.value,
    )).order_by(FeeRecord.student_id, FeeRecord.fee_month).all()

    dangling = []
    for fee, student, batch in rows:
        if student is None:
            reason = "student missing"
        elif batch is None:
            reason = "student has no batch"
        else:
            reason = f"batch {batch.batch_code} is a draft"
        dangling.append({
            "fee_record_id": fee.id,
            "student_id": fee.student_id,
            "student_name": fee.student_name,
            "fee_month": fee.fee_month,
            "paid_amount": fee.paid_amount,
            "reason": reason,
        })
    return dangling


def format_report(report: ReconciliationReport) -> str:
    lines = [f"Reconciliation report ({'DRY RUN' if report.dry_run else 'LIVE'})", ""]

    lines.append("PHASE 1: Batches")
    for b in report.batches:
        state = "ERROR " + b.error if b.error else ("created" if b.created else "exists")
        lines.append(f"  {b.code or b.base_code}  {b.stage} L{b.level}  start={b.start_date or '-'}  "
                     f"[{b.status}] {state}")
        for name, (old, new) in b.updates.items():
            lines.append(f"      {name}: {old} → {new}")

    lines += ["", "PHASE 2: Students"]
    for s in report.students:
        lines.append(f"  {s.name} (row {s.row_number}) [{s.result}]"
                     f"{'  batch ' + s.batch_code if s.batch_code else ''}")
        for name, (old, new) in s.updates.items():
            lines.append(f"      {name}: {old} → {new}")
        for i in s.issues:
            lines.append(f"      ! {i.kind}: {i.message}")
        if s.fees_deleted or s.fees_created:
            lines.append(f"      fees: {s.fees_deleted} deleted, {s.fees_created} created ({s.fees_paid} paid)")
        if s.credits_added:
            lines.append(f"      credit added: {s.credits_added}")
        if s.credits_applied:
            lines.append(f"      credit applied: {s.credits_applied}")
        if s.credits_settled:
            lines.append(f"      credit settled by replayed payments: {s.credits_settled}")
        if s.error:
            lines.append(f"      error: {s.error}")

    lines += ["", "SUMMARY"]
    for k, v in report.summary().items():
        lines.append(f"  {k}: {v}")
    return "\n".join(lines)
