"""
Normalizes rows of the student spreadsheet into per-student facts.

Columns:
    Name, Contact Number, E-mail, Status, Student Start Date, Level,
    Duration, Batch, Timing, Batch Start Date

Payment cycles repeat three columns, the first one bare and the next ones
with an index suffix:

    Payment Due date     Payment Status     Payment date
    Payment Due date__1  Payment Status__1  Payment date__1
    ...

pandas renames repeated headers to "Payment Due date.1", which is read the
same way.
"""
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, List, Mapping, Optional

from feecycle.config import SNAPSHOT_MAX_PAYMENT_CYCLES
from feecycle.services.batch_code_parser import (
    clean_email, clean_phone_number, is_discontinued, parse_course_level
)
from feecycle.services.fee_cycle_service import due_date_for_month, resolve_cycle_start
from feecycle.utils.excel_dates import parse_excel_day

DUE_DATE_COL = "Payment Due date"
STATUS_COL = "Payment Status"
PAID_DATE_COL = "Payment date"


@dataclass
class PaymentCycle:
    index: int
    due_date: Optional[date]
    status: str
    paid_date: Optional[date]
    due_date_derived: bool = False


@dataclass
class SnapshotStudent:
    row_number: int
    name: str
    phone: str = ""
    email: str = ""
    status: str = ""
    student_start_date: Optional[date] = None
    level_text: str = ""
    stage: Optional[str] = None
    level: Optional[int] = None
    duration: Optional[int] = None
    batch_code: str = ""
    timing: str = ""
    batch_start_date: Optional[date] = None
    payments: List[PaymentCycle] = field(default_factory=list)

    @property
    def is_draft(self) -> bool:
        """No batch start date: the batch cannot bill yet."""
        return self.batch_start_date is None

    @property
    def discontinued(self) -> bool:
        return is_discontinued(self.status)

    @property
    def cycle_start(self) -> Optional[date]:
        return resolve_cycle_start(self.batch_start_date, self.student_start_date)


def cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            return str(int(value))
    return str(value).strip()


def cell_int(value: Any) -> Optional[int]:
    text = cell_text(value)
    if not text:
        return None
    try:
        return int(float(text))
    except ValueError:
        return None


def _cycle_columns(row: Mapping, index: int) -> Optional[tuple]:
    suffixes = [""] if index == 0 else [f"__{index}", f".{index}"]
    for suffix in suffixes:
        cols = (DUE_DATE_COL + suffix, STATUS_COL + suffix, PAID_DATE_COL + suffix)
        if any(c in row for c in cols):
            return cols
    return None


def extract_payment_cycles(
    row: Mapping,
    student_start: Optional[date],
    batch_start: Optional[date],
    max_cycles: int = SNAPSHOT_MAX_PAYMENT_CYCLES,
) -> List[PaymentCycle]:
    """
    Reads the repeated payment columns until one is missing.

    A cycle with a payment date but no due date gets one: the paid month at
    the cycle start's day of month.
    """
    cycle_start = resolve_cycle_start(batch_start, student_start)
    cycles = []
    for index in range(max_cycles):
        cols = _cycle_columns(row, index)
        if cols is None:
            break
        due_col, status_col, paid_col = cols

        due = parse_excel_day(row.get(due_col))
        paid = parse_excel_day(row.get(paid_col))
        derived = False
        if paid and not due and cycle_start:
            due = due_date_for_month(paid, cycle_start).date()
            derived = True

        if due or paid:
            cycles.append(PaymentCycle(
                index=index,
                due_date=due,
                status=cell_text(row.get(status_col)),
                paid_date=paid,
                due_date_derived=derived,
            ))
    return cycles


def normalize_row(row: Mapping, row_number: int) -> Optional[SnapshotStudent]:
    name = cell_text(row.get("Name"))
    if not name:
        return None

    level_text = cell_text(row.get("Level"))
    stage, level = parse_course_level(level_text)
    student_start = parse_excel_day(row.get("Student Start Date"))
    batch_start = parse_excel_day(row.get("Batch Start Date"))

    return SnapshotStudent(
        row_number=row_number,
        name=name,
        phone=clean_phone_number(row.get("Contact Number")),
        email=clean_email(row.get("E-mail")),
        status=cell_text(row.get("Status")),
        student_start_date=student_start,
        level_text=level_text,
        stage=stage,
        level=level,
        duration=cell_int(row.get("Duration")),
        batch_code=cell_text(row.get("Batch")),
        timing=cell_text(row.get("Timing")),
        batch_start_date=batch_start,
        payments=extract_payment_cycles(row, student_start, batch_start),
    )


def normalize_rows(rows: Iterable[Mapping]) -> List[SnapshotStudent]:
    """Rows without a name are skipped. row_number is the spreadsheet line (header = 1)."""
    students = []
    for i, row in enumerate(rows):
        student = normalize_row(row, i + 2)
        if student:
            students.append(student)
    return students
