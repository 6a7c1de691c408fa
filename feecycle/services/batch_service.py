# feecycle/services/batch_service.py

import logging
from datetime import date
from typing import Dict, Optional

from sqlalchemy.orm import Session

from feecycle.exceptions import ValidationError
from feecycle.models import Batch, BatchScheduleEntry, BatchStatus, LEVELS, STAGES
from feecycle.services.batch_code_allocator import BatchIdentity, resolve_unique_code
from feecycle.services.batch_code_parser import ParsedBatchCode, parse_batch_code, schedule_entries

logger = logging.getLogger(__name__)


def batch_status_for(start_date: Optional[date]) -> str:
    """A batch with a start date bills; without one it stays a draft."""
    return BatchStatus.ACTIVE.value if start_date else BatchStatus.DRAFT.value


def batch_name_for(code: str, stage: str, level: int) -> str:
    return f"{stage.title()} L{level} {code}"


def validate_stage_level(stage: str, level: int):
    if stage not in STAGES:
        raise ValidationError(f"Unknown stage: {stage}. Expected one of {', '.join(STAGES)}")
    if level not in LEVELS:
        raise ValidationError(f"Level must be one of {LEVELS}, got {level}")


class BatchService:

    def __init__(self, db: Session):
        self.db = db

    def find_by_code(self, code: str) -> Optional[Batch]:
        return self.db.query(Batch).filter(Batch.batch_code == code).first()

    def identity_of(self, code: str) -> Optional[BatchIdentity]:
        batch = self.find_by_code(code)
        if not batch:
            return None
        return BatchIdentity(batch.start_date, batch.stage, batch.level)

    def resolve_code(
        self,
        base_code: str,
        start_date: Optional[date],
        stage: str,
        level: int,
        pending: Optional[Dict[str, BatchIdentity]] = None,
    ) -> str:
        """
        Unique code for a batch about to be written. `pending` holds codes
        handed out earlier in the same run that may not be in the table yet.
        """
        pending = pending if pending is not None else {}

        def lookup(code):
            if code in pending:
                return pending[code]
            return self.identity_of(code)

        return resolve_unique_code(base_code, start_date, stage, level, lookup)

    def build_batch(
        self,
        parsed: ParsedBatchCode,
        code: str,
        stage: str,
        level: int,
        start_date: Optional[date] = None,
        created_by: Optional[int] = None,
        description: str = "",
    ) -> Batch:
        batch = Batch(
            batch_code=code,
            batch_name=batch_name_for(code, stage, level),
            stage=stage,
            level=level,
            status=batch_status_for(start_date),
            start_date=start_date,
            description=description,
            created_by=created_by,
        )
        batch.schedule = [
            BatchScheduleEntry(day_of_week=day, start_time=start_time)
            for day, start_time in schedule_entries(parsed)
        ]
        return batch

    def create_batch(
        self,
        raw_code: str,
        stage: str,
        level: int,
        start_date: Optional[date] = None,
        created_by: Optional[int] = None,
        description: str = "",
        commit: bool = True,
    ) -> Batch:
        """
        Parses the code and stores the batch under a collision-free code.
        If the resolved code already belongs to the same (start, stage,
        level) batch, that batch is returned.
        """
        validate_stage_level(stage, level)
        parsed = parse_batch_code(raw_code)
        code = self.resolve_code(parsed.normalized_code, start_date, stage, level)

        existing = self.find_by_code(code)
        if existing:
            return existing

        batch = self.build_batch(parsed, code, stage, level, start_date, created_by, description)
        self.db.add(batch)
        if commit:
            self.db.commit()
            self.db.refresh(batch)
        else:
            self.db.flush()
        logger.info(f"Batch created: {code} ({stage} L{level}, {batch.status})")
        return batch

    @staticmethod
    def batch_diff(batch: Batch, stage: str, level: int, start_date: Optional[date]) -> Dict[str, tuple]:
        """{field: (stored, wanted)} for fields that differ."""
        wanted = {
            "stage": stage,
            "level": level,
            "start_date": start_date,
            "status": batch_status_for(start_date),
        }
        # Ended batches stay ended
        if batch.status == BatchStatus.ENDED.value:
            wanted.pop("status")
        return {
            name: (getattr(batch, name), value)
            for name, value in wanted.items()
            if getattr(batch, name) != value
        }
