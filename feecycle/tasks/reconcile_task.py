"""
Task: Reconcile batches, students and fees against the student spreadsheet
feecycle/tasks/reconcile_task.py

Usage:
    python -m feecycle.tasks.reconcile_task students.xlsx --dry-run
    python -m feecycle.tasks.reconcile_task students.xlsx
    python -m feecycle.tasks.reconcile_task students.xlsx --analyze

--dry-run prints the same report as a live run without writing anything.
Always run it first.
"""

import argparse
import logging
import sys
from typing import List, Mapping, Optional

import pandas as pd

from feecycle.config import LOG_LEVEL

logger = logging.getLogger(__name__)


def read_snapshot(path: str, sheet=0) -> List[Mapping]:
    """First sheet as a list of {column: cell}; blank cells come back as None."""
    df = pd.read_excel(path, sheet_name=sheet, dtype=object)
    df = df.astype(object).where(pd.notna(df), None)
    logger.info(f"Read {len(df)} rows from {path}")
    return df.to_dict(orient="records")


def run_reconciliation(path: str, dry_run: bool, sheet=0) -> dict:
    from feecycle.database import Base, SessionLocal, engine
    from feecycle import models  # noqa: F401
    from feecycle.services.reconciliation_service import (
        ReconciliationDriver, build_run_context, format_report,
    )
    from feecycle.services.snapshot_rows import normalize_rows

    students = normalize_rows(read_snapshot(path, sheet))
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        ctx = build_run_context(db, dry_run=dry_run)
        report = ReconciliationDriver(db, ctx).run(students)
        print(format_report(report))
        return report.summary()
    finally:
        db.close()


def run_analysis(path: str, sheet=0) -> List[dict]:
    from feecycle.services.reconciliation_service import analyze_snapshot_batches
    from feecycle.services.snapshot_rows import normalize_rows

    rows = analyze_snapshot_batches(normalize_rows(read_snapshot(path, sheet)))
    for r in rows:
        renamed = "" if r["display_code"] == r["base_code"] else f" (from {r['base_code']})"
        print(f"{r['display_code']}{renamed}  {r['stage']} L{r['level']}  "
              f"start={r['start_date'] or '-'}  [{r['status']}]  {len(r['students'])} students")
    return rows


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(
        description="Reconcile batches and fee records against the student spreadsheet",
    )
    ap.add_argument("snapshot", help="Path to the student spreadsheet (.xlsx)")
    ap.add_argument("--dry-run", action="store_true", help="Report only, write nothing")
    ap.add_argument("--analyze", action="store_true", help="Only preview batch display codes")
    ap.add_argument("--sheet", default=0, help="Sheet name or index (default: first sheet)")
    args = ap.parse_args(argv)

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    sheet = int(args.sheet) if str(args.sheet).isdigit() else args.sheet
    try:
        if args.analyze:
            run_analysis(args.snapshot, sheet)
            return 0
        summary = run_reconciliation(args.snapshot, args.dry_run, sheet)
    except FileNotFoundError:
        logger.error(f"File not found: {args.snapshot}")
        return 2

    return 1 if summary.get("failed") else 0


if __name__ == "__main__":
    sys.exit(main())
