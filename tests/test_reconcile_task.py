from datetime import datetime

import pandas as pd
import pytest

from feecycle.tasks import reconcile_task


@pytest.fixture
def snapshot_file(tmp_path):
    path = tmp_path / "students.xlsx"
    pd.DataFrame([
        {
            "Name": "Asha", "Contact Number": "9876543210", "E-mail": "asha@example.com",
            "Status": "Active", "Student Start Date": datetime(2026, 1, 20), "Level": "B1",
            "Duration": 6, "Batch": "WF:2:30(U)", "Timing": "2:30",
            "Batch Start Date": datetime(2026, 1, 10),
            "Payment Due date": datetime(2026, 1, 20), "Payment Status": "Paid",
            "Payment date": datetime(2026, 1, 18),
        },
        {
            "Name": "Ben", "Contact Number": None, "E-mail": "ben@example.com",
            "Status": "Active", "Student Start Date": datetime(2026, 2, 1), "Level": "I1",
            "Duration": 6, "Batch": "WF:2:30(U)", "Timing": "2:30",
            "Batch Start Date": datetime(2026, 2, 1),
            "Payment Due date": None, "Payment Status": None, "Payment date": None,
        },
    ]).to_excel(path, index=False)
    return path


def test_read_snapshot_blanks_are_none(snapshot_file):
    rows = reconcile_task.read_snapshot(str(snapshot_file))
    assert [r["Name"] for r in rows] == ["Asha", "Ben"]
    assert rows[1]["Contact Number"] is None
    assert rows[1]["Payment date"] is None


def test_analyze(snapshot_file, capsys):
    rows = reconcile_task.run_analysis(str(snapshot_file))
    assert [r["display_code"] for r in rows] == ["WF:2:30(U)", "WF:2:30(U)-I"]
    assert "WF:2:30(U)-I (from WF:2:30(U))" in capsys.readouterr().out


def test_main_exit_codes(snapshot_file, tmp_path):
    assert reconcile_task.main([str(snapshot_file), "--analyze"]) == 0
    assert reconcile_task.main([str(tmp_path / "missing.xlsx"), "--dry-run"]) == 2
