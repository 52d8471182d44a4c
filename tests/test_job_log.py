"""Unit tests for the end-of-day job log backends."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

import pytest

from stockledger.contracts import JobStatus
from stockledger.job_log import EOD_JOB_TYPE, InMemoryJobLog, SqlJobLog
from tests.utils.fake_db import FakeDB
from tests.utils.ledger import COMPANY, TODAY, FixedClock

T0 = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
T1 = datetime(2026, 3, 10, 12, 5, tzinfo=timezone.utc)


def _job_row(**overrides: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        "job_id": 7,
        "job_type": EOD_JOB_TYPE,
        "company_code": COMPANY,
        "snapshot_date": TODAY,
        "status": "RUNNING",
        "triggered_by": "cron",
        "processed_records": 0,
        "failed_records": 0,
        "started_at": T0,
        "completed_at": None,
        "error_message": None,
    }
    row.update(overrides)
    return row


def test_in_memory_job_lifecycle() -> None:
    clock = FixedClock(T0)
    log = InMemoryJobLog(clock=clock)

    job = log.start(EOD_JOB_TYPE, COMPANY, TODAY, triggered_by="cron")
    assert (job.status, job.started_at, job.completed_at) == (JobStatus.RUNNING, T0, None)

    clock.set(T1)
    log.complete(job.job_id, processed=4, failed=1)
    finished = log.get(job.job_id)
    assert finished is not None
    assert (finished.status, finished.processed_records, finished.failed_records) == (JobStatus.COMPLETED, 4, 1)
    assert finished.completed_at == T1

    with pytest.raises(RuntimeError, match="expected RUNNING"):
        log.fail(job.job_id, "too late")


def test_in_memory_recent_is_per_company_and_limited() -> None:
    log = InMemoryJobLog(clock=FixedClock(T0))
    ids = [log.start(EOD_JOB_TYPE, COMPANY, date(2026, 3, day), triggered_by="cron").job_id for day in (7, 8, 9)]
    log.start(EOD_JOB_TYPE, 2000, TODAY, triggered_by="cron")

    assert [entry.job_id for entry in log.recent(COMPANY, limit=2)] == [ids[2], ids[1]]


def test_sql_start_inserts_running_entry() -> None:
    db = FakeDB()
    db.set_one("INSERT INTO snapshot_job_log", _job_row())
    log = SqlJobLog(db, clock=FixedClock(T0))

    job = log.start(EOD_JOB_TYPE, COMPANY, TODAY, triggered_by="cron")

    sql, params = db.queries[-1]
    assert "'RUNNING'" in sql
    assert params == {
        "job_type": EOD_JOB_TYPE,
        "company_code": COMPANY,
        "snapshot_date": TODAY,
        "triggered_by": "cron",
        "started_at": T0,
    }
    assert (job.job_id, job.status, job.snapshot_date) == (7, JobStatus.RUNNING, TODAY)


def test_sql_start_without_returned_row_raises() -> None:
    db = FakeDB()
    db.set_one("INSERT INTO snapshot_job_log", None)

    with pytest.raises(RuntimeError, match="returned no row"):
        SqlJobLog(db, clock=FixedClock(T0)).start(EOD_JOB_TYPE, COMPANY, TODAY, triggered_by="cron")


def test_sql_complete_and_fail_only_touch_running_entries() -> None:
    db = FakeDB()
    log = SqlJobLog(db, clock=FixedClock(T1))

    log.complete(7, processed=5, failed=2)
    log.fail(8, "RuntimeError: boom")

    (complete_sql, complete_params), (fail_sql, fail_params) = db.executed
    assert "SET status = 'COMPLETED'" in complete_sql and "AND status = 'RUNNING'" in complete_sql
    assert complete_params == {"job_id": 7, "completed_at": T1, "processed": 5, "failed": 2}
    assert "SET status = 'FAILED'" in fail_sql and "AND status = 'RUNNING'" in fail_sql
    assert fail_params == {"job_id": 8, "completed_at": T1, "error_message": "RuntimeError: boom"}


def test_sql_get_and_recent_map_rows() -> None:
    db = FakeDB()
    db.set_one("WHERE job_id = :job_id", _job_row(status="COMPLETED", processed_records=3, completed_at=T1))
    db.set_all("ORDER BY job_id DESC", [_job_row(job_id=9, status="FAILED", error_message="x"), _job_row()])
    log = SqlJobLog(db)

    entry = log.get(7)
    assert entry is not None
    assert (entry.status, entry.processed_records, entry.completed_at) == (JobStatus.COMPLETED, 3, T1)

    recent = log.recent(COMPANY, limit=2)
    assert [(job.job_id, job.status) for job in recent] == [(9, JobStatus.FAILED), (7, JobStatus.RUNNING)]
    assert db.queries[-1][1] == {"company_code": COMPANY, "limit": 2}
