"""Audit log of end-of-day snapshot runs."""

from __future__ import annotations

from dataclasses import replace
from datetime import date
import itertools
import logging
import threading
from typing import Any, Mapping, Protocol

from stockledger.common import LedgerClock, LedgerDatabase, to_date
from stockledger.contracts import JobLogEntry, JobStatus

logger = logging.getLogger(__name__)

EOD_JOB_TYPE = "EOD_SNAPSHOT"

_JOB_COLUMNS = """
    job_id, job_type, company_code, snapshot_date, status, triggered_by,
    processed_records, failed_records, started_at, completed_at, error_message
"""


class JobLog(Protocol):
    """RUNNING -> COMPLETED | FAILED record per job run."""

    def start(self, job_type: str, company_code: int, snapshot_date: date, *, triggered_by: str) -> JobLogEntry:
        """Open a RUNNING entry."""

    def complete(self, job_id: int, *, processed: int, failed: int) -> None:
        """Close a RUNNING entry as COMPLETED with its counts."""

    def fail(self, job_id: int, error_message: str) -> None:
        """Close a RUNNING entry as FAILED."""

    def get(self, job_id: int) -> JobLogEntry | None:
        """Return one entry by id."""

    def recent(self, company_code: int, limit: int = 10) -> list[JobLogEntry]:
        """Newest entries for a company first."""


class InMemoryJobLog:
    """Thread-safe in-memory job log."""

    def __init__(self, *, clock: LedgerClock | None = None) -> None:
        self._clock = clock or LedgerClock()
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._entries: dict[int, JobLogEntry] = {}

    def start(self, job_type: str, company_code: int, snapshot_date: date, *, triggered_by: str) -> JobLogEntry:
        with self._lock:
            entry = JobLogEntry(
                job_id=next(self._ids),
                job_type=job_type,
                company_code=company_code,
                snapshot_date=snapshot_date,
                status=JobStatus.RUNNING,
                started_at=self._clock.now_utc(),
                triggered_by=triggered_by,
            )
            self._entries[entry.job_id] = entry
            return entry

    def _finish(self, job_id: int, **changes: Any) -> None:
        with self._lock:
            entry = self._entries[job_id]
            if entry.status != JobStatus.RUNNING:
                raise RuntimeError(f"Job {job_id} is {entry.status.value}, expected RUNNING")
            self._entries[job_id] = replace(entry, completed_at=self._clock.now_utc(), **changes)

    def complete(self, job_id: int, *, processed: int, failed: int) -> None:
        self._finish(job_id, status=JobStatus.COMPLETED, processed_records=processed, failed_records=failed)

    def fail(self, job_id: int, error_message: str) -> None:
        self._finish(job_id, status=JobStatus.FAILED, error_message=error_message)

    def get(self, job_id: int) -> JobLogEntry | None:
        with self._lock:
            return self._entries.get(job_id)

    def recent(self, company_code: int, limit: int = 10) -> list[JobLogEntry]:
        with self._lock:
            entries = [entry for entry in self._entries.values() if entry.company_code == company_code]
        entries.sort(key=lambda entry: entry.job_id, reverse=True)
        return entries[:limit]


def _job_from_row(row: Mapping[str, Any]) -> JobLogEntry:
    return JobLogEntry(
        job_id=int(row["job_id"]),
        job_type=str(row["job_type"]),
        company_code=int(row["company_code"]),
        snapshot_date=to_date(row["snapshot_date"]),
        status=JobStatus(str(row["status"])),
        started_at=row["started_at"],
        triggered_by=str(row["triggered_by"]),
        processed_records=int(row["processed_records"] or 0),
        failed_records=int(row["failed_records"] or 0),
        completed_at=row.get("completed_at"),
        error_message=row.get("error_message"),
    )


class SqlJobLog:
    """PostgreSQL job log backed by ``snapshot_job_log``."""

    def __init__(self, db: LedgerDatabase, *, clock: LedgerClock | None = None) -> None:
        self._db = db
        self._clock = clock or LedgerClock()

    def start(self, job_type: str, company_code: int, snapshot_date: date, *, triggered_by: str) -> JobLogEntry:
        row = self._db.fetch_one(
            f"""
            INSERT INTO snapshot_job_log (
                job_type, company_code, snapshot_date, status, triggered_by, started_at
            ) VALUES (
                :job_type, :company_code, :snapshot_date, 'RUNNING', :triggered_by, :started_at
            )
            RETURNING {_JOB_COLUMNS}
            """,
            {
                "job_type": job_type,
                "company_code": company_code,
                "snapshot_date": snapshot_date,
                "triggered_by": triggered_by,
                "started_at": self._clock.now_utc(),
            },
        )
        if row is None:
            raise RuntimeError(f"Job log insert for company={company_code} date={snapshot_date} returned no row")
        return _job_from_row(row)

    def complete(self, job_id: int, *, processed: int, failed: int) -> None:
        self._db.execute(
            """
            UPDATE snapshot_job_log
            SET status = 'COMPLETED', completed_at = :completed_at,
                processed_records = :processed, failed_records = :failed
            WHERE job_id = :job_id
              AND status = 'RUNNING'
            """,
            {"job_id": job_id, "completed_at": self._clock.now_utc(), "processed": processed, "failed": failed},
        )

    def fail(self, job_id: int, error_message: str) -> None:
        self._db.execute(
            """
            UPDATE snapshot_job_log
            SET status = 'FAILED', completed_at = :completed_at, error_message = :error_message
            WHERE job_id = :job_id
              AND status = 'RUNNING'
            """,
            {"job_id": job_id, "completed_at": self._clock.now_utc(), "error_message": error_message},
        )

    def get(self, job_id: int) -> JobLogEntry | None:
        row = self._db.fetch_one(
            f"""
            SELECT {_JOB_COLUMNS}
            FROM snapshot_job_log
            WHERE job_id = :job_id
            """,
            {"job_id": job_id},
        )
        return None if row is None else _job_from_row(row)

    def recent(self, company_code: int, limit: int = 10) -> list[JobLogEntry]:
        rows = self._db.fetch_all(
            f"""
            SELECT {_JOB_COLUMNS}
            FROM snapshot_job_log
            WHERE company_code = :company_code
            ORDER BY job_id DESC
            LIMIT :limit
            """,
            {"company_code": company_code, "limit": limit},
        )
        return [_job_from_row(row) for row in rows]
