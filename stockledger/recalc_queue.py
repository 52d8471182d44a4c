"""Durable snapshot recalculation queue with scope deduplication."""

from __future__ import annotations

from dataclasses import replace
from datetime import date
import itertools
import logging
import threading
from typing import Any, Mapping, Protocol

from backend.db.enums import NON_TERMINAL_RECALC_STATUSES
from stockledger.common import LedgerClock, LedgerDatabase, to_date
from stockledger.contracts import QueueEntry, RecalcStatus

logger = logging.getLogger(__name__)

_QUEUE_COLUMNS = """
    queue_id, company_code, recalc_date, item_type, item_code, status, priority,
    reason, queued_at, started_at, completed_at, error_message
"""


class RecalcQueue(Protocol):
    """Work list of (company, date[, item]) scopes awaiting recalculation."""

    def enqueue(
        self,
        company_code: int,
        recalc_date: date,
        *,
        reason: str,
        priority: int = 0,
        item_type: str | None = None,
        item_code: str | None = None,
    ) -> QueueEntry:
        """Insert a PENDING entry unless a non-terminal one exists for the scope."""

    def is_already_queued(
        self,
        company_code: int,
        recalc_date: date,
        item_type: str | None = None,
        item_code: str | None = None,
    ) -> bool:
        """True when a PENDING or IN_PROGRESS entry exists for the scope."""

    def fetch_pending(self, limit: int) -> list[QueueEntry]:
        """PENDING entries ordered by priority desc, queued_at asc."""

    def claim(self, queue_id: int) -> QueueEntry | None:
        """Move PENDING -> IN_PROGRESS; None if already claimed or finished."""

    def mark_completed(self, queue_id: int) -> None:
        """Move IN_PROGRESS -> COMPLETED."""

    def mark_failed(self, queue_id: int, error_message: str) -> None:
        """Move IN_PROGRESS -> FAILED (terminal)."""

    def get(self, queue_id: int) -> QueueEntry | None:
        """Return one entry by id."""

    def counts(self) -> dict[str, int]:
        """Entry counts keyed by status."""


def _check_scope(item_type: str | None, item_code: str | None) -> None:
    if (item_type is None) != (item_code is None):
        raise ValueError("item_type and item_code must be provided together")


class InMemoryRecalcQueue:
    """Thread-safe in-memory queue."""

    def __init__(self, *, clock: LedgerClock | None = None) -> None:
        self._clock = clock or LedgerClock()
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._entries: dict[int, QueueEntry] = {}

    def _open_entry(
        self,
        company_code: int,
        recalc_date: date,
        item_type: str | None,
        item_code: str | None,
    ) -> QueueEntry | None:
        scope = (company_code, recalc_date, item_type, item_code)
        for entry in self._entries.values():
            if entry.scope == scope and entry.status in NON_TERMINAL_RECALC_STATUSES:
                return entry
        return None

    def enqueue(
        self,
        company_code: int,
        recalc_date: date,
        *,
        reason: str,
        priority: int = 0,
        item_type: str | None = None,
        item_code: str | None = None,
    ) -> QueueEntry:
        _check_scope(item_type, item_code)
        with self._lock:
            existing = self._open_entry(company_code, recalc_date, item_type, item_code)
            if existing is not None:
                logger.debug("Recalculation already queued as entry %s; reason=%s ignored.", existing.queue_id, reason)
                return existing
            entry = QueueEntry(
                queue_id=next(self._ids),
                company_code=company_code,
                recalc_date=recalc_date,
                item_type=item_type,
                item_code=item_code,
                status=RecalcStatus.PENDING,
                priority=priority,
                reason=reason,
                queued_at=self._clock.now_utc(),
            )
            self._entries[entry.queue_id] = entry
        logger.info(
            "Queued snapshot recalculation %s for company=%s date=%s priority=%s reason=%s.",
            entry.queue_id,
            company_code,
            recalc_date,
            priority,
            reason,
        )
        return entry

    def is_already_queued(
        self,
        company_code: int,
        recalc_date: date,
        item_type: str | None = None,
        item_code: str | None = None,
    ) -> bool:
        with self._lock:
            return self._open_entry(company_code, recalc_date, item_type, item_code) is not None

    def fetch_pending(self, limit: int) -> list[QueueEntry]:
        with self._lock:
            pending = [entry for entry in self._entries.values() if entry.status == RecalcStatus.PENDING]
        pending.sort(key=lambda entry: (-entry.priority, entry.queued_at, entry.queue_id))
        return pending[:limit]

    def claim(self, queue_id: int) -> QueueEntry | None:
        with self._lock:
            entry = self._entries.get(queue_id)
            if entry is None or entry.status != RecalcStatus.PENDING:
                return None
            claimed = replace(entry, status=RecalcStatus.IN_PROGRESS, started_at=self._clock.now_utc())
            self._entries[queue_id] = claimed
            return claimed

    def _finish(self, queue_id: int, status: RecalcStatus, error_message: str | None) -> None:
        with self._lock:
            entry = self._entries[queue_id]
            if entry.status != RecalcStatus.IN_PROGRESS:
                raise RuntimeError(f"Queue entry {queue_id} is {entry.status.value}, expected IN_PROGRESS")
            self._entries[queue_id] = replace(
                entry,
                status=status,
                completed_at=self._clock.now_utc(),
                error_message=error_message,
            )

    def mark_completed(self, queue_id: int) -> None:
        self._finish(queue_id, RecalcStatus.COMPLETED, None)

    def mark_failed(self, queue_id: int, error_message: str) -> None:
        self._finish(queue_id, RecalcStatus.FAILED, error_message)

    def get(self, queue_id: int) -> QueueEntry | None:
        with self._lock:
            return self._entries.get(queue_id)

    def counts(self) -> dict[str, int]:
        with self._lock:
            totals = {status.value: 0 for status in RecalcStatus}
            for entry in self._entries.values():
                totals[entry.status.value] += 1
            return totals


def _entry_from_row(row: Mapping[str, Any]) -> QueueEntry:
    return QueueEntry(
        queue_id=int(row["queue_id"]),
        company_code=int(row["company_code"]),
        recalc_date=to_date(row["recalc_date"]),
        item_type=row.get("item_type"),
        item_code=row.get("item_code"),
        status=RecalcStatus(str(row["status"])),
        priority=int(row["priority"]),
        reason=str(row["reason"]),
        queued_at=row["queued_at"],
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
        error_message=row.get("error_message"),
    )


class SqlRecalcQueue:
    """PostgreSQL queue backed by ``snapshot_recalc_queue``.

    Deduplication relies on the partial unique index over non-terminal
    entries; a concurrent insert that loses the race re-reads the winner.
    """

    def __init__(self, db: LedgerDatabase, *, clock: LedgerClock | None = None) -> None:
        self._db = db
        self._clock = clock or LedgerClock()

    def _open_entry(
        self,
        company_code: int,
        recalc_date: date,
        item_type: str | None,
        item_code: str | None,
    ) -> QueueEntry | None:
        row = self._db.fetch_one(
            f"""
            SELECT {_QUEUE_COLUMNS}
            FROM snapshot_recalc_queue
            WHERE company_code = :company_code
              AND recalc_date = :recalc_date
              AND COALESCE(item_type, '') = COALESCE(CAST(:item_type AS TEXT), '')
              AND COALESCE(item_code, '') = COALESCE(CAST(:item_code AS TEXT), '')
              AND status IN ('PENDING', 'IN_PROGRESS')
            ORDER BY queue_id ASC
            LIMIT 1
            """,
            {
                "company_code": company_code,
                "recalc_date": recalc_date,
                "item_type": item_type,
                "item_code": item_code,
            },
        )
        return None if row is None else _entry_from_row(row)

    def enqueue(
        self,
        company_code: int,
        recalc_date: date,
        *,
        reason: str,
        priority: int = 0,
        item_type: str | None = None,
        item_code: str | None = None,
    ) -> QueueEntry:
        _check_scope(item_type, item_code)
        existing = self._open_entry(company_code, recalc_date, item_type, item_code)
        if existing is not None:
            logger.debug("Recalculation already queued as entry %s; reason=%s ignored.", existing.queue_id, reason)
            return existing

        row = self._db.fetch_one(
            f"""
            INSERT INTO snapshot_recalc_queue (
                company_code, recalc_date, item_type, item_code, status, priority, reason, queued_at
            ) VALUES (
                :company_code, :recalc_date, :item_type, :item_code, 'PENDING', :priority, :reason, :queued_at
            )
            ON CONFLICT (company_code, recalc_date, (COALESCE(item_type, '')), (COALESCE(item_code, '')))
            WHERE status IN ('PENDING', 'IN_PROGRESS')
            DO NOTHING
            RETURNING {_QUEUE_COLUMNS}
            """,
            {
                "company_code": company_code,
                "recalc_date": recalc_date,
                "item_type": item_type,
                "item_code": item_code,
                "priority": priority,
                "reason": reason,
                "queued_at": self._clock.now_utc(),
            },
        )
        if row is None:
            raced = self._open_entry(company_code, recalc_date, item_type, item_code)
            if raced is None:
                raise RuntimeError(
                    f"Queue insert for company={company_code} date={recalc_date} conflicted but no open entry was found"
                )
            logger.debug("Lost enqueue race to entry %s.", raced.queue_id)
            return raced

        entry = _entry_from_row(row)
        logger.info(
            "Queued snapshot recalculation %s for company=%s date=%s priority=%s reason=%s.",
            entry.queue_id,
            company_code,
            recalc_date,
            priority,
            reason,
        )
        return entry

    def is_already_queued(
        self,
        company_code: int,
        recalc_date: date,
        item_type: str | None = None,
        item_code: str | None = None,
    ) -> bool:
        return self._open_entry(company_code, recalc_date, item_type, item_code) is not None

    def fetch_pending(self, limit: int) -> list[QueueEntry]:
        rows = self._db.fetch_all(
            f"""
            SELECT {_QUEUE_COLUMNS}
            FROM snapshot_recalc_queue
            WHERE status = 'PENDING'
            ORDER BY priority DESC, queued_at ASC, queue_id ASC
            LIMIT :limit
            """,
            {"limit": limit},
        )
        return [_entry_from_row(row) for row in rows]

    def claim(self, queue_id: int) -> QueueEntry | None:
        row = self._db.fetch_one(
            f"""
            UPDATE snapshot_recalc_queue
            SET status = 'IN_PROGRESS', started_at = :started_at
            WHERE queue_id = :queue_id
              AND status = 'PENDING'
            RETURNING {_QUEUE_COLUMNS}
            """,
            {"queue_id": queue_id, "started_at": self._clock.now_utc()},
        )
        return None if row is None else _entry_from_row(row)

    def mark_completed(self, queue_id: int) -> None:
        self._db.execute(
            """
            UPDATE snapshot_recalc_queue
            SET status = 'COMPLETED', completed_at = :completed_at, error_message = NULL
            WHERE queue_id = :queue_id
              AND status = 'IN_PROGRESS'
            """,
            {"queue_id": queue_id, "completed_at": self._clock.now_utc()},
        )

    def mark_failed(self, queue_id: int, error_message: str) -> None:
        self._db.execute(
            """
            UPDATE snapshot_recalc_queue
            SET status = 'FAILED', completed_at = :completed_at, error_message = :error_message
            WHERE queue_id = :queue_id
              AND status = 'IN_PROGRESS'
            """,
            {"queue_id": queue_id, "completed_at": self._clock.now_utc(), "error_message": error_message},
        )

    def get(self, queue_id: int) -> QueueEntry | None:
        row = self._db.fetch_one(
            f"""
            SELECT {_QUEUE_COLUMNS}
            FROM snapshot_recalc_queue
            WHERE queue_id = :queue_id
            """,
            {"queue_id": queue_id},
        )
        return None if row is None else _entry_from_row(row)

    def counts(self) -> dict[str, int]:
        rows = self._db.fetch_all(
            """
            SELECT status, COUNT(*) AS n
            FROM snapshot_recalc_queue
            GROUP BY status
            """,
            {},
        )
        totals = {status.value: 0 for status in RecalcStatus}
        for row in rows:
            totals[str(row["status"])] = int(row["n"])
        return totals
