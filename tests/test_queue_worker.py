"""Unit tests for the recalculation queue worker and its polling loop."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Sequence

import pytest

from stockledger.contracts import RecalcStatus, SnapshotItem
from stockledger.queue_worker import RecalcQueueWorker, WorkerBatchResult
from stockledger.recalc_queue import InMemoryRecalcQueue
from tests.utils.ledger import COMPANY, FixedClock, make_config

T0 = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class _StubMaintenance:
    def __init__(self, fail_dates: tuple[date, ...] = ()) -> None:
        self.calls: list[tuple[date, tuple[SnapshotItem, ...]]] = []
        self.fail_dates = set(fail_dates)

    def recompute_items(self, company_code: int, items: Sequence[SnapshotItem], from_date: date) -> int:
        self.calls.append((from_date, tuple(items)))
        if from_date in self.fail_dates:
            raise ValueError(f"cannot rebuild {from_date}")
        return 0


def _resolver(company_code: int, from_date: date) -> list[SnapshotItem]:
    return [SnapshotItem("RM", "A", "Resin", "KG"), SnapshotItem("RM", "B", "Binder", "KG")]


def _worker(
    queue: InMemoryRecalcQueue,
    maintenance: _StubMaintenance,
    **config_overrides,
) -> RecalcQueueWorker:
    return RecalcQueueWorker(
        queue=queue,
        maintenance=maintenance,
        resolve_items=_resolver,
        config=make_config(**config_overrides),
    )


def test_batch_processes_entries_in_priority_order() -> None:
    clock = FixedClock(T0)
    queue = InMemoryRecalcQueue(clock=clock)
    queue.enqueue(COMPANY, date(2026, 3, 10), reason="same_day", priority=-1)
    clock.set(T0 + timedelta(seconds=1))
    queue.enqueue(COMPANY, date(2026, 3, 2), reason="backdated", priority=0)
    clock.set(T0 + timedelta(seconds=2))
    queue.enqueue(COMPANY, date(2026, 3, 1), reason="manual", priority=5)
    maintenance = _StubMaintenance()

    result = _worker(queue, maintenance).process_batch()

    assert result == WorkerBatchResult(fetched=3, completed=3, failed=0, skipped=0)
    assert [call[0] for call in maintenance.calls] == [date(2026, 3, 1), date(2026, 3, 2), date(2026, 3, 10)]
    assert queue.counts()["COMPLETED"] == 3


def test_failed_entry_is_terminal_and_not_retried() -> None:
    queue = InMemoryRecalcQueue(clock=FixedClock(T0))
    failing = queue.enqueue(COMPANY, date(2026, 3, 2), reason="backdated")
    healthy = queue.enqueue(COMPANY, date(2026, 3, 3), reason="backdated")
    maintenance = _StubMaintenance(fail_dates=(date(2026, 3, 2),))
    worker = _worker(queue, maintenance)

    first = worker.process_batch()
    second = worker.process_batch()

    assert (first.completed, first.failed) == (1, 1)
    assert second.fetched == 0
    failed_entry = queue.get(failing.queue_id)
    assert failed_entry is not None
    assert failed_entry.status == RecalcStatus.FAILED
    assert failed_entry.error_message == "ValueError: cannot rebuild 2026-03-02"
    assert queue.get(healthy.queue_id).status == RecalcStatus.COMPLETED


def test_item_scoped_entry_recomputes_only_that_item() -> None:
    queue = InMemoryRecalcQueue(clock=FixedClock(T0))
    queue.enqueue(COMPANY, date(2026, 3, 2), reason="manual", item_type="RM", item_code="B")
    queue.enqueue(COMPANY, date(2026, 3, 3), reason="manual", item_type="RM", item_code="Z")
    maintenance = _StubMaintenance()

    _worker(queue, maintenance).process_batch()

    assert maintenance.calls == [
        (date(2026, 3, 2), (SnapshotItem("RM", "B", "Binder", "KG"),)),
        (date(2026, 3, 3), (SnapshotItem("RM", "Z"),)),
    ]


def test_entry_claimed_elsewhere_is_skipped() -> None:
    queue = InMemoryRecalcQueue(clock=FixedClock(T0))
    entry = queue.enqueue(COMPANY, date(2026, 3, 2), reason="manual")
    maintenance = _StubMaintenance()
    worker = _worker(queue, maintenance)
    queue.claim(entry.queue_id)

    assert worker.process_entry(entry) is None
    assert maintenance.calls == []


def test_batch_limit_defaults_to_config() -> None:
    queue = InMemoryRecalcQueue(clock=FixedClock(T0))
    for day in range(1, 6):
        queue.enqueue(COMPANY, date(2026, 3, day), reason="manual")

    worker = _worker(queue, _StubMaintenance(), worker_batch_size=2)

    assert worker.run_once().fetched == 2
    assert worker.process_batch(limit=10).fetched == 3


def test_daemon_loop_sleeps_between_cycles(monkeypatch: pytest.MonkeyPatch) -> None:
    worker = _worker(InMemoryRecalcQueue(clock=FixedClock(T0)), _StubMaintenance(), worker_poll_seconds=7)
    sleeps: list[float] = []
    monkeypatch.setattr("stockledger.queue_worker.time.sleep", lambda seconds: sleeps.append(seconds))

    worker.daemon_loop(max_cycles=3)

    assert sleeps == [7, 7]


def test_daemon_loop_backs_off_and_recovers(monkeypatch: pytest.MonkeyPatch) -> None:
    worker = _worker(InMemoryRecalcQueue(clock=FixedClock(T0)), _StubMaintenance(), worker_failure_backoff_seconds=2)
    sleeps: list[float] = []
    outcomes = [RuntimeError("db down"), WorkerBatchResult(0, 0, 0, 0)]

    def _run_once() -> WorkerBatchResult:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(worker, "run_once", _run_once)
    monkeypatch.setattr("stockledger.queue_worker.time.sleep", lambda seconds: sleeps.append(seconds))

    worker.daemon_loop(max_cycles=1)

    assert sleeps == [2]


def test_daemon_loop_stops_after_max_consecutive_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    worker = _worker(
        InMemoryRecalcQueue(clock=FixedClock(T0)),
        _StubMaintenance(),
        worker_failure_backoff_seconds=2,
        worker_max_consecutive_failures=3,
    )
    sleeps: list[float] = []

    def _run_once() -> WorkerBatchResult:
        raise RuntimeError("db down")

    monkeypatch.setattr(worker, "run_once", _run_once)
    monkeypatch.setattr("stockledger.queue_worker.time.sleep", lambda seconds: sleeps.append(seconds))

    with pytest.raises(RuntimeError, match="exceeded max consecutive failures"):
        worker.daemon_loop()

    assert sleeps == [2, 2]
