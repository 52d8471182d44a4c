"""Unit tests for maintenance dispatchers."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
import logging
import threading

import pytest

from stockledger.contracts import LineItem, SnapshotRow, TransactionKind
from stockledger.dispatch import InlineDispatcher, ThreadPoolDispatcher
from tests.utils.ledger import COMPANY, TODAY, line, make_ledger, payload


def _boom() -> None:
    raise RuntimeError("maintenance exploded")


def test_inline_dispatcher_runs_synchronously_and_logs_failures(caplog: pytest.LogCaptureFixture) -> None:
    dispatcher = InlineDispatcher()
    seen: list[tuple[int, str]] = []

    dispatcher.submit(lambda value, label: seen.append((value, label)), 1, label="x")
    with caplog.at_level(logging.ERROR, logger="stockledger.dispatch"):
        dispatcher.submit(_boom)
    dispatcher.shutdown()

    assert seen == [(1, "x")]
    assert "Maintenance task _boom failed." in caplog.text
    assert "maintenance exploded" in caplog.text


def test_thread_pool_dispatcher_runs_off_thread_and_logs_failures(caplog: pytest.LogCaptureFixture) -> None:
    dispatcher = ThreadPoolDispatcher(max_workers=2)
    threads: list[str] = []

    with caplog.at_level(logging.ERROR, logger="stockledger.dispatch"):
        dispatcher.submit(lambda: threads.append(threading.current_thread().name))
        dispatcher.submit(_boom)
        dispatcher.shutdown(wait=True)

    assert len(threads) == 1
    assert threads[0].startswith("ledger-maintenance")
    assert "Maintenance task failed: maintenance exploded" in caplog.text


def test_thread_pool_maintenance_keeps_every_snapshot_chain_consistent() -> None:
    ledger = make_ledger(dispatcher=ThreadPoolDispatcher(max_workers=8))
    days = [5, 2, 8, 1, 6, 3, 9, 4, 7, 2, 5, 1]
    documents: dict[str, tuple[TransactionKind, date, tuple[LineItem, ...]]] = {}

    for index, day in enumerate(days):
        kind = TransactionKind.OUTGOING if index % 3 == 2 else TransactionKind.INCOMING
        lines = (line("A", 10 + index), line("B", index + 1))
        documents[f"DOC-{index}"] = (kind, date(2026, 3, day), lines)
        ledger.ingest(payload(kind, f"DOC-{index}", date(2026, 3, day), *lines))
    for index in (0, 4, 8):
        kind, business_date, lines = documents[f"DOC-{index}"]
        documents[f"DOC-{index}"] = (kind, business_date + timedelta(days=1), lines)
        ledger.ingest(payload(kind, f"DOC-{index}", business_date + timedelta(days=1), *lines))
    ledger.close(wait=True)

    expected = {"A": Decimal("0.000"), "B": Decimal("0.000")}
    for kind, _, lines in documents.values():
        for item in lines:
            expected[item.item_code] += item.qty if kind == TransactionKind.INCOMING else -item.qty

    chains: dict[str, list[SnapshotRow]] = {}
    for row in ledger.snapshots_between(COMPANY, date(2026, 3, 1), TODAY):
        chains.setdefault(row.item_code, []).append(row)

    assert sorted(chains) == ["A", "B"]
    for item_code, chain in chains.items():
        assert {business_date for _, business_date, _ in documents.values()} <= {row.snapshot_date for row in chain}
        previous_closing = Decimal("0.000")
        for row in chain:
            assert row.opening_balance == previous_closing, (item_code, row.snapshot_date)
            assert row.closing_balance == (
                row.opening_balance
                + row.incoming_qty
                - row.outgoing_qty
                - row.usage_qty
                + row.production_qty
                + row.adjustment_qty
            ), (item_code, row.snapshot_date)
            previous_closing = row.closing_balance
        assert chain[-1].closing_balance == expected[item_code]
