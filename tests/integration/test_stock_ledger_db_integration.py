"""DB-backed integration tests for the SQL ledger and snapshot functions."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Iterator
import uuid

import pytest

from stockledger.contracts import JobStatus, RecalcStatus, TransactionKind
from stockledger.dispatch import InlineDispatcher
from stockledger.ledger import StockLedger, build_sql_ledger
from tests.utils.ledger import COMPANY, TODAY, FixedClock, line, make_config, payload
from tests.utils.ledger_db import PsycopgLedgerTestDB
from tests.utils.migration import OpStub, load_migration_module

EARLIER = date(2026, 3, 8)


@pytest.fixture
def sql_ledger(
    pg_conn: Any,
    pg_maintenance_conn: Any,
    ledger_db: PsycopgLedgerTestDB,
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[StockLedger]:
    """SQL ledger over a throwaway schema migrated to head."""
    op_stub = OpStub()
    module = load_migration_module("migration_0001_integration", op_stub, monkeypatch)
    module.upgrade()

    schema = f"ledger_it_{uuid.uuid4().hex[:12]}"
    with pg_conn.cursor() as cur:
        cur.execute(f"CREATE SCHEMA {schema}")
        cur.execute(f"SET search_path TO {schema}")
        for statement in op_stub.calls:
            cur.execute(statement)
    pg_conn.commit()
    with pg_maintenance_conn.cursor() as cur:
        cur.execute(f"SET search_path TO {schema}")

    ledger = build_sql_ledger(
        ledger_db,
        maintenance_db=PsycopgLedgerTestDB(pg_maintenance_conn),
        config=make_config(),
        clock=FixedClock(),
        dispatcher=InlineDispatcher(),
    )
    try:
        yield ledger
    finally:
        ledger.close()
        pg_conn.rollback()
        with pg_conn.cursor() as cur:
            cur.execute(f"DROP SCHEMA {schema} CASCADE")
            cur.execute("SET search_path TO public")
        pg_conn.commit()
        with pg_maintenance_conn.cursor() as cur:
            cur.execute("SET search_path TO public")


def _closing(ledger: StockLedger, item_code: str, on_date: date) -> Decimal | None:
    row = ledger.snapshots.get(COMPANY, "RM", item_code, on_date)
    return None if row is None else row.closing_balance


def test_ingest_maintains_snapshots_through_sql_functions(sql_ledger: StockLedger) -> None:
    sql_ledger.ingest(payload(TransactionKind.INCOMING, "IN-1", EARLIER, line("A", 100)))
    sql_ledger.ingest(payload(TransactionKind.OUTGOING, "OUT-1", TODAY, line("A", 30)))
    sql_ledger.ingest(
        payload(
            TransactionKind.ADJUSTMENT,
            "ADJ-1",
            TODAY,
            line("A", 5, adjustment_type="GAIN"),
            line("A", 2, adjustment_type="LOSS"),
        )
    )

    assert _closing(sql_ledger, "A", EARLIER) == Decimal("100.000")
    row = sql_ledger.snapshots.get(COMPANY, "RM", "A", TODAY)
    assert row is not None
    assert row.opening_balance == Decimal("100.000")
    assert row.adjustment_qty == Decimal("3.000")
    assert row.closing_balance == Decimal("73.000")
    assert row.item_name == "Item A"


def test_date_change_and_cascade_in_database(sql_ledger: StockLedger) -> None:
    sql_ledger.ingest(payload(TransactionKind.INCOMING, "IN-1", TODAY, line("A", 10)))
    moved = sql_ledger.ingest(payload(TransactionKind.INCOMING, "IN-1", EARLIER, line("A", 10)))

    assert moved.date_changed is True
    current = sql_ledger.get_header(TransactionKind.INCOMING, COMPANY, "IN-1")
    assert current is not None and current.header.business_date == EARLIER
    assert _closing(sql_ledger, "A", EARLIER) == Decimal("10.000")
    today_row = sql_ledger.snapshots.get(COMPANY, "RM", "A", TODAY)
    assert today_row is not None
    assert today_row.incoming_qty == Decimal("0.000")
    assert today_row.closing_balance == Decimal("10.000")


def test_queue_dedup_and_worker_in_database(sql_ledger: StockLedger) -> None:
    first = sql_ledger.enqueue_recalculation(COMPANY, EARLIER)
    again = sql_ledger.enqueue_recalculation(COMPANY, EARLIER, reason="second")

    assert again.queue_id == first.queue_id
    assert sql_ledger.is_already_queued(COMPANY, EARLIER)

    batch = sql_ledger.process_queue()

    assert batch.completed == 1
    done = sql_ledger.queue.get(first.queue_id)
    assert done is not None and done.status == RecalcStatus.COMPLETED
    assert sql_ledger.enqueue_recalculation(COMPANY, EARLIER).queue_id != first.queue_id


def test_end_of_day_carries_balances_forward_in_database(sql_ledger: StockLedger) -> None:
    sql_ledger.ingest(payload(TransactionKind.INCOMING, "IN-1", EARLIER, line("A", 12)))

    result = sql_ledger.run_end_of_day(COMPANY, TODAY, triggered_by="integration")

    assert (result.processed, result.failed) == (1, 0)
    row = sql_ledger.snapshots.get(COMPANY, "RM", "A", TODAY)
    assert row is not None
    assert (row.opening_balance, row.closing_balance) == (Decimal("12.000"), Decimal("12.000"))
    entry = sql_ledger.job_log.get(result.job_id)
    assert entry is not None and entry.status == JobStatus.COMPLETED
    assert entry.processed_records == 1
