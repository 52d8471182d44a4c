"""Unit tests for SQL-backed stores and balance functions over a fake DB."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from psycopg import errors as pg_errors
import pytest

from stockledger.balance import SqlBalanceFunction, SqlCascadeFunction
from stockledger.contracts import (
    LineState,
    LinkType,
    SnapshotItem,
    SnapshotRow,
    StoredLineItem,
    TraceabilityLink,
    TransactionKind,
)
from stockledger.errors import ConflictError
from stockledger.kinds import KIND_SPECS
from stockledger.snapshot_store import SqlSnapshotStore
from stockledger.traceability import SqlTraceabilityStore
from stockledger.transaction_store import SqlTransactionStore
from tests.utils.fake_db import FakeDB
from tests.utils.ledger import COMPANY, TODAY, line, payload

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
USAGE = KIND_SPECS[TransactionKind.MATERIAL_USAGE]


def _header_row(**overrides: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        "header_id": 11,
        "company_code": COMPANY,
        "external_id": "MU-1",
        "business_date": TODAY,
        "reversal": False,
        "received_at": None,
        "header_state": "LIVE",
        "deleted_at": None,
        "work_order_number": "WO-1",
        "cost_center_number": None,
        "internal_evidence_number": None,
    }
    row.update(overrides)
    return row


def test_transaction_commits_on_success() -> None:
    db = FakeDB()
    store = SqlTransactionStore(db)

    with store.transaction():
        store.tombstone_header(USAGE, 11, NOW)

    assert (db.commits, db.rollbacks) == (1, 0)


def test_unique_violation_rolls_back_as_conflict() -> None:
    db = FakeDB()
    db.fail_on("INSERT INTO material_usages", pg_errors.UniqueViolation("duplicate key value"))
    store = SqlTransactionStore(db)

    with pytest.raises(ConflictError, match="Uniqueness violation"):
        with store.transaction():
            store.insert_header(USAGE, payload(TransactionKind.MATERIAL_USAGE, "MU-1", TODAY, line("A", 1)), NOW)

    assert (db.commits, db.rollbacks) == (0, 1)


def test_other_errors_roll_back_and_propagate() -> None:
    db = FakeDB()
    store = SqlTransactionStore(db)

    with pytest.raises(ValueError, match="bad"):
        with store.transaction():
            raise ValueError("bad")

    assert (db.commits, db.rollbacks) == (0, 1)


def test_find_live_header_maps_kind_fields() -> None:
    db = FakeDB()
    db.set_one("FROM material_usages", _header_row())
    store = SqlTransactionStore(db)

    header = store.find_live_header(USAGE, COMPANY, "MU-1")

    assert header is not None
    assert header.kind == TransactionKind.MATERIAL_USAGE
    assert header.is_live
    assert header.fields == {"work_order_number": "WO-1", "cost_center_number": None, "internal_evidence_number": None}
    sql, params = db.queries[-1]
    assert "header_state = 'LIVE'" in sql
    assert params == {"company_code": COMPANY, "external_id": "MU-1"}


def test_insert_header_and_item_bind_kind_columns() -> None:
    db = FakeDB()
    db.set_one("INSERT INTO material_usages", _header_row())
    db.set_one(
        "INSERT INTO material_usage_items",
        {
            "item_id": 21,
            "header_id": 11,
            "company_code": COMPANY,
            "business_date": TODAY,
            "item_type": "RM",
            "item_code": "A",
            "line_tag": "P-1",
            "item_name": "Item A",
            "uom": "KG",
            "qty": Decimal("2.000"),
            "line_state": "LIVE",
            "deleted_at": None,
            "ppkek_number": "P-1",
        },
    )
    store = SqlTransactionStore(db)
    doc = payload(TransactionKind.MATERIAL_USAGE, "MU-1", TODAY, line("A", 2, ppkek_number="P-1"), work_order_number="WO-1")

    header = store.insert_header(USAGE, doc, NOW)
    stored = store.insert_item(USAGE, header, doc.items[0], NOW)

    header_sql, header_params = db.queries[0]
    item_sql, item_params = db.queries[1]
    assert ":work_order_number" in header_sql
    assert header_params["work_order_number"] == "WO-1"
    assert item_params["line_tag"] == "P-1"
    assert item_params["ppkek_number"] == "P-1"
    assert item_params["header_id"] == 11
    assert stored.natural_key == ("RM", "A", "P-1")
    assert stored.line_state == LineState.LIVE


def test_update_item_revives_row() -> None:
    db = FakeDB()
    store = SqlTransactionStore(db)
    spec = KIND_SPECS[TransactionKind.INCOMING]
    stored = StoredLineItem(
        item_id=5,
        header_id=1,
        company_code=COMPANY,
        business_date=TODAY,
        item_type="RM",
        item_code="A",
        line_tag="",
        item_name="Item A",
        uom="KG",
        qty=Decimal("1.000"),
        line_state=LineState.TOMBSTONED,
        deleted_at=NOW,
    )
    store.update_item(spec, stored, line("A", 4), TODAY, NOW)

    sql, params = db.executed[-1]
    assert "line_state = 'LIVE', deleted_at = NULL" in sql
    assert params["item_id"] == 5
    assert params["qty"] == Decimal("4.000")


def test_items_on_or_after_spans_every_item_table() -> None:
    db = FakeDB()
    db.set_all("FROM (", [{"item_type": "RM", "item_code": "A", "item_name": "Item A", "uom": "KG"}])
    store = SqlTransactionStore(db)

    items = store.items_on_or_after(COMPANY, TODAY)

    sql, _ = db.queries[-1]
    for spec in KIND_SPECS.values():
        assert f"FROM {spec.item_table} i" in sql
    assert items == [SnapshotItem("RM", "A", "Item A", "KG")]


def _snapshot_row() -> SnapshotRow:
    zero = Decimal("0.000")
    return SnapshotRow(
        company_code=COMPANY,
        item_type="RM",
        item_code="A",
        item_name="Item A",
        uom="KG",
        snapshot_date=TODAY,
        opening_balance=zero,
        incoming_qty=Decimal("5.000"),
        outgoing_qty=zero,
        usage_qty=zero,
        production_qty=zero,
        adjustment_qty=zero,
        closing_balance=Decimal("5.000"),
    )


@pytest.mark.parametrize(("inserted", "operation"), [(True, "INSERT"), (False, "UPDATE")])
def test_snapshot_upsert_reports_operation(inserted: bool, operation: str) -> None:
    db = FakeDB()
    db.set_one("RETURNING (xmax = 0) AS inserted", {"inserted": inserted})

    assert SqlSnapshotStore(db).upsert(_snapshot_row()) == operation
    assert db.queries[-1][1]["closing_balance"] == Decimal("5.000")


def test_snapshot_dates_after_are_ascending_and_exclusive() -> None:
    db = FakeDB()
    db.set_all("snapshot_date > :after", [{"snapshot_date": date(2026, 3, 11)}, {"snapshot_date": "2026-03-12"}])

    dates = SqlSnapshotStore(db).dates_after(COMPANY, "RM", "A", TODAY)

    assert dates == [date(2026, 3, 11), date(2026, 3, 12)]
    assert "ORDER BY snapshot_date ASC" in db.queries[-1][0]


def test_balance_function_parses_result_row() -> None:
    db = FakeDB()
    db.set_one(
        "upsert_item_stock_snapshot",
        {
            "opening_balance": Decimal("1"),
            "closing_balance": Decimal("3.5"),
            "incoming_qty": Decimal("2.5"),
            "outgoing_qty": 0,
            "usage_qty": 0,
            "production_qty": 0,
            "adjustment_qty": 0,
            "operation": "UPDATE",
        },
    )

    result = SqlBalanceFunction(db).recompute(COMPANY, "RM", "A", "", "", TODAY)

    assert result.closing_balance == Decimal("3.500")
    assert result.operation == "UPDATE"
    assert db.queries[-1][1]["item_name"] == ""


def test_balance_function_requires_a_row() -> None:
    db = FakeDB()
    db.set_one("upsert_item_stock_snapshot", None)
    with pytest.raises(RuntimeError, match="returned no row"):
        SqlBalanceFunction(db).recompute(COMPANY, "RM", "A", "Item A", "KG", TODAY)


def test_cascade_function_returns_updated_count() -> None:
    db = FakeDB()
    db.set_one("recalculate_item_snapshots_from_date", {"updated_count": 3})

    assert SqlCascadeFunction(db).recalculate_from(COMPANY, "RM", "A", TODAY) == 3


def test_traceability_replace_deletes_then_inserts() -> None:
    db = FakeDB()
    links = [
        TraceabilityLink(
            link_type=LinkType.MATERIAL,
            company_code=COMPANY,
            source_external_id="MU-1",
            work_order_number="WO-1",
            item_type="RM",
            item_code="A",
            qty=Decimal("5.000"),
            business_date=TODAY,
            ppkek_number="P-1",
        )
    ]

    SqlTraceabilityStore(db).replace_links(LinkType.MATERIAL, COMPANY, "MU-1", links)
    SqlTraceabilityStore(db).replace_links(
        LinkType.PRODUCTION,
        COMPANY,
        "PO-1",
        [
            TraceabilityLink(
                link_type=LinkType.PRODUCTION,
                company_code=COMPANY,
                source_external_id="PO-1",
                work_order_number="WO-1",
                item_type="FG",
                item_code="F",
                qty=Decimal("1.000"),
                business_date=TODAY,
            )
        ],
    )

    statements = [sql for sql, _ in db.executed]
    assert "DELETE FROM work_order_material_consumption" in statements[0]
    assert "INSERT INTO work_order_material_consumption" in statements[1]
    assert db.executed[1][1]["ppkek_number"] == "P-1"
    assert "DELETE FROM work_order_fg_production" in statements[2]
    assert "ppkek_number" not in db.executed[3][1]


def test_items_on_or_before_bounds_every_item_table_from_above() -> None:
    db = FakeDB()
    store = SqlTransactionStore(db)

    assert store.items_on_or_before(COMPANY, TODAY) == []

    sql, params = db.queries[-1]
    assert sql.count("AND i.business_date <= :bound") == len(KIND_SPECS)
    assert params == {"company_code": COMPANY, "bound": TODAY}


def test_snapshot_items_through_unions_rows_and_beginning_balances() -> None:
    db = FakeDB()
    db.set_all("AS known_items", [{"item_type": "RM", "item_code": "B", "item_name": None, "uom": "KG"}])
    store = SqlSnapshotStore(db)

    items = store.items_through(COMPANY, TODAY)

    sql, params = db.queries[-1]
    assert "snapshot_date <= :through_date" in sql
    assert "balance_date <= :through_date" in sql
    assert params == {"company_code": COMPANY, "through_date": TODAY}
    assert items == [SnapshotItem("RM", "B", "", "KG")]
