"""Unit tests for the in-memory balance function and forward cascade."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from stockledger.contracts import SnapshotItem, TransactionKind
from tests.utils.ledger import COMPANY, closing, line, make_ledger, payload

D1 = date(2026, 3, 1)
D2 = date(2026, 3, 2)
D3 = date(2026, 3, 3)


def test_closing_follows_balance_identity_across_kinds() -> None:
    ledger = make_ledger()
    ledger.ingest(payload(TransactionKind.INCOMING, "IN-1", D1, line("A", 100)))
    ledger.ingest(payload(TransactionKind.OUTGOING, "OUT-1", D1, line("A", 30)))
    ledger.ingest(payload(TransactionKind.MATERIAL_USAGE, "MU-1", D1, line("A", 5, ppkek_number="P-1")))
    ledger.ingest(payload(TransactionKind.PRODUCTION_OUTPUT, "PO-1", D1, line("A", 8, work_order_numbers=["WO-1"])))
    ledger.ingest(
        payload(
            TransactionKind.ADJUSTMENT,
            "ADJ-1",
            D1,
            line("A", 5, adjustment_type="GAIN"),
            line("A", 2, adjustment_type="LOSS"),
        )
    )

    row = ledger.snapshots.get(COMPANY, "RM", "A", D1)
    assert row is not None
    assert row.opening_balance == Decimal("0.000")
    assert row.incoming_qty == Decimal("100.000")
    assert row.outgoing_qty == Decimal("30.000")
    assert row.usage_qty == Decimal("5.000")
    assert row.production_qty == Decimal("8.000")
    assert row.adjustment_qty == Decimal("3.000")
    assert row.closing_balance == Decimal("76.000")
    assert row.item_name == "Item A"


def test_opening_carries_previous_populated_day() -> None:
    ledger = make_ledger()
    ledger.ingest(payload(TransactionKind.INCOMING, "IN-1", D1, line("A", 100)))
    ledger.ingest(payload(TransactionKind.OUTGOING, "OUT-1", D3, line("A", 30)))

    row = ledger.snapshots.get(COMPANY, "RM", "A", D3)
    assert row is not None
    assert row.opening_balance == Decimal("100.000")
    assert row.closing_balance == Decimal("70.000")
    assert ledger.snapshots.get(COMPANY, "RM", "A", D2) is None


def test_reversal_nets_to_zero() -> None:
    ledger = make_ledger()
    ledger.ingest(payload(TransactionKind.INCOMING, "IN-1", D1, line("A", 50)))
    ledger.ingest(payload(TransactionKind.INCOMING, "IN-1-REV", D1, line("A", 50), reversal=True))

    row = ledger.snapshots.get(COMPANY, "RM", "A", D1)
    assert row is not None
    assert row.incoming_qty == Decimal("0.000")
    assert row.closing_balance == Decimal("0.000")


def test_beginning_balance_overrides_prior_closing() -> None:
    ledger = make_ledger()
    ledger.ingest(payload(TransactionKind.INCOMING, "IN-1", D1, line("A", 100)))
    ledger.set_beginning_balance(COMPANY, SnapshotItem("RM", "A", "Item A", "KG"), D2, "40")
    ledger.ingest(payload(TransactionKind.INCOMING, "IN-2", D2, line("A", 10)))

    row = ledger.snapshots.get(COMPANY, "RM", "A", D2)
    assert row is not None
    assert row.opening_balance == Decimal("40.000")
    assert row.closing_balance == Decimal("50.000")


def test_backdated_change_cascades_only_existing_later_rows() -> None:
    ledger = make_ledger()
    ledger.ingest(payload(TransactionKind.INCOMING, "IN-1", D1, line("A", 10)))
    ledger.ingest(payload(TransactionKind.OUTGOING, "OUT-3", D3, line("A", 4)))
    assert closing(ledger, "A", D3) == Decimal("6.000")

    ledger.ingest(payload(TransactionKind.INCOMING, "IN-1", D1, line("A", 25)))

    assert closing(ledger, "A", D1) == Decimal("25.000")
    later = ledger.snapshots.get(COMPANY, "RM", "A", D3)
    assert later is not None
    assert later.opening_balance == Decimal("25.000")
    assert later.closing_balance == Decimal("21.000")
    assert ledger.snapshots.get(COMPANY, "RM", "A", D2) is None


def test_recompute_with_blank_labels_keeps_existing_name() -> None:
    ledger = make_ledger()
    ledger.ingest(payload(TransactionKind.INCOMING, "IN-1", D1, line("A", 10)))

    ledger.maintenance.recompute_item(COMPANY, SnapshotItem("RM", "A"), D1)

    row = ledger.snapshots.get(COMPANY, "RM", "A", D1)
    assert row is not None
    assert (row.item_name, row.uom) == ("Item A", "KG")
    assert row.closing_balance == Decimal("10.000")


def test_items_are_isolated_per_company() -> None:
    ledger = make_ledger()
    ledger.ingest(payload(TransactionKind.INCOMING, "IN-1", D1, line("A", 10)))
    ledger.ingest(payload(TransactionKind.INCOMING, "IN-1", D1, line("A", 99), company_code=2000))

    assert closing(ledger, "A", D1) == Decimal("10.000")
    other = ledger.snapshots.get(2000, "RM", "A", D1)
    assert other is not None and other.closing_balance == Decimal("99.000")
