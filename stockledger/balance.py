"""Balance and cascade strategies for per-item daily snapshots."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Mapping, Protocol

from stockledger.common import LedgerClock, LedgerDatabase, to_qty
from stockledger.contracts import BalanceResult, SnapshotRow
from stockledger.kinds import MOVEMENT_COLUMNS
from stockledger.snapshot_store import SnapshotStore
from stockledger.transaction_store import InMemoryTransactionStore


class BalanceFunction(Protocol):
    """Recompute and persist one (company, item, date) snapshot row."""

    def recompute(
        self,
        company_code: int,
        item_type: str,
        item_code: str,
        item_name: str,
        uom: str,
        snapshot_date: date,
    ) -> BalanceResult:
        """Derive the row from every transaction visible on ``snapshot_date``."""


class CascadeFunction(Protocol):
    """Re-derive every existing snapshot row strictly after a date."""

    def recalculate_from(self, company_code: int, item_type: str, item_code: str, from_date: date) -> int:
        """Return the number of rows recomputed."""


def opening_balance(snapshots: SnapshotStore, company_code: int, item_type: str, item_code: str, on_date: date) -> Decimal:
    """Beginning balance on the date, else the prior populated day's closing, else zero."""
    beginning = snapshots.beginning_balance_on(company_code, item_type, item_code, on_date)
    if beginning is not None:
        return beginning
    prior = snapshots.latest_before(company_code, item_type, item_code, on_date)
    if prior is not None:
        return prior.closing_balance
    return to_qty(0)


def closing_balance(opening: Decimal, movement: Mapping[str, Decimal]) -> Decimal:
    return (
        opening
        + movement["incoming_qty"]
        - movement["outgoing_qty"]
        - movement["usage_qty"]
        + movement["production_qty"]
        + movement["adjustment_qty"]
    )


class InMemoryBalanceFunction:
    """Deterministic balance function over the in-memory stores."""

    def __init__(
        self,
        *,
        transactions: InMemoryTransactionStore,
        snapshots: SnapshotStore,
        clock: LedgerClock | None = None,
    ) -> None:
        self._transactions = transactions
        self._snapshots = snapshots
        self._clock = clock or LedgerClock()

    def recompute(
        self,
        company_code: int,
        item_type: str,
        item_code: str,
        item_name: str,
        uom: str,
        snapshot_date: date,
    ) -> BalanceResult:
        opening = opening_balance(self._snapshots, company_code, item_type, item_code, snapshot_date)
        movement = {column: to_qty(0) for column in MOVEMENT_COLUMNS}
        for spec, header, line in self._transactions.live_lines_on(company_code, item_type, item_code, snapshot_date):
            movement[spec.movement_column] += spec.signed_qty(line.qty, line.attributes, header.reversal)
        closing = closing_balance(opening, movement)
        if not item_name or not uom:
            existing = self._snapshots.get(company_code, item_type, item_code, snapshot_date)
            if existing is not None:
                item_name = item_name or existing.item_name
                uom = uom or existing.uom

        operation = self._snapshots.upsert(
            SnapshotRow(
                company_code=company_code,
                item_type=item_type,
                item_code=item_code,
                item_name=item_name or "",
                uom=uom or "",
                snapshot_date=snapshot_date,
                opening_balance=opening,
                closing_balance=closing,
                calculated_at=self._clock.now_utc(),
                **movement,
            )
        )
        return BalanceResult(opening_balance=opening, closing_balance=closing, operation=operation, **movement)


class SnapshotCascade:
    """Cascade built on any balance function: walk existing dates ascending."""

    def __init__(self, *, balance: BalanceFunction, snapshots: SnapshotStore) -> None:
        self._balance = balance
        self._snapshots = snapshots

    def recalculate_from(self, company_code: int, item_type: str, item_code: str, from_date: date) -> int:
        count = 0
        for snapshot_date in self._snapshots.dates_after(company_code, item_type, item_code, from_date):
            existing = self._snapshots.get(company_code, item_type, item_code, snapshot_date)
            item_name = existing.item_name if existing is not None else ""
            uom = existing.uom if existing is not None else ""
            self._balance.recompute(company_code, item_type, item_code, item_name, uom, snapshot_date)
            count += 1
        return count


def _balance_from_row(row: Mapping[str, Any]) -> BalanceResult:
    return BalanceResult(
        opening_balance=to_qty(row["opening_balance"]),
        closing_balance=to_qty(row["closing_balance"]),
        incoming_qty=to_qty(row["incoming_qty"]),
        outgoing_qty=to_qty(row["outgoing_qty"]),
        usage_qty=to_qty(row["usage_qty"]),
        production_qty=to_qty(row["production_qty"]),
        adjustment_qty=to_qty(row["adjustment_qty"]),
        operation=str(row["operation"]),
    )


class SqlBalanceFunction:
    """Balance function delegating to ``upsert_item_stock_snapshot``."""

    def __init__(self, db: LedgerDatabase) -> None:
        self._db = db

    def recompute(
        self,
        company_code: int,
        item_type: str,
        item_code: str,
        item_name: str,
        uom: str,
        snapshot_date: date,
    ) -> BalanceResult:
        row = self._db.fetch_one(
            """
            SELECT *
            FROM upsert_item_stock_snapshot(
                CAST(:company_code AS INTEGER),
                CAST(:item_type AS TEXT),
                CAST(:item_code AS TEXT),
                CAST(:item_name AS TEXT),
                CAST(:uom AS TEXT),
                CAST(:snapshot_date AS DATE)
            )
            """,
            {
                "company_code": company_code,
                "item_type": item_type,
                "item_code": item_code,
                "item_name": item_name,
                "uom": uom,
                "snapshot_date": snapshot_date,
            },
        )
        if row is None:
            raise RuntimeError(
                f"upsert_item_stock_snapshot returned no row for {company_code}/{item_type}/{item_code}@{snapshot_date}"
            )
        return _balance_from_row(row)


class SqlCascadeFunction:
    """Cascade function delegating to ``recalculate_item_snapshots_from_date``."""

    def __init__(self, db: LedgerDatabase) -> None:
        self._db = db

    def recalculate_from(self, company_code: int, item_type: str, item_code: str, from_date: date) -> int:
        row = self._db.fetch_one(
            """
            SELECT recalculate_item_snapshots_from_date(
                CAST(:company_code AS INTEGER),
                CAST(:item_type AS TEXT),
                CAST(:item_code AS TEXT),
                CAST(:from_date AS DATE)
            ) AS updated_count
            """,
            {
                "company_code": company_code,
                "item_type": item_type,
                "item_code": item_code,
                "from_date": from_date,
            },
        )
        return 0 if row is None else int(row["updated_count"])
