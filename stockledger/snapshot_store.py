"""Daily stock snapshot rows and beginning balances."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
import threading
from typing import Any, Mapping, Protocol

from stockledger.common import LedgerDatabase, to_date, to_qty
from stockledger.contracts import SnapshotItem, SnapshotRow
from stockledger.transaction_store import snapshot_item_from_row

_SNAPSHOT_COLUMNS = """
    company_code, item_type, item_code, item_name, uom, snapshot_date,
    opening_balance, incoming_qty, outgoing_qty, usage_qty, production_qty,
    adjustment_qty, closing_balance, calculated_at
"""


class SnapshotStore(Protocol):
    """Read/write surface over per-item daily snapshot rows."""

    def get(self, company_code: int, item_type: str, item_code: str, snapshot_date: date) -> SnapshotRow | None:
        """Return the row for one item and date."""

    def upsert(self, row: SnapshotRow) -> str:
        """Insert or replace a row; return ``INSERT`` or ``UPDATE``."""

    def dates_after(self, company_code: int, item_type: str, item_code: str, after: date) -> list[date]:
        """Existing snapshot dates strictly after ``after``, ascending."""

    def latest_before(self, company_code: int, item_type: str, item_code: str, before: date) -> SnapshotRow | None:
        """Most recent row strictly before ``before``."""

    def latest(self, company_code: int, item_type: str, item_code: str) -> SnapshotRow | None:
        """Most recent row for an item."""

    def between(self, company_code: int, start: date, end: date) -> list[SnapshotRow]:
        """Rows in [start, end] ordered by item_type, item_code, date."""

    def set_beginning_balance(self, company_code: int, item: SnapshotItem, balance_date: date, qty: Decimal) -> None:
        """Record an operator-entered opening quantity."""

    def beginning_balance_on(self, company_code: int, item_type: str, item_code: str, on_date: date) -> Decimal | None:
        """Beginning balance recorded on exactly ``on_date``."""

    def items_for_company(self, company_code: int, from_date: date) -> list[SnapshotItem]:
        """Items with a snapshot on/after or a beginning balance on/before ``from_date``."""

    def items_through(self, company_code: int, through_date: date) -> list[SnapshotItem]:
        """Items with a snapshot or a beginning balance on or before ``through_date``."""


class InMemorySnapshotStore:
    """Thread-safe in-memory snapshot store."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rows: dict[tuple[int, str, str, date], SnapshotRow] = {}
        self._beginning: dict[tuple[int, str, str, date], tuple[SnapshotItem, Decimal]] = {}

    def get(self, company_code: int, item_type: str, item_code: str, snapshot_date: date) -> SnapshotRow | None:
        with self._lock:
            return self._rows.get((company_code, item_type, item_code, snapshot_date))

    def upsert(self, row: SnapshotRow) -> str:
        with self._lock:
            key = (row.company_code, row.item_type, row.item_code, row.snapshot_date)
            existing = self._rows.get(key)
            self._rows[key] = row
            return "INSERT" if existing is None else "UPDATE"

    def _item_rows(self, company_code: int, item_type: str, item_code: str) -> list[SnapshotRow]:
        return sorted(
            (
                row
                for (company, kind, code, _), row in self._rows.items()
                if company == company_code and kind == item_type and code == item_code
            ),
            key=lambda row: row.snapshot_date,
        )

    def dates_after(self, company_code: int, item_type: str, item_code: str, after: date) -> list[date]:
        with self._lock:
            return [
                row.snapshot_date
                for row in self._item_rows(company_code, item_type, item_code)
                if row.snapshot_date > after
            ]

    def latest_before(self, company_code: int, item_type: str, item_code: str, before: date) -> SnapshotRow | None:
        with self._lock:
            prior = [row for row in self._item_rows(company_code, item_type, item_code) if row.snapshot_date < before]
            return prior[-1] if prior else None

    def latest(self, company_code: int, item_type: str, item_code: str) -> SnapshotRow | None:
        with self._lock:
            rows = self._item_rows(company_code, item_type, item_code)
            return rows[-1] if rows else None

    def between(self, company_code: int, start: date, end: date) -> list[SnapshotRow]:
        with self._lock:
            rows = [
                row
                for row in self._rows.values()
                if row.company_code == company_code and start <= row.snapshot_date <= end
            ]
        return sorted(rows, key=lambda row: (row.item_type, row.item_code, row.snapshot_date))

    def set_beginning_balance(self, company_code: int, item: SnapshotItem, balance_date: date, qty: Decimal) -> None:
        with self._lock:
            self._beginning[(company_code, item.item_type, item.item_code, balance_date)] = (item, to_qty(qty))

    def beginning_balance_on(self, company_code: int, item_type: str, item_code: str, on_date: date) -> Decimal | None:
        with self._lock:
            entry = self._beginning.get((company_code, item_type, item_code, on_date))
            return None if entry is None else entry[1]

    def items_for_company(self, company_code: int, from_date: date) -> list[SnapshotItem]:
        with self._lock:
            found: dict[tuple[str, str], SnapshotItem] = {}
            for row in self._rows.values():
                if row.company_code == company_code and row.snapshot_date >= from_date:
                    found.setdefault(
                        (row.item_type, row.item_code),
                        SnapshotItem(row.item_type, row.item_code, row.item_name, row.uom),
                    )
            for (company, _, _, balance_date), (item, _) in self._beginning.items():
                if company == company_code and balance_date <= from_date:
                    found.setdefault(item.key, item)
            return [found[key] for key in sorted(found)]

    def items_through(self, company_code: int, through_date: date) -> list[SnapshotItem]:
        with self._lock:
            found: dict[tuple[str, str], SnapshotItem] = {}
            for row in sorted(self._rows.values(), key=lambda row: row.snapshot_date, reverse=True):
                if row.company_code == company_code and row.snapshot_date <= through_date:
                    found.setdefault(
                        (row.item_type, row.item_code),
                        SnapshotItem(row.item_type, row.item_code, row.item_name, row.uom),
                    )
            for (company, _, _, balance_date), (item, _) in self._beginning.items():
                if company == company_code and balance_date <= through_date:
                    found.setdefault(item.key, item)
            return [found[key] for key in sorted(found)]


def snapshot_from_row(row: Mapping[str, Any]) -> SnapshotRow:
    """Convert a ``stock_daily_snapshot`` row mapping to a ``SnapshotRow``."""
    return SnapshotRow(
        company_code=int(row["company_code"]),
        item_type=str(row["item_type"]),
        item_code=str(row["item_code"]),
        item_name=str(row.get("item_name") or ""),
        uom=str(row.get("uom") or ""),
        snapshot_date=to_date(row["snapshot_date"]),
        opening_balance=to_qty(row["opening_balance"]),
        incoming_qty=to_qty(row["incoming_qty"]),
        outgoing_qty=to_qty(row["outgoing_qty"]),
        usage_qty=to_qty(row["usage_qty"]),
        production_qty=to_qty(row["production_qty"]),
        adjustment_qty=to_qty(row["adjustment_qty"]),
        closing_balance=to_qty(row["closing_balance"]),
        calculated_at=row.get("calculated_at"),
    )


class SqlSnapshotStore:
    """PostgreSQL snapshot store over the ``LedgerDatabase`` seam."""

    def __init__(self, db: LedgerDatabase) -> None:
        self._db = db

    def get(self, company_code: int, item_type: str, item_code: str, snapshot_date: date) -> SnapshotRow | None:
        row = self._db.fetch_one(
            f"""
            SELECT {_SNAPSHOT_COLUMNS}
            FROM stock_daily_snapshot
            WHERE company_code = :company_code
              AND item_type = :item_type
              AND item_code = :item_code
              AND snapshot_date = :snapshot_date
            """,
            {
                "company_code": company_code,
                "item_type": item_type,
                "item_code": item_code,
                "snapshot_date": snapshot_date,
            },
        )
        return None if row is None else snapshot_from_row(row)

    def upsert(self, row: SnapshotRow) -> str:
        result = self._db.fetch_one(
            """
            INSERT INTO stock_daily_snapshot (
                company_code, item_type, item_code, item_name, uom, snapshot_date,
                opening_balance, incoming_qty, outgoing_qty, usage_qty, production_qty,
                adjustment_qty, closing_balance, calculated_at, updated_at
            ) VALUES (
                :company_code, :item_type, :item_code, :item_name, :uom, :snapshot_date,
                :opening_balance, :incoming_qty, :outgoing_qty, :usage_qty, :production_qty,
                :adjustment_qty, :closing_balance, now(), now()
            )
            ON CONFLICT ON CONSTRAINT uq_stock_daily_snapshot_item_date DO UPDATE SET
                item_name = EXCLUDED.item_name,
                uom = EXCLUDED.uom,
                opening_balance = EXCLUDED.opening_balance,
                incoming_qty = EXCLUDED.incoming_qty,
                outgoing_qty = EXCLUDED.outgoing_qty,
                usage_qty = EXCLUDED.usage_qty,
                production_qty = EXCLUDED.production_qty,
                adjustment_qty = EXCLUDED.adjustment_qty,
                closing_balance = EXCLUDED.closing_balance,
                calculated_at = now(),
                updated_at = now()
            RETURNING (xmax = 0) AS inserted
            """,
            {
                "company_code": row.company_code,
                "item_type": row.item_type,
                "item_code": row.item_code,
                "item_name": row.item_name,
                "uom": row.uom,
                "snapshot_date": row.snapshot_date,
                "opening_balance": row.opening_balance,
                "incoming_qty": row.incoming_qty,
                "outgoing_qty": row.outgoing_qty,
                "usage_qty": row.usage_qty,
                "production_qty": row.production_qty,
                "adjustment_qty": row.adjustment_qty,
                "closing_balance": row.closing_balance,
            },
        )
        return "INSERT" if result is not None and bool(result["inserted"]) else "UPDATE"

    def dates_after(self, company_code: int, item_type: str, item_code: str, after: date) -> list[date]:
        rows = self._db.fetch_all(
            """
            SELECT snapshot_date
            FROM stock_daily_snapshot
            WHERE company_code = :company_code
              AND item_type = :item_type
              AND item_code = :item_code
              AND snapshot_date > :after
            ORDER BY snapshot_date ASC
            """,
            {"company_code": company_code, "item_type": item_type, "item_code": item_code, "after": after},
        )
        return [to_date(row["snapshot_date"]) for row in rows]

    def latest_before(self, company_code: int, item_type: str, item_code: str, before: date) -> SnapshotRow | None:
        row = self._db.fetch_one(
            f"""
            SELECT {_SNAPSHOT_COLUMNS}
            FROM stock_daily_snapshot
            WHERE company_code = :company_code
              AND item_type = :item_type
              AND item_code = :item_code
              AND snapshot_date < :before
            ORDER BY snapshot_date DESC
            LIMIT 1
            """,
            {"company_code": company_code, "item_type": item_type, "item_code": item_code, "before": before},
        )
        return None if row is None else snapshot_from_row(row)

    def latest(self, company_code: int, item_type: str, item_code: str) -> SnapshotRow | None:
        row = self._db.fetch_one(
            f"""
            SELECT {_SNAPSHOT_COLUMNS}
            FROM stock_daily_snapshot
            WHERE company_code = :company_code
              AND item_type = :item_type
              AND item_code = :item_code
            ORDER BY snapshot_date DESC
            LIMIT 1
            """,
            {"company_code": company_code, "item_type": item_type, "item_code": item_code},
        )
        return None if row is None else snapshot_from_row(row)

    def between(self, company_code: int, start: date, end: date) -> list[SnapshotRow]:
        rows = self._db.fetch_all(
            f"""
            SELECT {_SNAPSHOT_COLUMNS}
            FROM stock_daily_snapshot
            WHERE company_code = :company_code
              AND snapshot_date BETWEEN :start_date AND :end_date
            ORDER BY item_type ASC, item_code ASC, snapshot_date ASC
            """,
            {"company_code": company_code, "start_date": start, "end_date": end},
        )
        return [snapshot_from_row(row) for row in rows]

    def set_beginning_balance(self, company_code: int, item: SnapshotItem, balance_date: date, qty: Decimal) -> None:
        self._db.execute(
            """
            INSERT INTO beginning_balances (
                company_code, item_type, item_code, item_name, uom, balance_date, qty
            ) VALUES (
                :company_code, :item_type, :item_code, :item_name, :uom, :balance_date, :qty
            )
            ON CONFLICT ON CONSTRAINT uq_beginning_balances_item_date DO UPDATE SET
                item_name = EXCLUDED.item_name,
                uom = EXCLUDED.uom,
                qty = EXCLUDED.qty
            """,
            {
                "company_code": company_code,
                "item_type": item.item_type,
                "item_code": item.item_code,
                "item_name": item.item_name,
                "uom": item.uom,
                "balance_date": balance_date,
                "qty": to_qty(qty),
            },
        )

    def beginning_balance_on(self, company_code: int, item_type: str, item_code: str, on_date: date) -> Decimal | None:
        row = self._db.fetch_one(
            """
            SELECT qty
            FROM beginning_balances
            WHERE company_code = :company_code
              AND item_type = :item_type
              AND item_code = :item_code
              AND balance_date = :balance_date
            """,
            {"company_code": company_code, "item_type": item_type, "item_code": item_code, "balance_date": on_date},
        )
        return None if row is None else to_qty(row["qty"])

    def items_for_company(self, company_code: int, from_date: date) -> list[SnapshotItem]:
        rows = self._db.fetch_all(
            """
            SELECT item_type, item_code, MAX(item_name) AS item_name, MAX(uom) AS uom
            FROM (
                SELECT item_type, item_code, item_name, uom
                FROM stock_daily_snapshot
                WHERE company_code = :company_code
                  AND snapshot_date >= :from_date
                UNION ALL
                SELECT item_type, item_code, item_name, uom
                FROM beginning_balances
                WHERE company_code = :company_code
                  AND balance_date <= :from_date
            ) AS known_items
            GROUP BY item_type, item_code
            ORDER BY item_type, item_code
            """,
            {"company_code": company_code, "from_date": from_date},
        )
        return [snapshot_item_from_row(row) for row in rows]


    def items_through(self, company_code: int, through_date: date) -> list[SnapshotItem]:
        rows = self._db.fetch_all(
            """
            SELECT item_type, item_code, MAX(item_name) AS item_name, MAX(uom) AS uom
            FROM (
                SELECT item_type, item_code, item_name, uom
                FROM stock_daily_snapshot
                WHERE company_code = :company_code
                  AND snapshot_date <= :through_date
                UNION ALL
                SELECT item_type, item_code, item_name, uom
                FROM beginning_balances
                WHERE company_code = :company_code
                  AND balance_date <= :through_date
            ) AS known_items
            GROUP BY item_type, item_code
            ORDER BY item_type, item_code
            """,
            {"company_code": company_code, "through_date": through_date},
        )
        return [snapshot_item_from_row(row) for row in rows]
