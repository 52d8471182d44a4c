"""Transaction header/line-item persistence for all five kinds."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime
import itertools
import logging
import threading
from typing import Any, Callable, ContextManager, Iterator, Mapping, Protocol

from psycopg import errors as pg_errors

from stockledger.common import LedgerDatabase, to_date, to_qty
from stockledger.contracts import (
    HeaderRecord,
    LineItem,
    LineState,
    SnapshotItem,
    StoredLineItem,
    TransactionKind,
    TransactionPayload,
)
from stockledger.errors import ConflictError
from stockledger.kinds import KIND_SPECS, KindSpec

logger = logging.getLogger(__name__)


class TransactionStore(Protocol):
    """Header and line-item store used by the ingestion orchestrator."""

    def transaction(self) -> ContextManager[None]:
        """Commit on clean exit, roll back and re-raise otherwise."""

    def find_live_header(self, spec: KindSpec, company_code: int, external_id: str) -> HeaderRecord | None:
        """Return the live header for (company, external_id) regardless of date."""

    def header_items(self, spec: KindSpec, header_id: int) -> list[StoredLineItem]:
        """Return every line item of a header, live and tombstoned."""

    def insert_header(self, spec: KindSpec, payload: TransactionPayload, now_utc: datetime) -> HeaderRecord:
        """Insert a new live header."""

    def update_header(self, spec: KindSpec, header_id: int, payload: TransactionPayload, now_utc: datetime) -> None:
        """Overwrite header metadata in place."""

    def tombstone_header(self, spec: KindSpec, header_id: int, now_utc: datetime) -> None:
        """Mark a header TOMBSTONED."""

    def insert_item(
        self,
        spec: KindSpec,
        header: HeaderRecord,
        line: LineItem,
        now_utc: datetime,
    ) -> StoredLineItem:
        """Insert a new live line item under a header."""

    def update_item(
        self,
        spec: KindSpec,
        stored: StoredLineItem,
        line: LineItem,
        business_date: date,
        now_utc: datetime,
    ) -> None:
        """Apply payload values to an existing line and clear its tombstone."""

    def tombstone_item(self, spec: KindSpec, stored: StoredLineItem, now_utc: datetime) -> None:
        """Mark a line item TOMBSTONED."""

    def items_on_or_after(self, company_code: int, from_date: date) -> list[SnapshotItem]:
        """Distinct items with a live line on or after a date, across all kinds."""

    def items_on_or_before(self, company_code: int, through_date: date) -> list[SnapshotItem]:
        """Distinct items with a live line on or before a date, across all kinds."""


class InMemoryTransactionStore:
    """Thread-safe in-memory store with all-or-nothing transactions."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._headers: dict[TransactionKind, dict[int, HeaderRecord]] = {kind: {} for kind in TransactionKind}
        self._items: dict[TransactionKind, dict[int, StoredLineItem]] = {kind: {} for kind in TransactionKind}

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            saved_headers = {kind: dict(rows) for kind, rows in self._headers.items()}
            saved_items = {kind: dict(rows) for kind, rows in self._items.items()}
            try:
                yield
            except Exception:
                self._headers = saved_headers
                self._items = saved_items
                raise

    def find_live_header(self, spec: KindSpec, company_code: int, external_id: str) -> HeaderRecord | None:
        with self._lock:
            for header in self._headers[spec.kind].values():
                if header.is_live and header.company_code == company_code and header.external_id == external_id:
                    return header
            return None

    def header_items(self, spec: KindSpec, header_id: int) -> list[StoredLineItem]:
        with self._lock:
            return sorted(
                (item for item in self._items[spec.kind].values() if item.header_id == header_id),
                key=lambda item: item.item_id,
            )

    def insert_header(self, spec: KindSpec, payload: TransactionPayload, now_utc: datetime) -> HeaderRecord:
        with self._lock:
            if self.find_live_header(spec, payload.company_code, payload.external_id) is not None:
                raise ConflictError(
                    f"Live {spec.kind.value} header already exists for "
                    f"company={payload.company_code} external_id={payload.external_id}"
                )
            header = HeaderRecord(
                header_id=next(self._ids),
                kind=spec.kind,
                company_code=payload.company_code,
                external_id=payload.external_id,
                business_date=payload.business_date,
                reversal=payload.reversal,
                received_at=payload.received_at,
                header_state=LineState.LIVE,
                fields={name: payload.header_fields.get(name) for name in spec.header_fields},
            )
            self._headers[spec.kind][header.header_id] = header
            return header

    def update_header(self, spec: KindSpec, header_id: int, payload: TransactionPayload, now_utc: datetime) -> None:
        with self._lock:
            current = self._headers[spec.kind][header_id]
            self._headers[spec.kind][header_id] = replace(
                current,
                reversal=payload.reversal,
                received_at=payload.received_at,
                fields={name: payload.header_fields.get(name) for name in spec.header_fields},
            )

    def tombstone_header(self, spec: KindSpec, header_id: int, now_utc: datetime) -> None:
        with self._lock:
            current = self._headers[spec.kind][header_id]
            self._headers[spec.kind][header_id] = replace(
                current,
                header_state=LineState.TOMBSTONED,
                deleted_at=now_utc,
            )

    def insert_item(
        self,
        spec: KindSpec,
        header: HeaderRecord,
        line: LineItem,
        now_utc: datetime,
    ) -> StoredLineItem:
        with self._lock:
            key = spec.natural_key(line)
            for existing in self._items[spec.kind].values():
                if existing.header_id == header.header_id and existing.is_live and existing.natural_key == key:
                    raise ConflictError(f"Live line item {key} already exists under header {header.header_id}")
            stored = StoredLineItem(
                item_id=next(self._ids),
                header_id=header.header_id,
                company_code=header.company_code,
                business_date=header.business_date,
                item_type=line.item_type,
                item_code=line.item_code,
                line_tag=spec.line_tag(line.attributes),
                item_name=line.item_name,
                uom=line.uom,
                qty=line.qty,
                attributes=dict(line.attributes),
            )
            self._items[spec.kind][stored.item_id] = stored
            return stored

    def update_item(
        self,
        spec: KindSpec,
        stored: StoredLineItem,
        line: LineItem,
        business_date: date,
        now_utc: datetime,
    ) -> None:
        with self._lock:
            current = self._items[spec.kind][stored.item_id]
            self._items[spec.kind][stored.item_id] = current.revised(line, business_date)

    def tombstone_item(self, spec: KindSpec, stored: StoredLineItem, now_utc: datetime) -> None:
        with self._lock:
            current = self._items[spec.kind][stored.item_id]
            self._items[spec.kind][stored.item_id] = current.tombstoned(now_utc)

    def get_header(self, spec: KindSpec, header_id: int) -> HeaderRecord | None:
        """Return any header by id, live or tombstoned."""
        with self._lock:
            return self._headers[spec.kind].get(header_id)

    def live_lines_on(
        self,
        company_code: int,
        item_type: str,
        item_code: str,
        on_date: date,
    ) -> list[tuple[KindSpec, HeaderRecord, StoredLineItem]]:
        """Live lines of live headers for one item and business date, across all kinds."""
        with self._lock:
            lines: list[tuple[KindSpec, HeaderRecord, StoredLineItem]] = []
            for kind, spec in KIND_SPECS.items():
                headers = self._headers[kind]
                for item in self._items[kind].values():
                    if not item.is_live or item.company_code != company_code or item.business_date != on_date:
                        continue
                    if item.item_type != item_type or item.item_code != item_code:
                        continue
                    header = headers[item.header_id]
                    if header.is_live:
                        lines.append((spec, header, item))
            return lines

    def items_on_or_after(self, company_code: int, from_date: date) -> list[SnapshotItem]:
        return self._live_items(company_code, lambda business_date: business_date >= from_date)

    def items_on_or_before(self, company_code: int, through_date: date) -> list[SnapshotItem]:
        return self._live_items(company_code, lambda business_date: business_date <= through_date)

    def _live_items(self, company_code: int, in_range: Callable[[date], bool]) -> list[SnapshotItem]:
        with self._lock:
            found: dict[tuple[str, str], SnapshotItem] = {}
            for kind in TransactionKind:
                headers = self._headers[kind]
                for item in self._items[kind].values():
                    if not item.is_live or item.company_code != company_code or not in_range(item.business_date):
                        continue
                    if headers[item.header_id].is_live:
                        found.setdefault((item.item_type, item.item_code), item.as_snapshot_item())
            return [found[key] for key in sorted(found)]


def _header_from_row(spec: KindSpec, row: Mapping[str, Any]) -> HeaderRecord:
    return HeaderRecord(
        header_id=int(row["header_id"]),
        kind=spec.kind,
        company_code=int(row["company_code"]),
        external_id=str(row["external_id"]),
        business_date=to_date(row["business_date"]),
        reversal=bool(row["reversal"]),
        received_at=row.get("received_at"),
        header_state=LineState(str(row["header_state"])),
        fields={name: row.get(name) for name in spec.header_fields},
        deleted_at=row.get("deleted_at"),
    )


def _item_from_row(spec: KindSpec, row: Mapping[str, Any]) -> StoredLineItem:
    return StoredLineItem(
        item_id=int(row["item_id"]),
        header_id=int(row["header_id"]),
        company_code=int(row["company_code"]),
        business_date=to_date(row["business_date"]),
        item_type=str(row["item_type"]),
        item_code=str(row["item_code"]),
        line_tag=str(row["line_tag"] or ""),
        item_name=str(row["item_name"]),
        uom=str(row["uom"]),
        qty=to_qty(row["qty"]),
        attributes={name: row.get(name) for name in spec.item_fields},
        line_state=LineState(str(row["line_state"])),
        deleted_at=row.get("deleted_at"),
    )


def _header_params(spec: KindSpec, payload: TransactionPayload, now_utc: datetime) -> dict[str, Any]:
    params: dict[str, Any] = {
        "company_code": payload.company_code,
        "external_id": payload.external_id,
        "business_date": payload.business_date,
        "reversal": payload.reversal,
        "received_at": payload.received_at,
        "now_utc": now_utc,
    }
    for name in spec.header_fields:
        params[name] = payload.header_fields.get(name)
    return params


def _item_params(spec: KindSpec, line: LineItem, business_date: date, now_utc: datetime) -> dict[str, Any]:
    params: dict[str, Any] = {
        "business_date": business_date,
        "item_type": line.item_type,
        "item_code": line.item_code,
        "line_tag": spec.line_tag(line.attributes),
        "item_name": line.item_name,
        "uom": line.uom,
        "qty": line.qty,
        "now_utc": now_utc,
    }
    for name in spec.item_fields:
        params[name] = line.attributes.get(name)
    return params


class SqlTransactionStore:
    """PostgreSQL transaction store over the ``LedgerDatabase`` seam."""

    def __init__(self, db: LedgerDatabase) -> None:
        self._db = db

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            yield
            self._db.commit()
        except pg_errors.UniqueViolation as exc:
            self._db.rollback()
            raise ConflictError(f"Uniqueness violation during ingestion: {exc}") from exc
        except Exception:
            self._db.rollback()
            raise

    def find_live_header(self, spec: KindSpec, company_code: int, external_id: str) -> HeaderRecord | None:
        row = self._db.fetch_one(
            f"""
            SELECT *
            FROM {spec.header_table}
            WHERE company_code = :company_code
              AND external_id = :external_id
              AND header_state = 'LIVE'
            """,
            {"company_code": company_code, "external_id": external_id},
        )
        return None if row is None else _header_from_row(spec, row)

    def header_items(self, spec: KindSpec, header_id: int) -> list[StoredLineItem]:
        rows = self._db.fetch_all(
            f"""
            SELECT *
            FROM {spec.item_table}
            WHERE header_id = :header_id
            ORDER BY item_id ASC
            """,
            {"header_id": header_id},
        )
        return [_item_from_row(spec, row) for row in rows]

    def insert_header(self, spec: KindSpec, payload: TransactionPayload, now_utc: datetime) -> HeaderRecord:
        columns = ("company_code", "external_id", "business_date", "reversal", "received_at", *spec.header_fields)
        row = self._db.fetch_one(
            f"""
            INSERT INTO {spec.header_table} (
                {", ".join(columns)}, created_at, updated_at
            ) VALUES (
                {", ".join(f":{name}" for name in columns)}, :now_utc, :now_utc
            )
            RETURNING *
            """,
            _header_params(spec, payload, now_utc),
        )
        if row is None:
            raise RuntimeError(f"Header insert into {spec.header_table} returned no row")
        return _header_from_row(spec, row)

    def update_header(self, spec: KindSpec, header_id: int, payload: TransactionPayload, now_utc: datetime) -> None:
        assignments = ", ".join(f"{name} = :{name}" for name in ("reversal", "received_at", *spec.header_fields))
        params = _header_params(spec, payload, now_utc)
        params["header_id"] = header_id
        self._db.execute(
            f"""
            UPDATE {spec.header_table}
            SET {assignments}, updated_at = :now_utc
            WHERE header_id = :header_id
            """,
            params,
        )

    def tombstone_header(self, spec: KindSpec, header_id: int, now_utc: datetime) -> None:
        self._db.execute(
            f"""
            UPDATE {spec.header_table}
            SET header_state = 'TOMBSTONED', deleted_at = :now_utc, updated_at = :now_utc
            WHERE header_id = :header_id
              AND header_state = 'LIVE'
            """,
            {"header_id": header_id, "now_utc": now_utc},
        )

    def insert_item(
        self,
        spec: KindSpec,
        header: HeaderRecord,
        line: LineItem,
        now_utc: datetime,
    ) -> StoredLineItem:
        columns = (
            "header_id",
            "company_code",
            "business_date",
            "item_type",
            "item_code",
            "line_tag",
            "item_name",
            "uom",
            "qty",
            *spec.item_fields,
        )
        params = _item_params(spec, line, header.business_date, now_utc)
        params["header_id"] = header.header_id
        params["company_code"] = header.company_code
        row = self._db.fetch_one(
            f"""
            INSERT INTO {spec.item_table} (
                {", ".join(columns)}, created_at, updated_at
            ) VALUES (
                {", ".join(f":{name}" for name in columns)}, :now_utc, :now_utc
            )
            RETURNING *
            """,
            params,
        )
        if row is None:
            raise RuntimeError(f"Line item insert into {spec.item_table} returned no row")
        return _item_from_row(spec, row)

    def update_item(
        self,
        spec: KindSpec,
        stored: StoredLineItem,
        line: LineItem,
        business_date: date,
        now_utc: datetime,
    ) -> None:
        assignments = ", ".join(
            f"{name} = :{name}" for name in ("business_date", "item_name", "uom", "qty", *spec.item_fields)
        )
        params = _item_params(spec, line, business_date, now_utc)
        params["item_id"] = stored.item_id
        self._db.execute(
            f"""
            UPDATE {spec.item_table}
            SET {assignments}, line_state = 'LIVE', deleted_at = NULL, updated_at = :now_utc
            WHERE item_id = :item_id
            """,
            params,
        )

    def tombstone_item(self, spec: KindSpec, stored: StoredLineItem, now_utc: datetime) -> None:
        self._db.execute(
            f"""
            UPDATE {spec.item_table}
            SET line_state = 'TOMBSTONED', deleted_at = :now_utc, updated_at = :now_utc
            WHERE item_id = :item_id
              AND line_state = 'LIVE'
            """,
            {"item_id": stored.item_id, "now_utc": now_utc},
        )

    def items_on_or_after(self, company_code: int, from_date: date) -> list[SnapshotItem]:
        return self._live_items(company_code, ">=", from_date)

    def items_on_or_before(self, company_code: int, through_date: date) -> list[SnapshotItem]:
        return self._live_items(company_code, "<=", through_date)

    def _live_items(self, company_code: int, comparison: str, bound: date) -> list[SnapshotItem]:
        union = "\nUNION ALL\n".join(
            f"""
            SELECT i.item_type, i.item_code, i.item_name, i.uom
            FROM {spec.item_table} i
            JOIN {spec.header_table} h ON h.header_id = i.header_id
            WHERE i.company_code = :company_code
              AND i.business_date {comparison} :bound
              AND i.line_state = 'LIVE'
              AND h.header_state = 'LIVE'
            """
            for spec in KIND_SPECS.values()
        )
        rows = self._db.fetch_all(
            f"""
            SELECT item_type, item_code, MAX(item_name) AS item_name, MAX(uom) AS uom
            FROM ({union}) AS live_lines
            GROUP BY item_type, item_code
            ORDER BY item_type, item_code
            """,
            {"company_code": company_code, "bound": bound},
        )
        return [snapshot_item_from_row(row) for row in rows]


def snapshot_item_from_row(row: Mapping[str, Any]) -> SnapshotItem:
    return SnapshotItem(
        item_type=str(row["item_type"]),
        item_code=str(row["item_code"]),
        item_name=str(row.get("item_name") or ""),
        uom=str(row.get("uom") or ""),
    )

