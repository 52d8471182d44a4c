"""Work-order traceability links for production output and material usage."""

from __future__ import annotations

from decimal import Decimal
import logging
import threading
from typing import Any, Mapping, Protocol, Sequence

from stockledger.common import LedgerDatabase, to_date, to_qty
from stockledger.contracts import LineItem, LinkType, TraceabilityLink, TransactionPayload

logger = logging.getLogger(__name__)

LINK_TABLES: dict[LinkType, str] = {
    LinkType.PRODUCTION: "work_order_fg_production",
    LinkType.MATERIAL: "work_order_material_consumption",
}


def production_links(payload: TransactionPayload) -> list[TraceabilityLink]:
    """One link per (work order, item code) of a production output, quantities summed."""
    totals: dict[tuple[str, str], Decimal] = {}
    item_types: dict[str, str] = {}
    for line in payload.items:
        item_types.setdefault(line.item_code, line.item_type)
        for work_order in line.attributes.get("work_order_numbers") or ():
            key = (str(work_order), line.item_code)
            totals[key] = totals.get(key, Decimal("0")) + line.qty
    return [
        TraceabilityLink(
            link_type=LinkType.PRODUCTION,
            company_code=payload.company_code,
            source_external_id=payload.external_id,
            work_order_number=work_order,
            item_type=item_types[item_code],
            item_code=item_code,
            qty=to_qty(qty),
            business_date=payload.business_date,
        )
        for (work_order, item_code), qty in sorted(totals.items())
    ]


def material_links(payload: TransactionPayload) -> list[TraceabilityLink]:
    """Links from a work-order-bound material usage to each consumed item code."""
    work_order = payload.header_fields.get("work_order_number")
    if not work_order:
        return []
    totals: dict[str, Decimal] = {}
    firsts: dict[str, LineItem] = {}
    for line in payload.items:
        totals[line.item_code] = totals.get(line.item_code, Decimal("0")) + line.qty
        firsts.setdefault(line.item_code, line)
    return [
        TraceabilityLink(
            link_type=LinkType.MATERIAL,
            company_code=payload.company_code,
            source_external_id=payload.external_id,
            work_order_number=str(work_order),
            item_type=firsts[item_code].item_type,
            item_code=item_code,
            qty=to_qty(qty),
            business_date=payload.business_date,
            ppkek_number=firsts[item_code].attributes.get("ppkek_number"),
        )
        for item_code, qty in sorted(totals.items())
    ]


class TraceabilityStore(Protocol):
    """Persistence for traceability links."""

    def replace_links(
        self,
        link_type: LinkType,
        company_code: int,
        source_external_id: str,
        links: Sequence[TraceabilityLink],
    ) -> None:
        """Drop every link owned by the source and insert ``links``."""

    def links_for(self, company_code: int, source_external_id: str) -> list[TraceabilityLink]:
        """All links owned by a source external id."""


class InMemoryTraceabilityStore:
    """Thread-safe in-memory link store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._links: dict[tuple[LinkType, int, str], list[TraceabilityLink]] = {}

    def replace_links(
        self,
        link_type: LinkType,
        company_code: int,
        source_external_id: str,
        links: Sequence[TraceabilityLink],
    ) -> None:
        with self._lock:
            self._links[(link_type, company_code, source_external_id)] = list(links)

    def links_for(self, company_code: int, source_external_id: str) -> list[TraceabilityLink]:
        with self._lock:
            found: list[TraceabilityLink] = []
            for link_type in LinkType:
                found.extend(self._links.get((link_type, company_code, source_external_id), ()))
            return found


def _link_from_row(link_type: LinkType, row: Mapping[str, Any]) -> TraceabilityLink:
    return TraceabilityLink(
        link_type=link_type,
        company_code=int(row["company_code"]),
        source_external_id=str(row["source_external_id"]),
        work_order_number=str(row["work_order_number"]),
        item_type=str(row["item_type"]),
        item_code=str(row["item_code"]),
        qty=to_qty(row["qty"]),
        business_date=to_date(row["business_date"]),
        ppkek_number=row.get("ppkek_number"),
    )


class SqlTraceabilityStore:
    """PostgreSQL link store over the ``LedgerDatabase`` seam."""

    def __init__(self, db: LedgerDatabase) -> None:
        self._db = db

    def replace_links(
        self,
        link_type: LinkType,
        company_code: int,
        source_external_id: str,
        links: Sequence[TraceabilityLink],
    ) -> None:
        table = LINK_TABLES[link_type]
        self._db.execute(
            f"""
            DELETE FROM {table}
            WHERE company_code = :company_code
              AND source_external_id = :source_external_id
            """,
            {"company_code": company_code, "source_external_id": source_external_id},
        )
        for link in links:
            params: dict[str, Any] = {
                "company_code": link.company_code,
                "source_external_id": link.source_external_id,
                "work_order_number": link.work_order_number,
                "item_type": link.item_type,
                "item_code": link.item_code,
                "qty": link.qty,
                "business_date": link.business_date,
            }
            if link_type == LinkType.MATERIAL:
                params["ppkek_number"] = link.ppkek_number
            columns = tuple(params)
            self._db.execute(
                f"""
                INSERT INTO {table} ({", ".join(columns)})
                VALUES ({", ".join(f":{name}" for name in columns)})
                """,
                params,
            )

    def links_for(self, company_code: int, source_external_id: str) -> list[TraceabilityLink]:
        found: list[TraceabilityLink] = []
        for link_type, table in LINK_TABLES.items():
            rows = self._db.fetch_all(
                f"""
                SELECT *
                FROM {table}
                WHERE company_code = :company_code
                  AND source_external_id = :source_external_id
                ORDER BY work_order_number ASC, item_code ASC
                """,
                {"company_code": company_code, "source_external_id": source_external_id},
            )
            found.extend(_link_from_row(link_type, row) for row in rows)
        return found
