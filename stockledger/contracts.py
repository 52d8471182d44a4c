"""Domain contracts shared by ingestion, snapshot maintenance and the queue."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
import enum
from typing import Any, Mapping

from backend.db.enums import AdjustmentType, JobStatus, RecalcStatus, RecordState

LineState = RecordState

__all__ = [
    "AdjustmentType",
    "BalanceResult",
    "HeaderRecord",
    "IngestResult",
    "JobLogEntry",
    "JobStatus",
    "LineItem",
    "LineState",
    "LinkType",
    "QueueEntry",
    "RecalcStatus",
    "SnapshotItem",
    "SnapshotRow",
    "StoredLineItem",
    "TraceabilityLink",
    "TransactionKind",
    "TransactionPayload",
]


class TransactionKind(str, enum.Enum):
    """WMS transaction families absorbed by the ledger."""

    INCOMING = "incoming"
    OUTGOING = "outgoing"
    MATERIAL_USAGE = "material_usage"
    PRODUCTION_OUTPUT = "production_output"
    ADJUSTMENT = "adjustment"


class LinkType(str, enum.Enum):
    """Traceability link families."""

    PRODUCTION = "PRODUCTION"
    MATERIAL = "MATERIAL"


@dataclass(frozen=True)
class SnapshotItem:
    """Item identity plus display attributes carried onto snapshot rows."""

    item_type: str
    item_code: str
    item_name: str = ""
    uom: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.item_type, self.item_code)


@dataclass(frozen=True)
class LineItem:
    """One line of an incoming transaction payload."""

    item_type: str
    item_code: str
    item_name: str
    uom: str
    qty: Decimal
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def as_snapshot_item(self) -> SnapshotItem:
        return SnapshotItem(self.item_type, self.item_code, self.item_name, self.uom)


@dataclass(frozen=True)
class TransactionPayload:
    """Validated WMS transaction ready for ingestion."""

    kind: TransactionKind
    company_code: int
    external_id: str
    business_date: date
    items: tuple[LineItem, ...]
    reversal: bool = False
    received_at: datetime | None = None
    header_fields: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HeaderRecord:
    """Persisted transaction header."""

    header_id: int
    kind: TransactionKind
    company_code: int
    external_id: str
    business_date: date
    reversal: bool
    received_at: datetime | None
    header_state: RecordState
    fields: Mapping[str, Any] = field(default_factory=dict)
    deleted_at: datetime | None = None

    @property
    def is_live(self) -> bool:
        return self.header_state == RecordState.LIVE


@dataclass(frozen=True)
class StoredLineItem:
    """Persisted line item; tombstoned rows are kept, never deleted."""

    item_id: int
    header_id: int
    company_code: int
    business_date: date
    item_type: str
    item_code: str
    line_tag: str
    item_name: str
    uom: str
    qty: Decimal
    attributes: Mapping[str, Any] = field(default_factory=dict)
    line_state: LineState = LineState.LIVE
    deleted_at: datetime | None = None

    @property
    def natural_key(self) -> tuple[str, str, str]:
        return (self.item_type, self.item_code, self.line_tag)

    @property
    def is_live(self) -> bool:
        return self.line_state == LineState.LIVE

    def as_snapshot_item(self) -> SnapshotItem:
        return SnapshotItem(self.item_type, self.item_code, self.item_name, self.uom)

    def tombstoned(self, now_utc: datetime) -> "StoredLineItem":
        """Transition LIVE -> TOMBSTONED."""
        if not self.is_live:
            raise ValueError(f"Line item {self.item_id} is already tombstoned")
        return replace(self, line_state=LineState.TOMBSTONED, deleted_at=now_utc)

    def revised(self, line: LineItem, business_date: date) -> "StoredLineItem":
        """Apply a payload line in place and clear any tombstone."""
        return replace(
            self,
            business_date=business_date,
            item_name=line.item_name,
            uom=line.uom,
            qty=line.qty,
            attributes=dict(line.attributes),
            line_state=LineState.LIVE,
            deleted_at=None,
        )


@dataclass(frozen=True)
class IngestResult:
    """Outcome returned to the caller once the transactional write committed."""

    kind: TransactionKind
    external_id: str
    header_id: int
    item_count: int
    date_changed: bool = False
    previous_business_date: date | None = None


@dataclass(frozen=True)
class SnapshotRow:
    """Per-item, per-day opening/closing balance with per-source movement."""

    company_code: int
    item_type: str
    item_code: str
    item_name: str
    uom: str
    snapshot_date: date
    opening_balance: Decimal
    incoming_qty: Decimal
    outgoing_qty: Decimal
    usage_qty: Decimal
    production_qty: Decimal
    adjustment_qty: Decimal
    closing_balance: Decimal
    calculated_at: datetime | None = None


@dataclass(frozen=True)
class BalanceResult:
    """Balance Function result for one (company, item, date)."""

    opening_balance: Decimal
    closing_balance: Decimal
    incoming_qty: Decimal
    outgoing_qty: Decimal
    usage_qty: Decimal
    production_qty: Decimal
    adjustment_qty: Decimal
    operation: str


@dataclass(frozen=True)
class QueueEntry:
    """Snapshot recalculation queue entry."""

    queue_id: int
    company_code: int
    recalc_date: date
    item_type: str | None
    item_code: str | None
    status: RecalcStatus
    priority: int
    reason: str
    queued_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None

    @property
    def item_scoped(self) -> bool:
        return self.item_type is not None and self.item_code is not None

    @property
    def scope(self) -> tuple[int, date, str | None, str | None]:
        return (self.company_code, self.recalc_date, self.item_type, self.item_code)


@dataclass(frozen=True)
class JobLogEntry:
    """One run of the end-of-day snapshot job."""

    job_id: int
    job_type: str
    company_code: int
    snapshot_date: date
    status: JobStatus
    started_at: datetime
    triggered_by: str
    processed_records: int = 0
    failed_records: int = 0
    completed_at: datetime | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class TraceabilityLink:
    """Work-order link derived from a production or material usage line."""

    link_type: LinkType
    company_code: int
    source_external_id: str
    work_order_number: str
    item_type: str
    item_code: str
    qty: Decimal
    business_date: date
    ppkek_number: str | None = None
