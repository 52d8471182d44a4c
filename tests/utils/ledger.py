"""Builders for ledger unit tests."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from stockledger.common import LedgerClock
from stockledger.config import LedgerConfig
from stockledger.contracts import LineItem, TransactionKind, TransactionPayload
from stockledger.dispatch import InlineDispatcher, MaintenanceDispatcher
from stockledger.ledger import StockLedger, build_in_memory_ledger

COMPANY = 1000
TODAY = date(2026, 3, 10)


class FixedClock(LedgerClock):
    def __init__(self, now_ts: datetime | None = None) -> None:
        self._now_ts = now_ts or datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    def now_utc(self) -> datetime:
        return self._now_ts

    def set(self, now_ts: datetime) -> None:
        self._now_ts = now_ts


def make_config(**overrides: Any) -> LedgerConfig:
    base = dict(
        business_timezone="UTC",
        same_day_priority=-1,
        backdated_priority=0,
        manual_priority=5,
        immediate_backdate_recalc=True,
        ingest_conflict_retries=1,
        maintenance_max_workers=2,
        worker_poll_seconds=1,
        worker_batch_size=10,
        worker_failure_backoff_seconds=2,
        worker_max_consecutive_failures=3,
        log_level="INFO",
    )
    base.update(overrides)
    return LedgerConfig(**base)


def line(item_code: str, qty: str | int, *, item_type: str = "RM", uom: str = "KG", **attributes: Any) -> LineItem:
    return LineItem(
        item_type=item_type,
        item_code=item_code,
        item_name=f"Item {item_code}",
        uom=uom,
        qty=Decimal(str(qty)).quantize(Decimal("0.001")),
        attributes=attributes,
    )


def payload(
    kind: TransactionKind,
    external_id: str,
    business_date: date,
    *lines: LineItem,
    company_code: int = COMPANY,
    reversal: bool = False,
    **header_fields: Any,
) -> TransactionPayload:
    return TransactionPayload(
        kind=kind,
        company_code=company_code,
        external_id=external_id,
        business_date=business_date,
        items=tuple(lines),
        reversal=reversal,
        header_fields=header_fields,
    )


def make_ledger(
    *,
    clock: FixedClock | None = None,
    dispatcher: MaintenanceDispatcher | None = None,
    **config_overrides: Any,
) -> StockLedger:
    return build_in_memory_ledger(
        config=make_config(**config_overrides),
        clock=clock or FixedClock(),
        dispatcher=dispatcher or InlineDispatcher(),
    )


def closing(ledger: StockLedger, item_code: str, on_date: date, *, item_type: str = "RM") -> Decimal | None:
    row = ledger.snapshots.get(COMPANY, item_type, item_code, on_date)
    return None if row is None else row.closing_balance
