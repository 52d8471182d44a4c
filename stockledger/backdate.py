"""Backdate detection and queueing of snapshot recalculations."""

from __future__ import annotations

from datetime import date, datetime
import enum
import logging
from typing import Callable, Sequence

from stockledger.common import LedgerClock
from stockledger.config import LedgerConfig
from stockledger.contracts import QueueEntry, SnapshotItem, TransactionKind
from stockledger.recalc_queue import RecalcQueue
from stockledger.snapshot_maintenance import SnapshotMaintenance

logger = logging.getLogger(__name__)

ItemResolver = Callable[[int, date], Sequence[SnapshotItem]]


class DateClassification(str, enum.Enum):
    """Relation of a business date to the business-local today."""

    SAME_DAY = "SAME_DAY"
    BACKDATED = "BACKDATED"


def business_today(now_utc: datetime, config: LedgerConfig) -> date:
    """Calendar date of ``now_utc`` in the configured business timezone."""
    return now_utc.astimezone(config.zone).date()


def classify_business_date(business_date: date, today: date) -> DateClassification:
    """Strictly before today is backdated; today and future are same-day."""
    if business_date < today:
        return DateClassification.BACKDATED
    return DateClassification.SAME_DAY


class BackdateHandler:
    """Decides between a low-priority enqueue and an immediate backdated recompute."""

    def __init__(
        self,
        *,
        queue: RecalcQueue,
        maintenance: SnapshotMaintenance,
        resolve_items: ItemResolver,
        config: LedgerConfig,
        clock: LedgerClock | None = None,
    ) -> None:
        self._queue = queue
        self._maintenance = maintenance
        self._resolve_items = resolve_items
        self._config = config
        self._clock = clock or LedgerClock()

    def classify(self, business_date: date) -> DateClassification:
        return classify_business_date(business_date, business_today(self._clock.now_utc(), self._config))

    def handle_possibly_backdated(
        self,
        company_code: int,
        business_date: date,
        external_id: str,
        kind: TransactionKind,
    ) -> QueueEntry | None:
        """Enqueue the date for recalculation and, when backdated, try it right away.

        Returns the queue entry (new or already outstanding), or None when
        queueing itself failed; every failure here is logged, never raised.
        """
        classification = self.classify(business_date)
        if classification == DateClassification.SAME_DAY:
            priority = self._config.same_day_priority
            reason = f"same_day:{kind.value}:{external_id}"
        else:
            priority = self._config.backdated_priority
            reason = f"backdated:{kind.value}:{external_id}"

        entry: QueueEntry | None = None
        try:
            entry = self._queue.enqueue(company_code, business_date, reason=reason, priority=priority)
        except Exception as exc:
            logger.error(
                "Failed to queue recalculation for company=%s date=%s (%s %s): %s",
                company_code,
                business_date,
                kind.value,
                external_id,
                exc,
                exc_info=True,
            )

        if classification == DateClassification.BACKDATED and self._config.immediate_backdate_recalc:
            self._attempt_immediate(company_code, business_date, external_id)
        return entry

    def _attempt_immediate(self, company_code: int, business_date: date, external_id: str) -> None:
        # The queue entry stays PENDING so the worker still covers this date.
        try:
            items = self._resolve_items(company_code, business_date)
            report = self._maintenance.recompute_and_cascade(company_code, items, business_date)
        except Exception as exc:
            logger.warning(
                "Immediate backdated recalculation for company=%s date=%s (%s) failed: %s",
                company_code,
                business_date,
                external_id,
                exc,
            )
            return
        if not report.ok:
            logger.warning(
                "Immediate backdated recalculation for company=%s date=%s (%s) left %s item failures.",
                company_code,
                business_date,
                external_id,
                len(report.failures),
            )
