"""Direct snapshot recompute plus forward cascade after transaction writes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
import logging
import threading
from typing import Sequence

from stockledger.balance import BalanceFunction, CascadeFunction
from stockledger.contracts import SnapshotItem
from stockledger.reconciliation import unique_items
from stockledger.snapshot_store import SnapshotStore
from stockledger.transaction_store import TransactionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MaintenanceReport:
    """Per-call summary of a recompute-and-cascade pass."""

    recomputed: int
    cascaded: int
    failures: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failures


class SnapshotMaintenance:
    """Keeps snapshot rows consistent for a set of items from a given date onward.

    Work for one (company, item) is serialized so that a cascade always walks
    that item's dates in ascending order even when several maintenance tasks
    run on a thread pool.
    """

    def __init__(self, *, balance: BalanceFunction, cascade: CascadeFunction) -> None:
        self._balance = balance
        self._cascade = cascade
        self._locks_guard = threading.Lock()
        # Never pruned; bounded by the company item catalogue.
        self._item_locks: dict[tuple[int, str, str], threading.Lock] = {}

    def _item_lock(self, company_code: int, item: SnapshotItem) -> threading.Lock:
        key = (company_code, item.item_type, item.item_code)
        with self._locks_guard:
            lock = self._item_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._item_locks[key] = lock
            return lock

    def recompute_item(self, company_code: int, item: SnapshotItem, from_date: date) -> int:
        """Recompute ``from_date`` then cascade forward; errors propagate."""
        with self._item_lock(company_code, item):
            result = self._balance.recompute(
                company_code,
                item.item_type,
                item.item_code,
                item.item_name,
                item.uom,
                from_date,
            )
            cascaded = self._cascade.recalculate_from(company_code, item.item_type, item.item_code, from_date)
        logger.debug(
            "Snapshot %s for company=%s item=%s/%s date=%s closing=%s; cascaded %s later rows.",
            result.operation,
            company_code,
            item.item_type,
            item.item_code,
            from_date,
            result.closing_balance,
            cascaded,
        )
        return cascaded

    def recompute_items(self, company_code: int, items: Sequence[SnapshotItem], from_date: date) -> int:
        """Strict variant used by the queue worker; the first failure propagates."""
        cascaded = 0
        for item in unique_items(items):
            cascaded += self.recompute_item(company_code, item, from_date)
        return cascaded

    def recompute_and_cascade(
        self,
        company_code: int,
        items: Sequence[SnapshotItem],
        from_date: date,
    ) -> MaintenanceReport:
        """Best-effort recompute for every item; failures are logged, never raised."""
        recomputed = 0
        cascaded = 0
        failures: list[str] = []
        for item in unique_items(items):
            try:
                cascaded += self.recompute_item(company_code, item, from_date)
                recomputed += 1
            except Exception as exc:
                logger.error(
                    "Snapshot maintenance failed for company=%s item=%s/%s date=%s: %s",
                    company_code,
                    item.item_type,
                    item.item_code,
                    from_date,
                    exc,
                    exc_info=True,
                )
                failures.append(f"{item.item_type}/{item.item_code}: {type(exc).__name__}: {exc}")
        return MaintenanceReport(recomputed=recomputed, cascaded=cascaded, failures=tuple(failures))


def resolve_company_items(
    transactions: TransactionStore,
    snapshots: SnapshotStore,
    company_code: int,
    from_date: date,
) -> tuple[SnapshotItem, ...]:
    """Every item whose balance on or after ``from_date`` can be affected."""
    items = list(snapshots.items_for_company(company_code, from_date))
    items.extend(transactions.items_on_or_after(company_code, from_date))
    return unique_items(items)
