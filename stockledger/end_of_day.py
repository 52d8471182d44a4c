"""End-of-day snapshot run: one row per known item for the business day."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
import logging

from stockledger.backdate import business_today
from stockledger.common import LedgerClock
from stockledger.config import LedgerConfig
from stockledger.contracts import SnapshotItem
from stockledger.job_log import EOD_JOB_TYPE, JobLog
from stockledger.reconciliation import unique_items
from stockledger.snapshot_maintenance import SnapshotMaintenance
from stockledger.snapshot_store import SnapshotStore
from stockledger.transaction_store import TransactionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EndOfDayResult:
    """Outcome of one end-of-day run for one company."""

    job_id: int
    company_code: int
    snapshot_date: date
    processed: int
    failed: int
    failures: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.failed == 0


def resolve_end_of_day_items(
    transactions: TransactionStore,
    snapshots: SnapshotStore,
    company_code: int,
    day: date,
) -> tuple[SnapshotItem, ...]:
    """Items that hold a balance on ``day``: any earlier snapshot, beginning balance or live line."""
    items = list(snapshots.items_through(company_code, day))
    items.extend(transactions.items_on_or_before(company_code, day))
    return unique_items(items)


class EndOfDayCalculator:
    """Writes a snapshot for every known item on a business day.

    Items without movement get a carry-forward row whose opening and closing
    equal the previous closing. Per-item failures are counted on the job log
    entry; a failure to enumerate items marks the entry FAILED and propagates.
    """

    def __init__(
        self,
        *,
        maintenance: SnapshotMaintenance,
        transactions: TransactionStore,
        snapshots: SnapshotStore,
        job_log: JobLog,
        config: LedgerConfig,
        clock: LedgerClock | None = None,
    ) -> None:
        self._maintenance = maintenance
        self._transactions = transactions
        self._snapshots = snapshots
        self._job_log = job_log
        self._config = config
        self._clock = clock or LedgerClock()

    def run(self, company_code: int, day: date | None = None, *, triggered_by: str = "scheduler") -> EndOfDayResult:
        snapshot_date = day or business_today(self._clock.now_utc(), self._config)
        job = self._job_log.start(EOD_JOB_TYPE, company_code, snapshot_date, triggered_by=triggered_by)
        logger.info(
            "End-of-day job %s started for company=%s date=%s triggered_by=%s.",
            job.job_id,
            company_code,
            snapshot_date,
            triggered_by,
        )
        try:
            items = resolve_end_of_day_items(self._transactions, self._snapshots, company_code, snapshot_date)
            report = self._maintenance.recompute_and_cascade(company_code, items, snapshot_date)
        except Exception as exc:
            logger.exception("End-of-day job %s failed for company=%s date=%s.", job.job_id, company_code, snapshot_date)
            self._job_log.fail(job.job_id, f"{type(exc).__name__}: {exc}")
            raise

        failed = len(report.failures)
        self._job_log.complete(job.job_id, processed=report.recomputed, failed=failed)
        logger.info(
            "End-of-day job %s completed for company=%s date=%s: processed=%s failed=%s.",
            job.job_id,
            company_code,
            snapshot_date,
            report.recomputed,
            failed,
        )
        return EndOfDayResult(
            job_id=job.job_id,
            company_code=company_code,
            snapshot_date=snapshot_date,
            processed=report.recomputed,
            failed=failed,
            failures=report.failures,
        )
