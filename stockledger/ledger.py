"""Stock ledger facade wiring stores, maintenance, queue and ingestors."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from functools import partial
import logging
from typing import Mapping

from stockledger.backdate import BackdateHandler
from stockledger.balance import (
    BalanceFunction,
    CascadeFunction,
    InMemoryBalanceFunction,
    SnapshotCascade,
    SqlBalanceFunction,
    SqlCascadeFunction,
)
from stockledger.common import LedgerClock, LedgerDatabase, to_qty
from stockledger.config import LedgerConfig, load_ledger_config
from stockledger.contracts import (
    HeaderRecord,
    IngestResult,
    JobLogEntry,
    QueueEntry,
    SnapshotItem,
    SnapshotRow,
    StoredLineItem,
    TraceabilityLink,
    TransactionKind,
    TransactionPayload,
)
from stockledger.dispatch import InlineDispatcher, MaintenanceDispatcher, ThreadPoolDispatcher
from stockledger.end_of_day import EndOfDayCalculator, EndOfDayResult
from stockledger.errors import RejectionError
from stockledger.ingestion import INGESTOR_CLASSES, TransactionIngestor
from stockledger.job_log import InMemoryJobLog, JobLog, SqlJobLog
from stockledger.kinds import kind_spec
from stockledger.queue_worker import RecalcQueueWorker, WorkerBatchResult
from stockledger.recalc_queue import InMemoryRecalcQueue, RecalcQueue, SqlRecalcQueue
from stockledger.snapshot_maintenance import SnapshotMaintenance, resolve_company_items
from stockledger.snapshot_store import InMemorySnapshotStore, SnapshotStore, SqlSnapshotStore
from stockledger.traceability import InMemoryTraceabilityStore, SqlTraceabilityStore, TraceabilityStore
from stockledger.transaction_store import InMemoryTransactionStore, SqlTransactionStore, TransactionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredTransaction:
    """Live header with its live line items."""

    header: HeaderRecord
    items: tuple[StoredLineItem, ...]


class StockLedger:
    """Single entry point for ingestion, queue control and snapshot reads."""

    def __init__(
        self,
        *,
        transactions: TransactionStore,
        snapshots: SnapshotStore,
        queue: RecalcQueue,
        traceability: TraceabilityStore,
        job_log: JobLog,
        balance: BalanceFunction,
        cascade: CascadeFunction,
        dispatcher: MaintenanceDispatcher,
        config: LedgerConfig,
        clock: LedgerClock | None = None,
        item_source: TransactionStore | None = None,
    ) -> None:
        self.transactions = transactions
        self.snapshots = snapshots
        self.queue = queue
        self.traceability = traceability
        self.job_log = job_log
        self.dispatcher = dispatcher
        self.config = config
        self.clock = clock or LedgerClock()

        self.maintenance = SnapshotMaintenance(balance=balance, cascade=cascade)
        resolve_items = partial(resolve_company_items, item_source or transactions, snapshots)
        self.backdate = BackdateHandler(
            queue=queue,
            maintenance=self.maintenance,
            resolve_items=resolve_items,
            config=config,
            clock=self.clock,
        )
        self.worker = RecalcQueueWorker(
            queue=queue,
            maintenance=self.maintenance,
            resolve_items=resolve_items,
            config=config,
        )
        self.end_of_day = EndOfDayCalculator(
            maintenance=self.maintenance,
            transactions=item_source or transactions,
            snapshots=snapshots,
            job_log=job_log,
            config=config,
            clock=self.clock,
        )
        self.ingestors: Mapping[TransactionKind, TransactionIngestor] = {
            kind: ingestor_cls(
                store=transactions,
                maintenance=self.maintenance,
                backdate=self.backdate,
                traceability=traceability,
                dispatcher=dispatcher,
                config=config,
                clock=self.clock,
            )
            for kind, ingestor_cls in INGESTOR_CLASSES.items()
        }

    def ingest(self, payload: TransactionPayload) -> IngestResult:
        """Route a payload to the ingestor for its kind."""
        ingestor = self.ingestors.get(payload.kind)
        if ingestor is None:
            raise RejectionError(f"No ingestor registered for {payload.kind}")
        return ingestor.ingest(payload)

    def enqueue_recalculation(
        self,
        company_code: int,
        recalc_date: date,
        *,
        reason: str = "manual",
        priority: int | None = None,
        item_type: str | None = None,
        item_code: str | None = None,
    ) -> QueueEntry:
        """Queue a recalculation; an outstanding entry for the scope is returned as-is."""
        return self.queue.enqueue(
            company_code,
            recalc_date,
            reason=reason,
            priority=self.config.manual_priority if priority is None else priority,
            item_type=item_type,
            item_code=item_code,
        )

    def is_already_queued(
        self,
        company_code: int,
        recalc_date: date,
        item_type: str | None = None,
        item_code: str | None = None,
    ) -> bool:
        return self.queue.is_already_queued(company_code, recalc_date, item_type, item_code)

    def process_queue(self, limit: int | None = None) -> WorkerBatchResult:
        """Drain one batch of the recalculation queue on the calling thread."""
        return self.worker.process_batch(limit)

    def queue_counts(self) -> dict[str, int]:
        return self.queue.counts()

    def run_end_of_day(
        self,
        company_code: int,
        day: date | None = None,
        *,
        triggered_by: str = "manual",
    ) -> EndOfDayResult:
        """Snapshot every known item for ``day`` (default: business today) on the calling thread."""
        return self.end_of_day.run(company_code, day, triggered_by=triggered_by)

    def recent_jobs(self, company_code: int, limit: int = 10) -> list[JobLogEntry]:
        return self.job_log.recent(company_code, limit)

    def snapshots_between(self, company_code: int, start: date, end: date) -> list[SnapshotRow]:
        if end < start:
            raise ValueError(f"end {end} is before start {start}")
        return self.snapshots.between(company_code, start, end)

    def latest_snapshot(self, company_code: int, item_type: str, item_code: str) -> SnapshotRow | None:
        return self.snapshots.latest(company_code, item_type, item_code)

    def set_beginning_balance(
        self,
        company_code: int,
        item: SnapshotItem,
        balance_date: date,
        qty: Decimal | int | str,
    ) -> None:
        """Record an opening quantity and refresh snapshots from that date."""
        self.snapshots.set_beginning_balance(company_code, item, balance_date, to_qty(qty))
        self.dispatcher.submit(self.maintenance.recompute_and_cascade, company_code, (item,), balance_date)

    def get_header(self, kind: TransactionKind, company_code: int, external_id: str) -> StoredTransaction | None:
        """Live header for (company, external id) with its live items."""
        spec = kind_spec(kind)
        header = self.transactions.find_live_header(spec, company_code, external_id)
        if header is None:
            return None
        items = tuple(item for item in self.transactions.header_items(spec, header.header_id) if item.is_live)
        return StoredTransaction(header=header, items=items)

    def links_for(self, company_code: int, external_id: str) -> list[TraceabilityLink]:
        return self.traceability.links_for(company_code, external_id)

    def close(self, wait: bool = True) -> None:
        """Stop the maintenance dispatcher."""
        self.dispatcher.shutdown(wait=wait)


def build_in_memory_ledger(
    *,
    config: LedgerConfig | None = None,
    clock: LedgerClock | None = None,
    dispatcher: MaintenanceDispatcher | None = None,
) -> StockLedger:
    """Ledger over in-memory stores with the deterministic balance function."""
    clock = clock or LedgerClock()
    transactions = InMemoryTransactionStore()
    snapshots = InMemorySnapshotStore()
    balance = InMemoryBalanceFunction(transactions=transactions, snapshots=snapshots, clock=clock)
    return StockLedger(
        transactions=transactions,
        snapshots=snapshots,
        queue=InMemoryRecalcQueue(clock=clock),
        traceability=InMemoryTraceabilityStore(),
        job_log=InMemoryJobLog(clock=clock),
        balance=balance,
        cascade=SnapshotCascade(balance=balance, snapshots=snapshots),
        dispatcher=dispatcher or InlineDispatcher(),
        config=config or load_ledger_config(),
        clock=clock,
    )


def build_sql_ledger(
    db: LedgerDatabase,
    *,
    maintenance_db: LedgerDatabase,
    config: LedgerConfig | None = None,
    clock: LedgerClock | None = None,
    dispatcher: MaintenanceDispatcher | None = None,
) -> StockLedger:
    """Ledger over PostgreSQL.

    ``db`` carries the transactional ingestion writes and is only committed
    by the transaction store. ``maintenance_db`` must be a separate
    autocommit connection: snapshot, queue and link writes run after the
    ingestion commit and would otherwise sit in an open transaction that the
    next ingestion rollback discards.
    """
    if maintenance_db is db:
        raise ValueError("maintenance_db must be a separate autocommit connection, not the ingestion connection")
    config = config or load_ledger_config()
    clock = clock or LedgerClock()
    background = maintenance_db
    return StockLedger(
        transactions=SqlTransactionStore(db),
        snapshots=SqlSnapshotStore(background),
        queue=SqlRecalcQueue(background, clock=clock),
        traceability=SqlTraceabilityStore(background),
        job_log=SqlJobLog(background, clock=clock),
        balance=SqlBalanceFunction(background),
        cascade=SqlCascadeFunction(background),
        dispatcher=dispatcher or ThreadPoolDispatcher(max_workers=config.maintenance_max_workers),
        config=config,
        clock=clock,
        item_source=SqlTransactionStore(background),
    )
