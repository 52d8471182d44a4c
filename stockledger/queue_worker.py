"""Single-process worker draining the snapshot recalculation queue."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import time

from stockledger.backdate import ItemResolver
from stockledger.config import LedgerConfig
from stockledger.contracts import QueueEntry, RecalcStatus, SnapshotItem
from stockledger.recalc_queue import RecalcQueue
from stockledger.snapshot_maintenance import SnapshotMaintenance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerBatchResult:
    """Counts for one polling pass."""

    fetched: int
    completed: int
    failed: int
    skipped: int


class RecalcQueueWorker:
    """Claims PENDING entries in priority order and re-derives their snapshots.

    A failing entry is marked FAILED with its error message and left there;
    nothing is retried automatically.
    """

    def __init__(
        self,
        *,
        queue: RecalcQueue,
        maintenance: SnapshotMaintenance,
        resolve_items: ItemResolver,
        config: LedgerConfig,
    ) -> None:
        self._queue = queue
        self._maintenance = maintenance
        self._resolve_items = resolve_items
        self._config = config

    def _scope_items(self, entry: QueueEntry) -> tuple[SnapshotItem, ...]:
        resolved = tuple(self._resolve_items(entry.company_code, entry.recalc_date))
        if not entry.item_scoped:
            return resolved
        key = (str(entry.item_type), str(entry.item_code))
        for item in resolved:
            if item.key == key:
                return (item,)
        return (SnapshotItem(*key),)

    def process_entry(self, entry: QueueEntry) -> RecalcStatus | None:
        """Claim and run one entry; return its final status, or None if it was not claimable."""
        claimed = self._queue.claim(entry.queue_id)
        if claimed is None:
            logger.debug("Queue entry %s was claimed elsewhere; skipping.", entry.queue_id)
            return None

        logger.info(
            "Processing recalculation %s for company=%s date=%s (%s).",
            claimed.queue_id,
            claimed.company_code,
            claimed.recalc_date,
            claimed.reason,
        )
        try:
            items = self._scope_items(claimed)
            self._maintenance.recompute_items(claimed.company_code, items, claimed.recalc_date)
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            logger.error("Recalculation %s failed: %s", claimed.queue_id, message)
            self._queue.mark_failed(claimed.queue_id, message)
            return RecalcStatus.FAILED

        self._queue.mark_completed(claimed.queue_id)
        logger.info("Recalculation %s completed for %s items.", claimed.queue_id, len(items))
        return RecalcStatus.COMPLETED

    def process_batch(self, limit: int | None = None) -> WorkerBatchResult:
        """Process up to ``limit`` pending entries (defaults to the configured batch size)."""
        entries = self._queue.fetch_pending(limit or self._config.worker_batch_size)
        outcomes = [self.process_entry(entry) for entry in entries]
        result = WorkerBatchResult(
            fetched=len(entries),
            completed=outcomes.count(RecalcStatus.COMPLETED),
            failed=outcomes.count(RecalcStatus.FAILED),
            skipped=outcomes.count(None),
        )
        if entries:
            logger.info(
                "Recalculation batch done: fetched=%s completed=%s failed=%s skipped=%s.",
                result.fetched,
                result.completed,
                result.failed,
                result.skipped,
            )
        return result

    def run_once(self) -> WorkerBatchResult:
        """Execute one polling pass."""
        return self.process_batch()

    def daemon_loop(self, *, max_cycles: int | None = None) -> None:
        """Poll until interrupted or ``max_cycles`` passes have run."""
        logger.info(
            "Recalculation worker started; poll=%ss batch=%s max_cycles=%s.",
            self._config.worker_poll_seconds,
            self._config.worker_batch_size,
            max_cycles if max_cycles is not None else "infinite",
        )
        cycles = 0
        consecutive_failures = 0
        try:
            while True:
                try:
                    self.run_once()
                    consecutive_failures = 0
                except Exception as exc:
                    consecutive_failures += 1
                    logger.error(
                        "Recalculation worker cycle failed (%s consecutive): %s",
                        consecutive_failures,
                        exc,
                        exc_info=True,
                    )
                    if consecutive_failures >= self._config.worker_max_consecutive_failures:
                        raise RuntimeError(
                            "Recalculation worker exceeded max consecutive failures "
                            f"({self._config.worker_max_consecutive_failures})"
                        ) from exc
                    time.sleep(self._config.worker_failure_backoff_seconds)
                    continue

                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    return
                time.sleep(self._config.worker_poll_seconds)
        finally:
            logger.info("Recalculation worker stopped after %s cycles.", cycles)
