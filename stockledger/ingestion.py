"""Ingestion orchestrator: idempotent upsert with business-date change.

A payload is absorbed in two phases. The transactional phase looks up the
live header for (company, external id), then either inserts, diffs in place
(same date) or tombstones and re-inserts (date change), and commits. The
maintenance phase is handed to a dispatcher and never fails the caller:
snapshot recompute and cascade for every affected (date, items) pair,
backdate queueing, and traceability links.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
import logging
from typing import ClassVar, Mapping, Sequence

from stockledger.backdate import BackdateHandler
from stockledger.common import LedgerClock
from stockledger.config import LedgerConfig
from stockledger.contracts import (
    HeaderRecord,
    IngestResult,
    LinkType,
    SnapshotItem,
    TraceabilityLink,
    TransactionKind,
    TransactionPayload,
)
from stockledger.dispatch import MaintenanceDispatcher
from stockledger.errors import ConflictError, RejectionError
from stockledger.kinds import KindSpec, kind_spec, validate_payload
from stockledger.reconciliation import diff_line_items, unique_items
from stockledger.snapshot_maintenance import SnapshotMaintenance
from stockledger.traceability import TraceabilityStore, material_links, production_links
from stockledger.transaction_store import TransactionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteOutcome:
    """What the transactional phase committed and which balances it touched."""

    header: HeaderRecord
    item_count: int
    affected: tuple[tuple[date, tuple[SnapshotItem, ...]], ...]
    date_changed: bool = False
    previous_business_date: date | None = None


class TransactionIngestor:
    """Base ingestor; subclasses bind a kind and optional traceability links."""

    kind: ClassVar[TransactionKind]

    def __init__(
        self,
        *,
        store: TransactionStore,
        maintenance: SnapshotMaintenance,
        backdate: BackdateHandler,
        traceability: TraceabilityStore,
        dispatcher: MaintenanceDispatcher,
        config: LedgerConfig,
        clock: LedgerClock | None = None,
    ) -> None:
        self._store = store
        self._maintenance = maintenance
        self._backdate = backdate
        self._traceability = traceability
        self._dispatcher = dispatcher
        self._config = config
        self._clock = clock or LedgerClock()

    @property
    def spec(self) -> KindSpec:
        return kind_spec(self.kind)

    def validate(self, payload: TransactionPayload) -> None:
        """Reject a payload before anything is written."""
        if payload.kind != self.kind:
            raise RejectionError(f"{type(self).__name__} cannot ingest {payload.kind.value} payloads")
        validate_payload(payload)

    def ingest(self, payload: TransactionPayload) -> IngestResult:
        """Commit the payload, then hand snapshot maintenance to the dispatcher."""
        self.validate(payload)
        outcome = self._write_with_retry(payload)
        self._dispatcher.submit(self._after_commit, payload, outcome)
        return IngestResult(
            kind=self.kind,
            external_id=payload.external_id,
            header_id=outcome.header.header_id,
            item_count=outcome.item_count,
            date_changed=outcome.date_changed,
            previous_business_date=outcome.previous_business_date,
        )

    def _write_with_retry(self, payload: TransactionPayload) -> WriteOutcome:
        attempts = self._config.ingest_conflict_retries + 1
        attempt = 1
        while True:
            try:
                return self._write(payload)
            except ConflictError:
                if attempt >= attempts:
                    logger.warning(
                        "Giving up on %s %s after %s conflicting attempts.",
                        self.kind.value,
                        payload.external_id,
                        attempt,
                    )
                    raise
                logger.info(
                    "Uniqueness race on %s %s; re-reading (attempt %s of %s).",
                    self.kind.value,
                    payload.external_id,
                    attempt + 1,
                    attempts,
                )
                attempt += 1

    def _write(self, payload: TransactionPayload) -> WriteOutcome:
        now_utc = self._clock.now_utc()
        with self._store.transaction():
            current = self._store.find_live_header(self.spec, payload.company_code, payload.external_id)
            if current is None:
                return self._insert(payload, now_utc)
            if current.business_date == payload.business_date:
                return self._update_in_place(current, payload, now_utc)
            return self._move_date(current, payload, now_utc)

    def _insert(self, payload: TransactionPayload, now_utc: datetime) -> WriteOutcome:
        header = self._store.insert_header(self.spec, payload, now_utc)
        for line in payload.items:
            self._store.insert_item(self.spec, header, line, now_utc)
        items = unique_items([line.as_snapshot_item() for line in payload.items])
        logger.info(
            "Inserted %s %s for company=%s date=%s with %s items.",
            self.kind.value,
            payload.external_id,
            payload.company_code,
            payload.business_date,
            len(payload.items),
        )
        return WriteOutcome(
            header=header,
            item_count=len(payload.items),
            affected=((payload.business_date, items),),
        )

    def _update_in_place(self, current: HeaderRecord, payload: TransactionPayload, now_utc: datetime) -> WriteOutcome:
        existing = self._store.header_items(self.spec, current.header_id)
        diff = diff_line_items(self.spec, existing, payload.items)

        self._store.update_header(self.spec, current.header_id, payload, now_utc)
        for stored in diff.to_tombstone:
            self._store.tombstone_item(self.spec, stored, now_utc)
        for stored, line in diff.to_update:
            self._store.update_item(self.spec, stored, line, payload.business_date, now_utc)
        for line in diff.to_insert:
            self._store.insert_item(self.spec, current, line, now_utc)

        logger.info(
            "Updated %s %s in place: %s inserted, %s updated, %s tombstoned.",
            self.kind.value,
            payload.external_id,
            len(diff.to_insert),
            len(diff.to_update),
            len(diff.to_tombstone),
        )
        return WriteOutcome(
            header=current,
            item_count=len(payload.items),
            affected=((payload.business_date, diff.affected_items()),),
        )

    def _move_date(self, current: HeaderRecord, payload: TransactionPayload, now_utc: datetime) -> WriteOutcome:
        old_items = [stored for stored in self._store.header_items(self.spec, current.header_id) if stored.is_live]
        for stored in old_items:
            self._store.tombstone_item(self.spec, stored, now_utc)
        self._store.tombstone_header(self.spec, current.header_id, now_utc)

        inserted = self._insert(payload, now_utc)
        logger.info(
            "Moved %s %s from %s to %s; tombstoned header %s and %s items.",
            self.kind.value,
            payload.external_id,
            current.business_date,
            payload.business_date,
            current.header_id,
            len(old_items),
        )
        old_affected = unique_items([stored.as_snapshot_item() for stored in old_items])
        affected = sorted(
            (*inserted.affected, (current.business_date, old_affected)),
            key=lambda pair: pair[0],
        )
        return WriteOutcome(
            header=inserted.header,
            item_count=inserted.item_count,
            affected=tuple(affected),
            date_changed=True,
            previous_business_date=current.business_date,
        )

    def traceability_links(self, payload: TransactionPayload) -> tuple[LinkType, Sequence[TraceabilityLink]] | None:
        """Links owned by this payload; kinds without links return None."""
        return None

    def _after_commit(self, payload: TransactionPayload, outcome: WriteOutcome) -> None:
        for business_date, items in outcome.affected:
            self._maintenance.recompute_and_cascade(payload.company_code, items, business_date)

        self._backdate.handle_possibly_backdated(
            payload.company_code,
            payload.business_date,
            payload.external_id,
            self.kind,
        )
        if outcome.date_changed and outcome.previous_business_date is not None:
            self._backdate.handle_possibly_backdated(
                payload.company_code,
                outcome.previous_business_date,
                payload.external_id,
                self.kind,
            )

        self._record_links(payload)

    def _record_links(self, payload: TransactionPayload) -> None:
        owned = self.traceability_links(payload)
        if owned is None:
            return
        link_type, links = owned
        try:
            self._traceability.replace_links(link_type, payload.company_code, payload.external_id, links)
        except Exception as exc:
            logger.warning(
                "Traceability update for %s %s failed: %s",
                self.kind.value,
                payload.external_id,
                exc,
            )


class IncomingGoodsIngestor(TransactionIngestor):
    """Receipts into the bonded warehouse."""

    kind = TransactionKind.INCOMING


class OutgoingGoodsIngestor(TransactionIngestor):
    """Releases out of the bonded warehouse."""

    kind = TransactionKind.OUTGOING


class MaterialUsageIngestor(TransactionIngestor):
    """Material consumption, linked to its work order when one is given."""

    kind = TransactionKind.MATERIAL_USAGE

    def traceability_links(self, payload: TransactionPayload) -> tuple[LinkType, Sequence[TraceabilityLink]] | None:
        return LinkType.MATERIAL, material_links(payload)


class ProductionOutputIngestor(TransactionIngestor):
    """Finished-goods output, linked to every source work order."""

    kind = TransactionKind.PRODUCTION_OUTPUT

    def traceability_links(self, payload: TransactionPayload) -> tuple[LinkType, Sequence[TraceabilityLink]] | None:
        return LinkType.PRODUCTION, production_links(payload)


class AdjustmentIngestor(TransactionIngestor):
    """Stock-take gains and losses."""

    kind = TransactionKind.ADJUSTMENT


INGESTOR_CLASSES: Mapping[TransactionKind, type[TransactionIngestor]] = {
    TransactionKind.INCOMING: IncomingGoodsIngestor,
    TransactionKind.OUTGOING: OutgoingGoodsIngestor,
    TransactionKind.MATERIAL_USAGE: MaterialUsageIngestor,
    TransactionKind.PRODUCTION_OUTPUT: ProductionOutputIngestor,
    TransactionKind.ADJUSTMENT: AdjustmentIngestor,
}
