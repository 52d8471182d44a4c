"""Warehouse stock ledger: transaction ingestion and daily snapshot consistency."""

from stockledger.config import LedgerConfig, load_ledger_config
from stockledger.contracts import (
    IngestResult,
    LineItem,
    LineState,
    QueueEntry,
    SnapshotItem,
    SnapshotRow,
    TransactionKind,
    TransactionPayload,
)
from stockledger.errors import ConflictError, LedgerError, RejectionError
from stockledger.ledger import StockLedger, build_in_memory_ledger, build_sql_ledger

__all__ = [
    "ConflictError",
    "IngestResult",
    "LedgerConfig",
    "LedgerError",
    "LineItem",
    "LineState",
    "QueueEntry",
    "RejectionError",
    "SnapshotItem",
    "SnapshotRow",
    "StockLedger",
    "TransactionKind",
    "TransactionPayload",
    "build_in_memory_ledger",
    "build_sql_ledger",
]
