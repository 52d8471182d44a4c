"""Model module imports for SQLAlchemy metadata registration."""

from __future__ import annotations

import logging

from backend.db.models.job_log import SnapshotJobLog
from backend.db.models.recalc_queue import SnapshotRecalcQueue
from backend.db.models.snapshot import BeginningBalance, StockDailySnapshot
from backend.db.models.traceability import WorkOrderMaterialLink, WorkOrderProductionLink
from backend.db.models.transactions import (
    Adjustment,
    AdjustmentItem,
    IncomingGood,
    IncomingGoodItem,
    MaterialUsage,
    MaterialUsageItem,
    OutgoingGood,
    OutgoingGoodItem,
    ProductionOutput,
    ProductionOutputItem,
)

logger = logging.getLogger(__name__)

__all__ = [
    "Adjustment",
    "AdjustmentItem",
    "BeginningBalance",
    "IncomingGood",
    "IncomingGoodItem",
    "MaterialUsage",
    "MaterialUsageItem",
    "OutgoingGood",
    "OutgoingGoodItem",
    "ProductionOutput",
    "ProductionOutputItem",
    "SnapshotJobLog",
    "SnapshotRecalcQueue",
    "StockDailySnapshot",
    "WorkOrderMaterialLink",
    "WorkOrderProductionLink",
]
