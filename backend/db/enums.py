"""PostgreSQL native enum contracts for the stock ledger schema."""

from __future__ import annotations

import enum
import logging

from sqlalchemy.dialects.postgresql import ENUM as PGEnum

logger = logging.getLogger(__name__)


class RecalcStatus(str, enum.Enum):
    """Snapshot recalculation queue lifecycle status."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobStatus(str, enum.Enum):
    """End-of-day snapshot job lifecycle status."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AdjustmentType(str, enum.Enum):
    """Direction of an inventory adjustment line."""

    GAIN = "GAIN"
    LOSS = "LOSS"


class RecordState(str, enum.Enum):
    """Lifecycle of transaction headers and line items."""

    LIVE = "LIVE"
    TOMBSTONED = "TOMBSTONED"


NON_TERMINAL_RECALC_STATUSES: tuple[RecalcStatus, ...] = (
    RecalcStatus.PENDING,
    RecalcStatus.IN_PROGRESS,
)

recalc_status_enum = PGEnum(RecalcStatus, name="recalc_status_enum")
adjustment_type_enum = PGEnum(AdjustmentType, name="adjustment_type_enum")
record_state_enum = PGEnum(RecordState, name="record_state_enum")
job_status_enum = PGEnum(JobStatus, name="job_status_enum")
