"""End-of-day snapshot job log model definition."""

from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    Identity,
    Index,
    Integer,
    PrimaryKeyConstraint,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import job_status_enum

logger = logging.getLogger(__name__)


class SnapshotJobLog(Base):
    """Audit trail of end-of-day snapshot runs."""

    __tablename__ = "snapshot_job_log"
    __table_args__ = (
        PrimaryKeyConstraint("job_id", name="pk_snapshot_job_log"),
        CheckConstraint(
            "processed_records >= 0 AND failed_records >= 0",
            name="ck_snapshot_job_log_counts_nonneg",
        ),
        CheckConstraint(
            "completed_at IS NULL OR status IN ('COMPLETED', 'FAILED')",
            name="ck_snapshot_job_log_completed_terminal",
        ),
        Index("idx_snapshot_job_log_company_date", "company_code", "snapshot_date"),
    )

    job_id: Mapped[int] = mapped_column(BigInteger, Identity(always=True))
    job_type: Mapped[str] = mapped_column(Text, nullable=False)
    company_code: Mapped[int] = mapped_column(Integer, nullable=False)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(
        job_status_enum,
        nullable=False,
        server_default=text("'RUNNING'"),
    )
    triggered_by: Mapped[str] = mapped_column(Text, nullable=False)
    processed_records: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    failed_records: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(Text)
