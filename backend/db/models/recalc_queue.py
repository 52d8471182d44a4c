"""Snapshot recalculation queue model definition."""

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
    desc,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import recalc_status_enum

logger = logging.getLogger(__name__)


class SnapshotRecalcQueue(Base):
    """Durable work list of dates whose snapshots must be re-derived."""

    __tablename__ = "snapshot_recalc_queue"
    __table_args__ = (
        PrimaryKeyConstraint("queue_id", name="pk_snapshot_recalc_queue"),
        CheckConstraint(
            "(item_type IS NULL) = (item_code IS NULL)",
            name="ck_snapshot_recalc_queue_item_scope",
        ),
        CheckConstraint(
            "started_at IS NULL OR started_at >= queued_at",
            name="ck_snapshot_recalc_queue_started_after_queued",
        ),
        CheckConstraint(
            "completed_at IS NULL OR status IN ('COMPLETED', 'FAILED')",
            name="ck_snapshot_recalc_queue_completed_terminal",
        ),
        Index(
            "uq_snapshot_recalc_queue_open_scope",
            "company_code",
            "recalc_date",
            text("COALESCE(item_type, '')"),
            text("COALESCE(item_code, '')"),
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'IN_PROGRESS')"),
        ),
        Index(
            "idx_snapshot_recalc_queue_pending_order",
            desc("priority"),
            "queued_at",
            postgresql_where=text("status = 'PENDING'"),
        ),
    )

    queue_id: Mapped[int] = mapped_column(BigInteger, Identity(always=True))
    company_code: Mapped[int] = mapped_column(Integer, nullable=False)
    recalc_date: Mapped[date] = mapped_column(Date, nullable=False)
    item_type: Mapped[str | None] = mapped_column(Text)
    item_code: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(
        recalc_status_enum,
        nullable=False,
        server_default=text("'PENDING'"),
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    queued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(Text)
