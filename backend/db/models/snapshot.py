"""Daily stock snapshot and beginning balance model definitions."""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    Identity,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base

logger = logging.getLogger(__name__)


class StockDailySnapshot(Base):
    """Materialized per-item, per-day opening/closing balance."""

    __tablename__ = "stock_daily_snapshot"
    __table_args__ = (
        PrimaryKeyConstraint("snapshot_id", name="pk_stock_daily_snapshot"),
        UniqueConstraint(
            "company_code",
            "item_type",
            "item_code",
            "snapshot_date",
            name="uq_stock_daily_snapshot_item_date",
        ),
        CheckConstraint(
            "closing_balance = opening_balance + incoming_qty - outgoing_qty"
            " - usage_qty + production_qty + adjustment_qty",
            name="ck_stock_daily_snapshot_balance_identity",
        ),
        Index("idx_stock_daily_snapshot_company_date", "company_code", "snapshot_date"),
    )

    snapshot_id: Mapped[int] = mapped_column(BigInteger, Identity(always=True))
    company_code: Mapped[int] = mapped_column(Integer, nullable=False)
    item_type: Mapped[str] = mapped_column(Text, nullable=False)
    item_code: Mapped[str] = mapped_column(Text, nullable=False)
    item_name: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    uom: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    opening_balance: Mapped[Decimal] = mapped_column(Numeric(15, 3), nullable=False)
    incoming_qty: Mapped[Decimal] = mapped_column(Numeric(15, 3), nullable=False, server_default=text("0"))
    outgoing_qty: Mapped[Decimal] = mapped_column(Numeric(15, 3), nullable=False, server_default=text("0"))
    usage_qty: Mapped[Decimal] = mapped_column(Numeric(15, 3), nullable=False, server_default=text("0"))
    production_qty: Mapped[Decimal] = mapped_column(Numeric(15, 3), nullable=False, server_default=text("0"))
    adjustment_qty: Mapped[Decimal] = mapped_column(Numeric(15, 3), nullable=False, server_default=text("0"))
    closing_balance: Mapped[Decimal] = mapped_column(Numeric(15, 3), nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )


class BeginningBalance(Base):
    """Operator-entered opening quantity for an item on a given date."""

    __tablename__ = "beginning_balances"
    __table_args__ = (
        PrimaryKeyConstraint("balance_id", name="pk_beginning_balances"),
        UniqueConstraint(
            "company_code",
            "item_type",
            "item_code",
            "balance_date",
            name="uq_beginning_balances_item_date",
        ),
    )

    balance_id: Mapped[int] = mapped_column(BigInteger, Identity(always=True))
    company_code: Mapped[int] = mapped_column(Integer, nullable=False)
    item_type: Mapped[str] = mapped_column(Text, nullable=False)
    item_code: Mapped[str] = mapped_column(Text, nullable=False)
    item_name: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    uom: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    balance_date: Mapped[date] = mapped_column(Date, nullable=False)
    qty: Mapped[Decimal] = mapped_column(Numeric(15, 3), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
