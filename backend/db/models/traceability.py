"""Work-order traceability link model definitions."""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
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


class WorkOrderProductionLink(Base):
    """Production output quantity attributed to a work order."""

    __tablename__ = "work_order_fg_production"
    __table_args__ = (
        PrimaryKeyConstraint("link_id", name="pk_work_order_fg_production"),
        UniqueConstraint(
            "company_code",
            "source_external_id",
            "work_order_number",
            "item_code",
            name="uq_work_order_fg_production_link",
        ),
        Index("idx_work_order_fg_production_work_order", "company_code", "work_order_number"),
    )

    link_id: Mapped[int] = mapped_column(BigInteger, Identity(always=True))
    company_code: Mapped[int] = mapped_column(Integer, nullable=False)
    source_external_id: Mapped[str] = mapped_column(Text, nullable=False)
    work_order_number: Mapped[str] = mapped_column(Text, nullable=False)
    item_type: Mapped[str] = mapped_column(Text, nullable=False)
    item_code: Mapped[str] = mapped_column(Text, nullable=False)
    qty: Mapped[Decimal] = mapped_column(Numeric(15, 3), nullable=False)
    business_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )


class WorkOrderMaterialLink(Base):
    """Material quantity consumed by a work order, tagged with its PPKEK lot."""

    __tablename__ = "work_order_material_consumption"
    __table_args__ = (
        PrimaryKeyConstraint("link_id", name="pk_work_order_material_consumption"),
        UniqueConstraint(
            "company_code",
            "source_external_id",
            "work_order_number",
            "item_code",
            name="uq_work_order_material_consumption_link",
        ),
        Index("idx_work_order_material_consumption_work_order", "company_code", "work_order_number"),
    )

    link_id: Mapped[int] = mapped_column(BigInteger, Identity(always=True))
    company_code: Mapped[int] = mapped_column(Integer, nullable=False)
    source_external_id: Mapped[str] = mapped_column(Text, nullable=False)
    work_order_number: Mapped[str] = mapped_column(Text, nullable=False)
    item_type: Mapped[str] = mapped_column(Text, nullable=False)
    item_code: Mapped[str] = mapped_column(Text, nullable=False)
    ppkek_number: Mapped[str | None] = mapped_column(Text)
    qty: Mapped[Decimal] = mapped_column(Numeric(15, 3), nullable=False)
    business_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
