"""WMS transaction header and line-item model definitions for all five kinds."""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    Integer,
    Numeric,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import adjustment_type_enum, record_state_enum

logger = logging.getLogger(__name__)


class _HeaderColumns:
    """Columns shared by every transaction header table."""

    header_id: Mapped[int] = mapped_column(
        BigInteger,
        Identity(always=True),
        primary_key=True,
    )
    company_code: Mapped[int] = mapped_column(Integer, nullable=False)
    external_id: Mapped[str] = mapped_column(Text, nullable=False)
    business_date: Mapped[date] = mapped_column(Date, nullable=False)
    reversal: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("FALSE"),
    )
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    header_state: Mapped[str] = mapped_column(
        record_state_enum,
        nullable=False,
        server_default=text("'LIVE'"),
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
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class _CustomsHeaderColumns(_HeaderColumns):
    """Customs document columns carried by incoming and outgoing goods."""

    owner: Mapped[str | None] = mapped_column(Text)
    customs_document_type: Mapped[str | None] = mapped_column(Text)
    ppkek_number: Mapped[str | None] = mapped_column(Text)
    customs_registration_date: Mapped[date | None] = mapped_column(Date)
    evidence_number: Mapped[str | None] = mapped_column(Text)
    invoice_number: Mapped[str | None] = mapped_column(Text)
    invoice_date: Mapped[date | None] = mapped_column(Date)
    counterparty_name: Mapped[str | None] = mapped_column(Text)


class _ItemColumns:
    """Columns shared by every transaction line-item table."""

    item_id: Mapped[int] = mapped_column(
        BigInteger,
        Identity(always=True),
        primary_key=True,
    )
    company_code: Mapped[int] = mapped_column(Integer, nullable=False)
    business_date: Mapped[date] = mapped_column(Date, nullable=False)
    item_type: Mapped[str] = mapped_column(Text, nullable=False)
    item_code: Mapped[str] = mapped_column(Text, nullable=False)
    line_tag: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        server_default=text("''"),
    )
    item_name: Mapped[str] = mapped_column(Text, nullable=False)
    uom: Mapped[str] = mapped_column(Text, nullable=False)
    qty: Mapped[Decimal] = mapped_column(Numeric(15, 3), nullable=False)
    line_state: Mapped[str] = mapped_column(
        record_state_enum,
        nullable=False,
        server_default=text("'LIVE'"),
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
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class _PricedItemColumns(_ItemColumns):
    """Valuation columns carried by incoming and outgoing goods lines."""

    hs_code: Mapped[str | None] = mapped_column(Text)
    currency: Mapped[str | None] = mapped_column(Text)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(19, 4))


def _header_args(table: str) -> tuple:
    return (
        CheckConstraint(
            "length(btrim(external_id)) > 0",
            name=f"ck_{table}_external_id_not_blank",
        ),
        CheckConstraint(
            "(header_state = 'LIVE' AND deleted_at IS NULL) OR "
            "(header_state = 'TOMBSTONED' AND deleted_at IS NOT NULL)",
            name=f"ck_{table}_state_deleted_at",
        ),
        Index(
            f"uq_{table}_live_external_id",
            "company_code",
            "external_id",
            unique=True,
            postgresql_where=text("header_state = 'LIVE'"),
        ),
        Index(f"idx_{table}_company_date", "company_code", "business_date"),
    )


def _item_args(table: str) -> tuple:
    return (
        CheckConstraint("qty >= 0", name=f"ck_{table}_qty_nonneg"),
        CheckConstraint(
            "(line_state = 'LIVE' AND deleted_at IS NULL) OR "
            "(line_state = 'TOMBSTONED' AND deleted_at IS NOT NULL)",
            name=f"ck_{table}_state_deleted_at",
        ),
        Index(
            f"uq_{table}_live_natural_key",
            "header_id",
            "item_type",
            "item_code",
            "line_tag",
            unique=True,
            postgresql_where=text("line_state = 'LIVE'"),
        ),
        Index(
            f"idx_{table}_company_item_date",
            "company_code",
            "item_type",
            "item_code",
            "business_date",
        ),
    )


class IncomingGood(_CustomsHeaderColumns, Base):
    """Incoming goods header (receipt into the bonded warehouse)."""

    __tablename__ = "incoming_goods"
    __table_args__ = _header_args("incoming_goods")


class IncomingGoodItem(_PricedItemColumns, Base):
    """Incoming goods line item."""

    __tablename__ = "incoming_good_items"
    __table_args__ = _item_args("incoming_good_items")

    header_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "incoming_goods.header_id",
            name="fk_incoming_good_items_header",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )


class OutgoingGood(_CustomsHeaderColumns, Base):
    """Outgoing goods header (release from the bonded warehouse)."""

    __tablename__ = "outgoing_goods"
    __table_args__ = _header_args("outgoing_goods")


class OutgoingGoodItem(_PricedItemColumns, Base):
    """Outgoing goods line item."""

    __tablename__ = "outgoing_good_items"
    __table_args__ = _item_args("outgoing_good_items")

    header_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "outgoing_goods.header_id",
            name="fk_outgoing_good_items_header",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )


class MaterialUsage(_HeaderColumns, Base):
    """Material usage header, optionally bound to a work order or cost center."""

    __tablename__ = "material_usages"
    __table_args__ = _header_args("material_usages")

    work_order_number: Mapped[str | None] = mapped_column(Text)
    cost_center_number: Mapped[str | None] = mapped_column(Text)
    internal_evidence_number: Mapped[str | None] = mapped_column(Text)


class MaterialUsageItem(_ItemColumns, Base):
    """Material usage line item; one line per item and PPKEK lot."""

    __tablename__ = "material_usage_items"
    __table_args__ = _item_args("material_usage_items")

    header_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "material_usages.header_id",
            name="fk_material_usage_items_header",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    ppkek_number: Mapped[str | None] = mapped_column(Text)


class ProductionOutput(_HeaderColumns, Base):
    """Production output header."""

    __tablename__ = "production_outputs"
    __table_args__ = _header_args("production_outputs")

    internal_evidence_number: Mapped[str | None] = mapped_column(Text)


class ProductionOutputItem(_ItemColumns, Base):
    """Production output line item with its source work orders."""

    __tablename__ = "production_output_items"
    __table_args__ = _item_args("production_output_items")

    header_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "production_outputs.header_id",
            name="fk_production_output_items_header",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    work_order_numbers: Mapped[list[str]] = mapped_column(
        ARRAY(Text),
        nullable=False,
        server_default=text("'{}'"),
    )


class Adjustment(_HeaderColumns, Base):
    """Inventory adjustment header."""

    __tablename__ = "adjustments"
    __table_args__ = _header_args("adjustments")

    wms_doc_type: Mapped[str | None] = mapped_column(Text)
    internal_evidence_number: Mapped[str | None] = mapped_column(Text)


class AdjustmentItem(_ItemColumns, Base):
    """Inventory adjustment line item (GAIN or LOSS)."""

    __tablename__ = "adjustment_items"
    __table_args__ = _item_args("adjustment_items")

    header_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "adjustments.header_id",
            name="fk_adjustment_items_header",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    adjustment_type: Mapped[str] = mapped_column(adjustment_type_enum, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
