"""Per-kind table layout, line discriminators and movement signs."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping

from stockledger.common import parse_utc, to_date, to_qty
from stockledger.contracts import AdjustmentType, LineItem, TransactionKind, TransactionPayload
from stockledger.errors import RejectionError

_CUSTOMS_HEADER_FIELDS: tuple[str, ...] = (
    "owner",
    "customs_document_type",
    "ppkek_number",
    "customs_registration_date",
    "evidence_number",
    "invoice_number",
    "invoice_date",
    "counterparty_name",
)
_PRICED_ITEM_FIELDS: tuple[str, ...] = ("hs_code", "currency", "amount")

MOVEMENT_COLUMNS: tuple[str, ...] = (
    "incoming_qty",
    "outgoing_qty",
    "usage_qty",
    "production_qty",
    "adjustment_qty",
)


@dataclass(frozen=True)
class KindSpec:
    """Storage and balance semantics of one transaction kind."""

    kind: TransactionKind
    header_table: str
    item_table: str
    header_fields: tuple[str, ...]
    item_fields: tuple[str, ...]
    discriminator: str | None
    movement_column: str

    def line_tag(self, attributes: Mapping[str, Any]) -> str:
        """Line discriminator value stored alongside (item_type, item_code)."""
        if self.discriminator is None:
            return ""
        value = attributes.get(self.discriminator)
        return "" if value is None else str(value)

    def natural_key(self, line: LineItem) -> tuple[str, str, str]:
        return (line.item_type, line.item_code, self.line_tag(line.attributes))

    def signed_qty(self, qty: Decimal, attributes: Mapping[str, Any], reversal: bool) -> Decimal:
        """Contribution of one line to this kind's movement column."""
        signed = qty
        if self.kind == TransactionKind.ADJUSTMENT and str(attributes.get("adjustment_type")) == AdjustmentType.LOSS.value:
            signed = -signed
        return -signed if reversal else signed


KIND_SPECS: dict[TransactionKind, KindSpec] = {
    TransactionKind.INCOMING: KindSpec(
        kind=TransactionKind.INCOMING,
        header_table="incoming_goods",
        item_table="incoming_good_items",
        header_fields=_CUSTOMS_HEADER_FIELDS,
        item_fields=_PRICED_ITEM_FIELDS,
        discriminator=None,
        movement_column="incoming_qty",
    ),
    TransactionKind.OUTGOING: KindSpec(
        kind=TransactionKind.OUTGOING,
        header_table="outgoing_goods",
        item_table="outgoing_good_items",
        header_fields=_CUSTOMS_HEADER_FIELDS,
        item_fields=_PRICED_ITEM_FIELDS,
        discriminator=None,
        movement_column="outgoing_qty",
    ),
    TransactionKind.MATERIAL_USAGE: KindSpec(
        kind=TransactionKind.MATERIAL_USAGE,
        header_table="material_usages",
        item_table="material_usage_items",
        header_fields=("work_order_number", "cost_center_number", "internal_evidence_number"),
        item_fields=("ppkek_number",),
        discriminator="ppkek_number",
        movement_column="usage_qty",
    ),
    TransactionKind.PRODUCTION_OUTPUT: KindSpec(
        kind=TransactionKind.PRODUCTION_OUTPUT,
        header_table="production_outputs",
        item_table="production_output_items",
        header_fields=("internal_evidence_number",),
        item_fields=("work_order_numbers",),
        discriminator=None,
        movement_column="production_qty",
    ),
    TransactionKind.ADJUSTMENT: KindSpec(
        kind=TransactionKind.ADJUSTMENT,
        header_table="adjustments",
        item_table="adjustment_items",
        header_fields=("wms_doc_type", "internal_evidence_number"),
        item_fields=("adjustment_type", "reason"),
        discriminator="adjustment_type",
        movement_column="adjustment_qty",
    ),
}

_DATE_FIELDS: frozenset[str] = frozenset({"customs_registration_date", "invoice_date"})


def kind_spec(kind: TransactionKind | str) -> KindSpec:
    """Resolve the spec for a kind given as enum or value."""
    try:
        return KIND_SPECS[TransactionKind(kind)]
    except ValueError as exc:
        raise RejectionError(f"Unknown transaction kind: {kind}") from exc


def validate_payload(payload: TransactionPayload) -> KindSpec:
    """Reject payloads that must never reach the transactional write."""
    spec = kind_spec(payload.kind)
    if not payload.external_id or not payload.external_id.strip():
        raise RejectionError("external_id must not be empty")
    if not payload.items:
        raise RejectionError(f"{payload.external_id}: transaction has no line items")

    seen: set[tuple[str, str, str]] = set()
    for line in payload.items:
        if not line.item_type or not line.item_code:
            raise RejectionError(f"{payload.external_id}: line item_type and item_code are required")
        if line.qty < 0:
            raise RejectionError(f"{payload.external_id}: negative qty for item {line.item_code}")
        if spec.kind == TransactionKind.ADJUSTMENT:
            adjustment_type = line.attributes.get("adjustment_type")
            if adjustment_type not in {member.value for member in AdjustmentType}:
                raise RejectionError(
                    f"{payload.external_id}: invalid adjustment_type {adjustment_type!r} for item {line.item_code}"
                )
        key = spec.natural_key(line)
        if key in seen:
            raise RejectionError(f"{payload.external_id}: duplicate line item key {key}")
        seen.add(key)
    return spec


def _header_value(name: str, value: Any) -> Any:
    if value is None or value == "":
        return None
    if name in _DATE_FIELDS:
        return to_date(value)
    return value


def _item_attributes(spec: KindSpec, raw: Mapping[str, Any]) -> dict[str, Any]:
    attributes: dict[str, Any] = {}
    for name in spec.item_fields:
        value = raw.get(name)
        if name == "amount" and value is not None:
            value = Decimal(str(value))
        elif name == "work_order_numbers":
            value = [str(number) for number in (value or [])]
        elif name == "adjustment_type" and value is not None:
            value = str(value).upper()
        attributes[name] = value
    return attributes


def payload_from_mapping(kind: TransactionKind | str, data: Mapping[str, Any]) -> TransactionPayload:
    """Build a payload from a decoded JSON document."""
    spec = kind_spec(kind)
    try:
        items = tuple(
            LineItem(
                item_type=str(raw["item_type"]),
                item_code=str(raw["item_code"]),
                item_name=str(raw.get("item_name") or ""),
                uom=str(raw.get("uom") or ""),
                qty=to_qty(raw["qty"]),
                attributes=_item_attributes(spec, raw),
            )
            for raw in data.get("items", ())
        )
        return TransactionPayload(
            kind=spec.kind,
            company_code=int(data["company_code"]),
            external_id=str(data.get("external_id") or "").strip(),
            business_date=to_date(data["business_date"]),
            items=items,
            reversal=bool(data.get("reversal", False)),
            received_at=parse_utc(data.get("received_at")),
            header_fields={name: _header_value(name, data.get(name)) for name in spec.header_fields},
        )
    except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
        raise RejectionError(f"Malformed {spec.kind.value} payload: {exc}") from exc
