"""Three-way diff between stored line items and an incoming payload."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from stockledger.contracts import LineItem, SnapshotItem, StoredLineItem
from stockledger.kinds import KindSpec


@dataclass(frozen=True)
class ItemDiff:
    """Explicit insert/update/tombstone sets for one same-date re-ingestion."""

    to_insert: tuple[LineItem, ...]
    to_update: tuple[tuple[StoredLineItem, LineItem], ...]
    to_tombstone: tuple[StoredLineItem, ...]

    def affected_items(self) -> tuple[SnapshotItem, ...]:
        """Items whose balances can move because of this diff."""
        lines = [line.as_snapshot_item() for line in self.to_insert]
        lines.extend(line.as_snapshot_item() for _, line in self.to_update)
        lines.extend(stored.as_snapshot_item() for stored in self.to_tombstone)
        return unique_items(lines)


def unique_items(items: Sequence[SnapshotItem]) -> tuple[SnapshotItem, ...]:
    """Deduplicate by (item_type, item_code), keeping first occurrence order."""
    seen: dict[tuple[str, str], SnapshotItem] = {}
    for item in items:
        seen.setdefault(item.key, item)
    return tuple(seen.values())


def _index_existing(existing: Sequence[StoredLineItem]) -> dict[tuple[str, str, str], StoredLineItem]:
    # One row per natural key: the live row wins, otherwise the most recent tombstone.
    indexed: dict[tuple[str, str, str], StoredLineItem] = {}
    for stored in sorted(existing, key=lambda row: row.item_id):
        current = indexed.get(stored.natural_key)
        if current is None or stored.is_live or not current.is_live:
            indexed[stored.natural_key] = stored
    return indexed


def diff_line_items(spec: KindSpec, existing: Sequence[StoredLineItem], incoming: Sequence[LineItem]) -> ItemDiff:
    """Match payload lines to stored lines of the same header by natural key.

    Stored lines absent from the payload are tombstoned, matching lines are
    updated in place (reviving a tombstoned row when needed) and unmatched
    payload lines are inserted.
    """
    indexed = _index_existing(existing)
    incoming_keys: set[tuple[str, str, str]] = set()

    to_insert: list[LineItem] = []
    to_update: list[tuple[StoredLineItem, LineItem]] = []
    for line in incoming:
        key = spec.natural_key(line)
        incoming_keys.add(key)
        stored = indexed.get(key)
        if stored is None:
            to_insert.append(line)
        else:
            to_update.append((stored, line))

    to_tombstone = tuple(
        stored
        for key, stored in sorted(indexed.items())
        if stored.is_live and key not in incoming_keys
    )
    return ItemDiff(
        to_insert=tuple(to_insert),
        to_update=tuple(to_update),
        to_tombstone=to_tombstone,
    )
