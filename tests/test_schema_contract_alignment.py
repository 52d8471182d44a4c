"""Schema contract alignment checks for ORM metadata surfaces."""

from __future__ import annotations

import re

import pytest

import backend.db.models  # noqa: F401  # Ensure all mapped classes are registered.
from backend.db.base import Base
from tests.utils.migration import OpStub, load_migration_module

_TABLE_RE = re.compile(r"CREATE TABLE (\w+) \((.*)\);", re.S)
_COLUMN_RE = re.compile(
    r"^\s*([a-z_]+) (?:BIGINT|INTEGER|TEXT|DATE|BOOLEAN|NUMERIC|TIMESTAMPTZ|\w+_enum)\b"
)


def _migration_columns(monkeypatch: pytest.MonkeyPatch) -> dict[str, set[str]]:
    module = load_migration_module("migration_0001_alignment", OpStub(), monkeypatch)

    tables: dict[str, set[str]] = {}
    for statement in module.TABLE_DDL:
        match = _TABLE_RE.search(statement)
        assert match is not None, statement
        table_name, body = match.groups()
        tables[table_name] = {
            column.group(1)
            for column in (_COLUMN_RE.match(line) for line in body.splitlines())
            if column is not None
        }
    return tables


def test_orm_tables_and_columns_match_migration_contract(monkeypatch: pytest.MonkeyPatch) -> None:
    """ORM models must cover all migration tables/columns exactly."""

    ddl = _migration_columns(monkeypatch)
    mapped_tables = Base.metadata.tables

    missing_table_models = sorted(set(ddl) - set(mapped_tables))
    unexpected_mapped_tables = sorted(set(mapped_tables) - set(ddl))

    assert missing_table_models == [], f"Missing ORM models for migration tables: {missing_table_models}"
    assert unexpected_mapped_tables == [], f"Mapped ORM tables not present in migration: {unexpected_mapped_tables}"

    column_mismatches: dict[str, dict[str, list[str]]] = {}
    for table_name in sorted(mapped_tables):
        ddl_columns = ddl[table_name]
        orm_columns = {column.name for column in mapped_tables[table_name].columns}

        missing_columns = sorted(ddl_columns - orm_columns)
        extra_columns = sorted(orm_columns - ddl_columns)
        if missing_columns or extra_columns:
            column_mismatches[table_name] = {
                "missing_columns": missing_columns,
                "extra_columns": extra_columns,
            }

    assert column_mismatches == {}, f"Migration/ORM column mismatches detected: {column_mismatches}"


def test_kind_table_layout_matches_orm() -> None:
    from stockledger.kinds import KIND_SPECS

    mapped_tables = Base.metadata.tables
    for spec in KIND_SPECS.values():
        header_columns = {column.name for column in mapped_tables[spec.header_table].columns}
        item_columns = {column.name for column in mapped_tables[spec.item_table].columns}
        assert set(spec.header_fields) <= header_columns, spec.kind
        assert set(spec.item_fields) <= item_columns, spec.kind
