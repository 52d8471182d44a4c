"""Pytest fixtures shared across unit and integration tests."""

from __future__ import annotations

import os
from typing import Any

import psycopg
import pytest

from tests.utils.ledger_db import PsycopgLedgerTestDB


def _connect(*, autocommit: bool) -> Any:
    host = os.getenv("TEST_DB_HOST")
    port = os.getenv("TEST_DB_PORT")
    dbname = os.getenv("TEST_DB_NAME")
    user = os.getenv("TEST_DB_USER")
    password = os.getenv("TEST_DB_PASSWORD")

    if not all([host, port, dbname, user, password]):
        pytest.skip("Integration DB env vars are missing; set TEST_DB_* to run against PostgreSQL")

    return psycopg.connect(
        host=host,
        port=port,
        dbname=dbname,
        user=user,
        password=password,
        autocommit=autocommit,
    )


@pytest.fixture(scope="session")
def pg_conn() -> Any:
    """Session-scoped psycopg connection for integration tests."""
    conn = _connect(autocommit=False)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture(scope="session")
def pg_maintenance_conn() -> Any:
    """Autocommit connection for snapshot, queue and link writes."""
    conn = _connect(autocommit=True)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def ledger_db(pg_conn: Any) -> PsycopgLedgerTestDB:
    """Ledger DB adapter fixture."""
    return PsycopgLedgerTestDB(pg_conn)
