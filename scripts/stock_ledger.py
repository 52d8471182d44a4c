#!/usr/bin/env python3
"""Stock ledger operations CLI: ingestion, queue worker, end-of-day and snapshot reads."""

from __future__ import annotations

import argparse
from dataclasses import asdict
from datetime import date
import json
import logging
import os
from pathlib import Path
import re
import sys
from typing import Any, Mapping, Optional, Sequence

import psycopg
from psycopg.rows import dict_row

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from stockledger.config import configure_logging, load_ledger_config
from stockledger.contracts import TransactionKind
from stockledger.dispatch import InlineDispatcher
from stockledger.kinds import payload_from_mapping
from stockledger.ledger import StockLedger, build_sql_ledger

logger = logging.getLogger("stock_ledger")

_NAMED_PARAM_RE = re.compile(r"(?<!:):([a-zA-Z_][a-zA-Z0-9_]*)")


def _convert_named_params(sql: str) -> str:
    return _NAMED_PARAM_RE.sub(r"%(\1)s", sql)


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid ISO date: {value}") from exc


class PsycopgLedgerDB:
    """Minimal DB adapter for the stock ledger SQL backends."""

    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self.conn = conn

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        converted = _convert_named_params(sql)
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(converted, dict(params))
            if cur.description is None:
                return []
            return [dict(row) for row in cur.fetchall()]

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        converted = _convert_named_params(sql)
        with self.conn.cursor() as cur:
            cur.execute(converted, dict(params))

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()


def _resolve_connection(args: argparse.Namespace, *, autocommit: bool = False) -> psycopg.Connection[Any]:
    if args.dsn:
        return psycopg.connect(args.dsn, autocommit=autocommit)

    host = args.host or os.getenv("DB_HOST")
    port = args.port or os.getenv("DB_PORT")
    dbname = args.dbname or os.getenv("DB_NAME")
    user = args.user or os.getenv("DB_USER")
    password = args.password or os.getenv("DB_PASSWORD")

    missing = [
        key
        for key, value in (("host", host), ("port", port), ("dbname", dbname), ("user", user), ("password", password))
        if not value
    ]
    if missing:
        raise SystemExit(
            "Missing DB connection args. Provide --dsn or set --host/--port/--dbname/--user/--password "
            f"(missing: {', '.join(missing)})."
        )

    return psycopg.connect(host=host, port=port, dbname=dbname, user=user, password=password, autocommit=autocommit)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, sort_keys=True, default=str))


def _run_command(args: argparse.Namespace, ledger: StockLedger) -> int:
    if args.command == "worker":
        ledger.worker.daemon_loop(max_cycles=args.max_cycles)
        return 0

    if args.command == "run-once":
        _print_json(asdict(ledger.worker.run_once()))
        return 0

    if args.command == "enqueue":
        entry = ledger.enqueue_recalculation(
            args.company_code,
            args.date,
            reason=args.reason,
            priority=args.priority,
            item_type=args.item_type,
            item_code=args.item_code,
        )
        _print_json(asdict(entry))
        return 0

    if args.command == "queue-status":
        _print_json(ledger.queue_counts())
        return 0

    if args.command == "snapshots":
        rows = ledger.snapshots_between(args.company_code, args.start, args.end)
        _print_json([asdict(row) for row in rows])
        return 0

    if args.command == "eod":
        results = [
            ledger.run_end_of_day(company_code, args.date, triggered_by=args.triggered_by)
            for company_code in args.company_code
        ]
        _print_json([asdict(result) for result in results])
        return 0 if all(result.ok for result in results) else 1

    if args.command == "ingest":
        document = json.loads(Path(args.file).read_text(encoding="utf-8"))
        documents = document if isinstance(document, list) else [document]
        results = [ledger.ingest(payload_from_mapping(args.kind, item)) for item in documents]
        _print_json([asdict(result) for result in results])
        return 0

    raise SystemExit(f"Unknown command: {args.command}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Warehouse stock ledger CLI")
    parser.add_argument("--dsn", help="PostgreSQL DSN (optional)")
    parser.add_argument("--host", help="DB host")
    parser.add_argument("--port", help="DB port")
    parser.add_argument("--dbname", help="DB name")
    parser.add_argument("--user", help="DB user")
    parser.add_argument("--password", help="DB password")

    subparsers = parser.add_subparsers(dest="command", required=True)

    worker_cmd = subparsers.add_parser("worker", help="Start the recalculation queue worker loop")
    worker_cmd.add_argument("--max-cycles", type=int, default=None)

    subparsers.add_parser("run-once", help="Process one batch of pending recalculations")

    enqueue = subparsers.add_parser("enqueue", help="Queue a snapshot recalculation")
    enqueue.add_argument("--company-code", type=int, required=True)
    enqueue.add_argument("--date", type=_parse_date, required=True)
    enqueue.add_argument("--item-type", default=None)
    enqueue.add_argument("--item-code", default=None)
    enqueue.add_argument("--reason", default="manual")
    enqueue.add_argument("--priority", type=int, default=None)

    subparsers.add_parser("queue-status", help="Show queue entry counts by status")

    snapshots = subparsers.add_parser("snapshots", help="List snapshot rows in a date range")
    snapshots.add_argument("--company-code", type=int, required=True)
    snapshots.add_argument("--start", type=_parse_date, required=True)
    snapshots.add_argument("--end", type=_parse_date, required=True)

    eod = subparsers.add_parser("eod", help="Write end-of-day snapshots for every known item")
    eod.add_argument("--company-code", type=int, action="append", required=True)
    eod.add_argument("--date", type=_parse_date, default=None, help="Business date (default: business today)")
    eod.add_argument("--triggered-by", default="cli")

    ingest = subparsers.add_parser("ingest", help="Ingest WMS transactions from a JSON file")
    ingest.add_argument("--kind", choices=[kind.value for kind in TransactionKind], required=True)
    ingest.add_argument("--file", required=True)

    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    cfg = load_ledger_config()
    configure_logging(cfg)

    if args.command == "enqueue" and (args.item_type is None) != (args.item_code is None):
        parser.error("--item-type and --item-code must be given together")

    conn = _resolve_connection(args)
    background_conn = _resolve_connection(args, autocommit=True)
    ledger = build_sql_ledger(
        PsycopgLedgerDB(conn),
        maintenance_db=PsycopgLedgerDB(background_conn),
        config=cfg,
        dispatcher=InlineDispatcher(),
    )
    try:
        status = _run_command(args, ledger)
        conn.commit()
        return status
    except Exception:
        conn.rollback()
        logger.exception("Command %s failed.", args.command)
        raise
    finally:
        ledger.close()
        background_conn.close()
        conn.close()


if __name__ == "__main__":
    raise SystemExit(main())
