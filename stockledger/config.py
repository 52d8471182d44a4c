"""Environment-backed configuration for the stock ledger engine."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_LOG_LEVELS: frozenset[str] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(frozen=True)
class LedgerConfig:
    """Canonical configuration surface for ingestion, maintenance and the queue worker."""

    business_timezone: str
    same_day_priority: int
    backdated_priority: int
    manual_priority: int
    immediate_backdate_recalc: bool
    ingest_conflict_retries: int
    maintenance_max_workers: int
    worker_poll_seconds: int
    worker_batch_size: int
    worker_failure_backoff_seconds: int
    worker_max_consecutive_failures: int
    log_level: str

    @property
    def zone(self) -> ZoneInfo:
        """Business timezone used to decide what "today" is."""
        return ZoneInfo(self.business_timezone)


def _read_env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None or value.strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value.strip()


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise RuntimeError(f"Invalid boolean value for {name}: {raw}")


def _read_int(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer value for {name}: {raw}") from exc
    if minimum is not None and value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}, got {value}")
    return value


def _read_timezone(name: str, default: str) -> str:
    value = _read_env(name, default)
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise RuntimeError(f"Unknown timezone for {name}: {value}") from exc
    return value


def _read_log_level(name: str, default: str) -> str:
    value = _read_env(name, default).upper()
    if value not in _LOG_LEVELS:
        raise RuntimeError(f"Invalid log level for {name}: {value}")
    return value


def load_ledger_config() -> LedgerConfig:
    """Load and validate stock ledger configuration from environment."""
    return LedgerConfig(
        business_timezone=_read_timezone("LEDGER_BUSINESS_TIMEZONE", "UTC"),
        same_day_priority=_read_int("LEDGER_SAME_DAY_PRIORITY", -1),
        backdated_priority=_read_int("LEDGER_BACKDATED_PRIORITY", 0),
        manual_priority=_read_int("LEDGER_MANUAL_PRIORITY", 5),
        immediate_backdate_recalc=_read_bool("LEDGER_IMMEDIATE_BACKDATE_RECALC", True),
        ingest_conflict_retries=_read_int("LEDGER_INGEST_CONFLICT_RETRIES", 1, minimum=0),
        maintenance_max_workers=_read_int("LEDGER_MAINTENANCE_MAX_WORKERS", 4, minimum=1),
        worker_poll_seconds=_read_int("RECALC_WORKER_POLL_SECONDS", 300, minimum=0),
        worker_batch_size=_read_int("RECALC_WORKER_BATCH_SIZE", 10, minimum=1),
        worker_failure_backoff_seconds=_read_int("RECALC_WORKER_FAILURE_BACKOFF_SECONDS", 60, minimum=0),
        worker_max_consecutive_failures=_read_int("RECALC_WORKER_MAX_CONSECUTIVE_FAILURES", 10, minimum=1),
        log_level=_read_log_level("LEDGER_LOG_LEVEL", "INFO"),
    )


def configure_logging(config: LedgerConfig) -> None:
    """Configure root logging once for CLI entry points."""
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
