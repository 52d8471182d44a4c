"""Caller-visible failures raised by the stock ledger engine."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for stock ledger errors."""


class RejectionError(LedgerError):
    """Payload refused before any write; nothing was committed."""


class ConflictError(LedgerError):
    """Concurrent write on the same natural key; safe to retry."""
