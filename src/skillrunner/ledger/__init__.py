"""Tamper-evident hash chains over the audit tables."""

from .chain import (
    BUDGET_TRANSACTION_TABLE,
    STATE_LOG_TABLE,
    ChainSealer,
    Seal,
    compute_entry_hash,
    verify_rows,
    verify_table,
)
from .errors import LedgerError, LedgerVerificationError, LedgerWriteError

__all__ = (
    "BUDGET_TRANSACTION_TABLE",
    "STATE_LOG_TABLE",
    "ChainSealer",
    "Seal",
    "compute_entry_hash",
    "verify_rows",
    "verify_table",
    "LedgerError",
    "LedgerVerificationError",
    "LedgerWriteError",
)
