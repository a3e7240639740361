from __future__ import annotations


class LedgerError(RuntimeError):
    """Base class for audit chain errors."""


class LedgerWriteError(LedgerError):
    """Raised when a row cannot be sealed into its chain."""


class LedgerVerificationError(LedgerError):
    """Raised when chain verification fails."""
