from __future__ import annotations


class LedgerError(Exception):
    """Domain error that aborts the current unit of work."""


class InsufficientStockError(LedgerError):
    pass


class BalanceRejectedError(LedgerError):
    pass
