"""Ledger module: wallet balances and the transaction log."""
from . import log, wallets

__all__ = ["log", "wallets"]
