"""Tournament ledger and settlement backend."""

__version__ = "1.0.0"
