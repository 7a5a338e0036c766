"""Points ledger and milestone reward engine."""

__version__ = "0.1.0"
