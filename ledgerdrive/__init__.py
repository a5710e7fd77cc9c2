"""Ledger-backed folder and file object store."""

__version__ = "0.1.0"
