"""Incremental Plaid ledger sync and transaction classification."""

__version__ = "0.1.0"
