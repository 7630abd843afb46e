from __future__ import annotations

from typing import TypedDict


class PersonalFinanceCategory(TypedDict):
    """Personal finance category information from Plaid."""

    confidence_level: str  # e.g., "HIGH", "VERY_HIGH"
    detailed: str  # e.g., "FOOD_AND_DRINK_GROCERIES"
    primary: str  # e.g., "FOOD_AND_DRINK"


class Transaction(TypedDict):
    """
    Transaction as delivered by Plaid's /transactions/sync endpoint.

    Note: amounts are signed the way Plaid signs them: positive values are
    money leaving the account, negative values are money coming in.
    """

    transaction_id: str
    account_id: str
    amount: float
    iso_currency_code: str | None
    date: str  # ISO date, e.g. "2025-01-31"
    name: str
    merchant_name: str | None
    pending: bool
    personal_finance_category: PersonalFinanceCategory | None


class RemovedTransaction(TypedDict):
    transaction_id: str


class SyncPage(TypedDict):
    """One page of incremental changes from the remote ledger."""

    added: list[Transaction]
    modified: list[Transaction]
    removed: list[RemovedTransaction]
    next_cursor: str
    has_more: bool
