from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from ledgersync.adapters.db.models import CategoryMapping, MerchantRuleRow
from ledgersync.classify.rules import match_rule, rank_rules
from ledgersync.models.transaction import Transaction

ClassificationMethod = Literal["rule", "taxonomy"]


@dataclass(frozen=True)
class Classification:
    """Outcome of classifying one transaction.

    category_id is None when neither a rule nor the taxonomy resolved it;
    such transactions stay unreviewed for a human to triage.
    """

    category_id: int | None = None
    method: ClassificationMethod | None = None
    rule_id: int | None = None

    @property
    def resolved(self) -> bool:
        return self.category_id is not None


UNRESOLVED = Classification()


def merchant_text(txn: Transaction) -> str:
    return (txn.get("merchant_name") or txn.get("name") or "").upper()


def provider_category_code(txn: Transaction) -> str | None:
    pfc = txn.get("personal_finance_category")
    if not pfc:
        return None
    return pfc.get("primary") or None


def taxonomy_fallback(
    provider_code: str | None,
    mappings: Sequence[CategoryMapping],
) -> int | None:
    """Map a provider's coarse category code to a local category id."""
    if not provider_code:
        return None
    for mapping in mappings:
        if provider_code in mapping.provider_codes:
            return mapping.category_id
    return None


def classify_with_source(
    txn: Transaction,
    rules: Sequence[MerchantRuleRow],
    mappings: Sequence[CategoryMapping],
) -> Classification:
    """Classify a transaction and report which mechanism decided it.

    Args:
        txn: Provider transaction
        rules: Merchant rules in any order; ranked by usage here
        mappings: Static provider-code mappings

    Returns:
        Classification; never raises for unmatched input
    """
    rule = match_rule(merchant_text(txn), rank_rules(rules))
    if rule is not None:
        return Classification(
            category_id=rule.category_id, method="rule", rule_id=rule.rule_id
        )

    category_id = taxonomy_fallback(provider_category_code(txn), mappings)
    if category_id is not None:
        return Classification(category_id=category_id, method="taxonomy")

    return UNRESOLVED


def classify(
    txn: Transaction,
    rules: Sequence[MerchantRuleRow],
    mappings: Sequence[CategoryMapping],
) -> int | None:
    """Return the category id for a transaction, or None if unresolved."""
    return classify_with_source(txn, rules, mappings).category_id
