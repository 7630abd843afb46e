"""Rule-based transaction classification."""

from __future__ import annotations

from ledgersync.classify.classifier import (
    Classification,
    classify,
    classify_with_source,
    taxonomy_fallback,
)
from ledgersync.classify.rules import (
    MerchantPattern,
    match_rule,
    rank_rules,
    rule_pattern_for_merchant,
)

__all__ = [
    "Classification",
    "MerchantPattern",
    "classify",
    "classify_with_source",
    "match_rule",
    "rank_rules",
    "rule_pattern_for_merchant",
    "taxonomy_fallback",
]
