"""Merchant rule patterns.

A pattern is an upper-cased literal with optional ``%`` wildcards at either
end. Its form is read from the ends alone:

- ``%X%``  contains ``X``
- ``X%``   starts with ``X``
- ``%X``   ends with ``X``
- ``X``    equals ``X``

Matching is plain string comparison. User-supplied patterns are never compiled
to regular expressions.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
import re
from typing import Literal, Protocol, TypeVar

PatternKind = Literal["contains", "prefix", "suffix", "exact"]

WILDCARD = "%"

_STORE_NUMBER_RE = re.compile(r"\s*#\d+.*$")


class RankedRule(Protocol):
    @property
    def pattern(self) -> str: ...

    @property
    def match_count(self) -> int: ...


R = TypeVar("R", bound=RankedRule)


@dataclass(frozen=True)
class MerchantPattern:
    kind: PatternKind
    literal: str

    @classmethod
    def parse(cls, pattern: str) -> MerchantPattern:
        text = normalize_pattern(pattern)
        starts = text.startswith(WILDCARD)
        ends = text.endswith(WILDCARD)
        if starts and ends and len(text) >= 2:
            return cls("contains", text[1:-1])
        if ends:
            return cls("prefix", text[:-1])
        if starts:
            return cls("suffix", text[1:])
        return cls("exact", text)

    def matches(self, merchant_text: str) -> bool:
        if not self.literal:
            return False
        if self.kind == "contains":
            return self.literal in merchant_text
        if self.kind == "prefix":
            return merchant_text.startswith(self.literal)
        if self.kind == "suffix":
            return merchant_text.endswith(self.literal)
        return merchant_text == self.literal


def normalize_pattern(pattern: str) -> str:
    return pattern.strip().upper()


def normalize_merchant_text(text: str | None) -> str:
    # Case-folded only; surrounding whitespace is part of the merchant text.
    return (text or "").upper()


def rank_rules(rules: Iterable[R]) -> list[R]:
    """Order rules by descending match_count, keeping input order for ties."""
    return sorted(rules, key=lambda rule: -rule.match_count)


def match_rule(merchant_text: str, ranked_rules: Sequence[R]) -> R | None:
    """Return the first rule, in ranked order, whose pattern matches.

    First hit wins; later rules are not scored against earlier ones.
    """
    text = normalize_merchant_text(merchant_text)
    if not text:
        return None
    for rule in ranked_rules:
        if MerchantPattern.parse(rule.pattern).matches(text):
            return rule
    return None


def rule_pattern_for_merchant(merchant_name: str) -> str:
    """Derive the pattern promoted when a user recategorizes a merchant.

    Store numbers are generalized: "WALMART #1234 AUSTIN" -> "WALMART%".
    Merchants without a store number become exact patterns.
    """
    text = normalize_pattern(merchant_name or "")
    if not text:
        return ""
    generalized = _STORE_NUMBER_RE.sub(WILDCARD, text)
    if generalized == WILDCARD:
        return ""
    return generalized
