from __future__ import annotations

from dataclasses import dataclass

import pytest

from ledgersync.classify.rules import (
    MerchantPattern,
    match_rule,
    normalize_pattern,
    rank_rules,
    rule_pattern_for_merchant,
)


@dataclass(frozen=True)
class FakeRule:
    rule_id: int
    pattern: str
    match_count: int = 0


# ---------------------------------------------------------------------------
# Pattern forms
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("pattern", "kind", "literal"),
    [
        ("%MART%", "contains", "MART"),
        ("TARGET%", "prefix", "TARGET"),
        ("%COFFEE", "suffix", "COFFEE"),
        ("NETFLIX", "exact", "NETFLIX"),
        ("  netflix ", "exact", "NETFLIX"),
        ("%", "prefix", ""),
        ("%%", "contains", ""),
    ],
)
def test_parse_reads_form_from_the_ends(pattern, kind, literal):
    parsed = MerchantPattern.parse(pattern)

    assert parsed.kind == kind
    assert parsed.literal == literal


@pytest.mark.parametrize(
    ("pattern", "merchant", "expected"),
    [
        ("%MART%", "WALMART #123", True),
        ("%MART%", "WALMART SUPERCENTER", True),
        ("%MART%", "KMART", True),
        ("%MART%", "TARGET", False),
        ("TARGET%", "TARGET #1234", True),
        ("TARGET%", "TARGET STORE 45", True),
        ("TARGET%", "MY TARGET", False),
        ("TARGET%", "SUPERTARGET", False),
        ("%CO", "ACME CO", True),
        ("%CO", "ACME CORP", False),
        ("%COFFEE", "BLUE BOTTLE COFFEE", True),
        ("%COFFEE", "COFFEE BEAN", False),
        ("NETFLIX", "NETFLIX", True),
        ("NETFLIX", "NETFLIX.COM", False),
        ("netflix", "NETFLIX", True),
    ],
)
def test_matches_by_form(pattern, merchant, expected):
    assert MerchantPattern.parse(pattern).matches(merchant) is expected


@pytest.mark.parametrize("pattern", ["%", "%%", "", "   "])
def test_empty_literal_never_matches(pattern):
    parsed = MerchantPattern.parse(pattern)

    assert parsed.matches("ANYTHING") is False
    assert parsed.matches("") is False


def test_regex_metacharacters_are_literal():
    parsed = MerchantPattern.parse("%A.B%")

    assert parsed.matches("XA.BX") is True
    assert parsed.matches("XAZBX") is False


def test_inner_wildcard_is_literal():
    parsed = MerchantPattern.parse("WAL%MART")

    assert parsed.kind == "exact"
    assert parsed.matches("WALMART") is False
    assert parsed.matches("WAL%MART") is True


def test_normalize_pattern_trims_and_uppercases():
    assert normalize_pattern("  %mart% ") == "%MART%"


# ---------------------------------------------------------------------------
# Ranking and first-hit matching
# ---------------------------------------------------------------------------


def test_rank_rules_orders_by_match_count_descending():
    rules = [
        FakeRule(1, "A", match_count=1),
        FakeRule(2, "B", match_count=10),
        FakeRule(3, "C", match_count=5),
    ]

    ranked = rank_rules(rules)

    assert [r.rule_id for r in ranked] == [2, 3, 1]


def test_rank_rules_keeps_input_order_for_ties():
    rules = [FakeRule(1, "A", 3), FakeRule(2, "B", 3), FakeRule(3, "C", 3)]

    assert [r.rule_id for r in rank_rules(rules)] == [1, 2, 3]


def test_first_hit_in_ranked_order_wins():
    # Both match; the more-used rule wins even though the other is more specific.
    rules = rank_rules(
        [
            FakeRule(1, "WALMART #1234", match_count=0),
            FakeRule(2, "%MART%", match_count=7),
        ]
    )

    match = match_rule("WALMART #1234", rules)

    assert match is not None
    assert match.rule_id == 2


def test_match_rule_uppercases_merchant_text():
    rules = [FakeRule(1, "%STARBUCKS%")]

    match = match_rule("starbucks store 42", rules)

    assert match is not None
    assert match.rule_id == 1


def test_match_rule_returns_none_without_hit():
    assert match_rule("UNKNOWN MERCHANT", [FakeRule(1, "%MART%")]) is None


def test_match_rule_returns_none_for_blank_merchant():
    assert match_rule("", [FakeRule(1, "%")]) is None
    assert match_rule("   ", [FakeRule(1, "%MART%")]) is None


def test_exact_pattern_does_not_ignore_surrounding_spaces():
    rules = [FakeRule(1, "NETFLIX")]

    assert match_rule(" NETFLIX ", rules) is None
    assert match_rule("NETFLIX", rules) is not None


def test_contains_pattern_matches_padded_merchant():
    assert match_rule(" NETFLIX ", [FakeRule(1, "%NETFLIX%")]) is not None


# ---------------------------------------------------------------------------
# Promotion patterns
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("merchant", "expected"),
    [
        ("WALMART #123 X", "WALMART%"),
        ("Walmart #1234 Austin TX", "WALMART%"),
        ("TARGET   #9", "TARGET%"),
        ("Netflix", "NETFLIX"),
        ("#123", ""),
        ("", ""),
    ],
)
def test_rule_pattern_for_merchant(merchant, expected):
    assert rule_pattern_for_merchant(merchant) == expected
