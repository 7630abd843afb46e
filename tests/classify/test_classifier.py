from __future__ import annotations

from ledgersync.adapters.db.models import CategoryMapping, MerchantRuleRow
from ledgersync.classify.classifier import (
    UNRESOLVED,
    Classification,
    classify,
    classify_with_source,
    merchant_text,
    taxonomy_fallback,
)
from ledgersync.models.transaction import Transaction

# Helper functions


def create_test_transaction(
    *,
    name: str = "Test Transaction",
    merchant_name: str | None = None,
    primary: str | None = None,
) -> Transaction:
    return {
        "transaction_id": "txn_1",
        "account_id": "acc_123",
        "amount": 12.5,
        "iso_currency_code": "USD",
        "date": "2025-01-01",
        "name": name,
        "merchant_name": merchant_name,
        "pending": False,
        "personal_finance_category": (
            {"primary": primary, "detailed": "", "confidence_level": "HIGH"}
            if primary
            else None
        ),
    }


def create_rule(
    rule_id: int, pattern: str, category_id: int, match_count: int = 0
) -> MerchantRuleRow:
    return MerchantRuleRow(
        rule_id=rule_id,
        pattern=pattern,
        category_id=category_id,
        confidence="user_confirmed",
        match_count=match_count,
    )


MAPPINGS = [
    CategoryMapping(category_id=10, provider_codes=frozenset({"FOOD_AND_DRINK"})),
    CategoryMapping(
        category_id=20,
        provider_codes=frozenset({"GENERAL_MERCHANDISE", "GENERAL_SERVICES"}),
    ),
]


def test_rule_match_takes_precedence_over_taxonomy():
    txn = create_test_transaction(merchant_name="Whole Foods", primary="FOOD_AND_DRINK")
    rules = [create_rule(1, "%WHOLE FOODS%", category_id=99)]

    result = classify_with_source(txn, rules, MAPPINGS)

    assert result == Classification(category_id=99, method="rule", rule_id=1)


def test_taxonomy_fallback_when_no_rule_matches():
    txn = create_test_transaction(
        merchant_name="Corner Store", primary="GENERAL_MERCHANDISE"
    )
    rules = [create_rule(1, "%WHOLE FOODS%", category_id=99)]

    result = classify_with_source(txn, rules, MAPPINGS)

    assert result.category_id == 20
    assert result.method == "taxonomy"
    assert result.rule_id is None
    assert result.resolved is True


def test_unresolved_when_neither_matches():
    txn = create_test_transaction(merchant_name="Mystery Shop", primary="TRAVEL")

    result = classify_with_source(txn, [], MAPPINGS)

    assert result is UNRESOLVED
    assert result.resolved is False
    assert classify(txn, [], MAPPINGS) is None


def test_unresolved_without_provider_category():
    txn = create_test_transaction(merchant_name="Mystery Shop")

    assert classify(txn, [], MAPPINGS) is None


def test_rule_matches_name_when_merchant_name_missing():
    txn = create_test_transaction(name="NETFLIX.COM 866-579", merchant_name=None)
    rules = [create_rule(7, "NETFLIX%", category_id=30)]

    assert classify(txn, rules, MAPPINGS) == 30


def test_first_matching_rule_in_ranked_order_wins():
    txn = create_test_transaction(merchant_name="WALMART #1234")
    rules = [
        create_rule(2, "%MART%", category_id=40, match_count=9),
        create_rule(1, "WALMART%", category_id=50, match_count=1),
    ]

    result = classify_with_source(txn, rules, MAPPINGS)

    assert result.rule_id == 2
    assert result.category_id == 40


def test_higher_usage_rule_wins_regardless_of_input_order():
    txn = create_test_transaction(merchant_name="WALMART #1234")
    rules = [
        create_rule(1, "WALMART%", category_id=50, match_count=1),
        create_rule(2, "%MART%", category_id=40, match_count=9),
    ]

    result = classify_with_source(txn, rules, MAPPINGS)

    assert result.rule_id == 2
    assert result.category_id == 40


def test_equal_usage_keeps_input_order():
    txn = create_test_transaction(merchant_name="WALMART #1234")
    rules = [
        create_rule(1, "WALMART%", category_id=50, match_count=4),
        create_rule(2, "%MART%", category_id=40, match_count=4),
    ]

    assert classify(txn, rules, MAPPINGS) == 50


def test_merchant_text_prefers_merchant_name():
    txn = create_test_transaction(name="POS 1234 STARBUCKS", merchant_name="Starbucks")

    assert merchant_text(txn) == "STARBUCKS"


def test_taxonomy_fallback_ignores_missing_code():
    assert taxonomy_fallback(None, MAPPINGS) is None
    assert taxonomy_fallback("", MAPPINGS) is None
    assert taxonomy_fallback("GENERAL_SERVICES", MAPPINGS) == 20


def test_classify_does_not_mutate_rules():
    txn = create_test_transaction(merchant_name="Target")
    rule = create_rule(1, "TARGET%", category_id=5, match_count=3)

    classify(txn, [rule], MAPPINGS)

    assert rule.match_count == 3
