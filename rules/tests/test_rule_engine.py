"""
Unit Tests for the Rate Rule Engine
"""

import pytest
from decimal import Decimal

from rules.rule_engine import (
    Condition,
    ConditionGroup,
    ConditionOperator,
    LogicalOperator,
    RateRule,
    RateRuleEngine,
)


CONTEXT = {
    "platform": "spotify",
    "territory": "DE",
    "split_type": "master",
    "recipient": {"id": "artist-1", "jurisdiction": "DE", "role": "artist"},
    "units": 1500,
}


class TestConditions:
    """Tests for condition evaluation."""

    def test_nested_field_lookup(self):
        """Dotted paths reach into nested context."""
        cond = Condition(field="recipient.jurisdiction", operator=ConditionOperator.EQUALS, value="DE")
        assert cond.evaluate(CONTEXT)

    def test_missing_field_is_not_set(self):
        """Absent fields evaluate as None."""
        assert Condition(field="release_ref", operator=ConditionOperator.IS_NOT_SET).evaluate(CONTEXT)
        assert not Condition(field="release_ref", operator=ConditionOperator.IS_SET).evaluate(CONTEXT)

    def test_numeric_comparison_uses_decimal(self):
        """Ordered operators compare numerically, strings included."""
        assert Condition(field="units", operator=ConditionOperator.GREATER_THAN, value="1000").evaluate(CONTEXT)
        assert not Condition(field="units", operator=ConditionOperator.LESS_THAN, value=1000).evaluate(CONTEXT)
        assert not Condition(field="missing", operator=ConditionOperator.GREATER_THAN, value=0).evaluate(CONTEXT)

    def test_membership(self):
        """IN and NOT_IN check against a list."""
        assert Condition(field="territory", operator=ConditionOperator.IN, value=["DE", "AT"]).evaluate(CONTEXT)
        assert Condition(field="territory", operator=ConditionOperator.NOT_IN, value=["US"]).evaluate(CONTEXT)

    def test_groups(self):
        """AND / OR groups combine their children."""
        group = ConditionGroup(operator=LogicalOperator.OR, conditions=[
            Condition(field="platform", operator=ConditionOperator.EQUALS, value="apple"),
            ConditionGroup(operator=LogicalOperator.AND, conditions=[
                Condition(field="platform", operator=ConditionOperator.EQUALS, value="spotify"),
                Condition(field="territory", operator=ConditionOperator.EQUALS, value="DE"),
            ]),
        ])
        assert group.evaluate(CONTEXT)


class TestRateRules:
    """Tests for rule validation and serialization."""

    def test_rate_out_of_range(self):
        """Rates are fractions between 0 and 1."""
        with pytest.raises(ValueError):
            RateRule(id="bad", step="platform_commission", rate=Decimal("1.5"))

    def test_negative_flat_amount(self):
        """Flat amounts cannot be negative."""
        with pytest.raises(ValueError):
            RateRule(id="bad", step="processing_fee", flat_amount=Decimal("-1"))

    def test_rate_and_flat_amount_together(self):
        """A rule prices its step one way only."""
        with pytest.raises(ValueError):
            RateRule(id="both", step="processing_fee", rate=Decimal("0.02"), flat_amount=Decimal("0.50"))

        with pytest.raises(ValueError):
            RateRule.from_dict({"id": "both", "step": "processing_fee", "rate": "0.02", "flat_amount": "0.50"})

    def test_dict_round_trip(self):
        """Rules survive to_dict / from_dict with their conditions."""
        rule = RateRule(
            id="wht-de", step="withholding_tax", rate=Decimal("0.15"), priority=10,
            conditions=Condition(field="recipient.jurisdiction", operator=ConditionOperator.EQUALS, value="DE"),
        )

        restored = RateRule.from_dict(rule.to_dict())

        assert restored == rule


class TestRateRuleEngine:
    """Tests for rule matching."""

    def test_highest_priority_match_wins(self):
        """Specific rules outrank defaults by priority."""
        engine = RateRuleEngine([
            RateRule(id="default", step="withholding_tax", rate=Decimal("0.30")),
            RateRule(
                id="treaty-de", step="withholding_tax", rate=Decimal("0.15"), priority=10,
                conditions=Condition(field="recipient.jurisdiction", operator=ConditionOperator.EQUALS, value="DE"),
            ),
        ])

        assert engine.match("withholding_tax", CONTEXT).id == "treaty-de"
        assert engine.match("withholding_tax", {"recipient": {"jurisdiction": "FR"}}).id == "default"

    def test_inactive_rules_skipped(self):
        """Deactivated rules never match."""
        engine = RateRuleEngine([
            RateRule(id="old", step="platform_commission", rate=Decimal("0.2"), is_active=False),
        ])

        assert engine.match("platform_commission", CONTEXT) is None

    def test_resolve_per_step(self):
        """Every requested step gets a rule or None."""
        engine = RateRuleEngine([RateRule(id="fee", step="processing_fee", flat_amount=Decimal("0.50"))])

        resolved = engine.resolve(["processing_fee", "withholding_tax"], CONTEXT)

        assert resolved["processing_fee"].id == "fee"
        assert resolved["withholding_tax"] is None

    def test_config_round_trip(self):
        """An engine can be rebuilt from its exported configuration."""
        engine = RateRuleEngine([
            RateRule(id="b", step="platform_commission", rate=Decimal("0.25")),
            RateRule(id="a", step="platform_commission", rate=Decimal("0.30")),
        ])

        rebuilt = RateRuleEngine.from_config(engine.to_config())

        assert [r.id for r in rebuilt.list_rules()] == ["a", "b"]
        assert rebuilt.match("platform_commission", CONTEXT).rate == Decimal("0.30")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
