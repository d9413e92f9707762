"""
Rate Rules Package

Condition-guarded rate tables used to price deduction steps (platform and
distributor commissions, processing fees, withholding tax by jurisdiction).
"""

from .rule_engine import (
    RateRuleEngine,
    RateRule,
    Condition,
    ConditionGroup,
    ConditionOperator,
    LogicalOperator,
)

__all__ = [
    "RateRuleEngine",
    "RateRule",
    "Condition",
    "ConditionGroup",
    "ConditionOperator",
    "LogicalOperator",
]
