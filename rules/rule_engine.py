from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional, Union
import json


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    IN = "in"
    NOT_IN = "not_in"
    IS_SET = "is_set"
    IS_NOT_SET = "is_not_set"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


_ORDERED = {
    ConditionOperator.GREATER_THAN,
    ConditionOperator.LESS_THAN,
    ConditionOperator.GREATER_THAN_OR_EQUAL,
    ConditionOperator.LESS_THAN_OR_EQUAL,
}


@dataclass
class Condition:
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, context: dict) -> bool:
        field_value = self._get_field_value(context, self.field)
        return self._apply_operator(field_value, self.value)

    def _get_field_value(self, context: dict, field_path: str) -> Any:
        value = context
        for part in field_path.split("."):
            if isinstance(value, dict):
                value = value.get(part)
            else:
                return None
        return value

    def _apply_operator(self, field_value: Any, compare_value: Any) -> bool:
        op = self.operator
        if op == ConditionOperator.IS_SET: return field_value is not None
        if op == ConditionOperator.IS_NOT_SET: return field_value is None
        if op in _ORDERED:
            if field_value is None or compare_value is None:
                return False
            field_value, compare_value = Decimal(str(field_value)), Decimal(str(compare_value))
        if op == ConditionOperator.EQUALS: return field_value == compare_value
        if op == ConditionOperator.NOT_EQUALS: return field_value != compare_value
        if op == ConditionOperator.GREATER_THAN: return field_value > compare_value
        if op == ConditionOperator.LESS_THAN: return field_value < compare_value
        if op == ConditionOperator.GREATER_THAN_OR_EQUAL: return field_value >= compare_value
        if op == ConditionOperator.LESS_THAN_OR_EQUAL: return field_value <= compare_value
        if op == ConditionOperator.IN: return field_value in compare_value if compare_value else False
        if op == ConditionOperator.NOT_IN: return field_value not in compare_value if compare_value else True
        return False

    def to_dict(self) -> dict:
        return {"field": self.field, "operator": self.operator.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict) -> "Condition":
        return cls(field=data["field"], operator=ConditionOperator(data["operator"]), value=data.get("value"))


@dataclass
class ConditionGroup:
    operator: LogicalOperator
    conditions: list[Union[Condition, "ConditionGroup"]]

    def evaluate(self, context: dict) -> bool:
        if not self.conditions:
            return True
        results = [cond.evaluate(context) for cond in self.conditions]
        return all(results) if self.operator == LogicalOperator.AND else any(results)

    def to_dict(self) -> dict:
        return {"operator": self.operator.value, "conditions": [c.to_dict() for c in self.conditions]}

    @classmethod
    def from_dict(cls, data: dict) -> "ConditionGroup":
        conditions = [parse_conditions(c) for c in data["conditions"]]
        return cls(operator=LogicalOperator(data["operator"]), conditions=conditions)


def parse_conditions(data: Optional[dict]) -> Union[Condition, ConditionGroup]:
    if not data:
        return ConditionGroup(operator=LogicalOperator.AND, conditions=[])
    if "operator" in data and "conditions" in data:
        return ConditionGroup.from_dict(data)
    return Condition.from_dict(data)


@dataclass
class RateRule:
    """A deduction rate (or flat amount) for one pipeline step, guarded by conditions.

    ``step`` names the deduction step the rule prices, e.g. ``platform_commission``
    or ``withholding_tax``. A rule carries either a ``rate`` or a ``flat_amount``,
    never both.
    """
    id: str
    step: str
    conditions: Union[Condition, ConditionGroup] = field(
        default_factory=lambda: ConditionGroup(operator=LogicalOperator.AND, conditions=[])
    )
    rate: Decimal = Decimal("0")
    flat_amount: Optional[Decimal] = None
    name: str = ""
    priority: int = 0
    is_active: bool = True

    def __post_init__(self):
        self.rate = Decimal(str(self.rate))
        if self.flat_amount is not None:
            self.flat_amount = Decimal(str(self.flat_amount))
        if not Decimal("0") <= self.rate <= Decimal("1"):
            raise ValueError(f"Rule {self.id}: rate must be between 0 and 1, got {self.rate}")
        if self.flat_amount is not None and self.flat_amount < 0:
            raise ValueError(f"Rule {self.id}: flat_amount must not be negative")
        if self.flat_amount is not None and self.rate != 0:
            raise ValueError(f"Rule {self.id}: set either rate or flat_amount, not both")

    def evaluate(self, context: dict) -> bool:
        if not self.is_active:
            return False
        return self.conditions.evaluate(context)

    def to_dict(self) -> dict:
        return {
            "id": self.id, "name": self.name, "step": self.step,
            "rate": str(self.rate),
            "flat_amount": str(self.flat_amount) if self.flat_amount is not None else None,
            "priority": self.priority, "is_active": self.is_active,
            "conditions": self.conditions.to_dict(),
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: dict) -> "RateRule":
        flat = data.get("flat_amount")
        return cls(
            id=data["id"], step=data["step"], name=data.get("name", ""),
            rate=Decimal(str(data.get("rate", "0"))),
            flat_amount=Decimal(str(flat)) if flat is not None else None,
            priority=data.get("priority", 0), is_active=data.get("is_active", True),
            conditions=parse_conditions(data.get("conditions")),
        )


class RateRuleEngine:
    """Rate tables for deduction steps: commission schedules, fees and withholding by jurisdiction."""

    def __init__(self, rules: Iterable[RateRule] = ()):
        self.rules: dict[str, RateRule] = {}
        for rule in rules:
            self.add_rule(rule)

    def add_rule(self, rule: RateRule) -> None:
        self.rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> None:
        self.rules.pop(rule_id, None)

    def get_rule(self, rule_id: str) -> Optional[RateRule]:
        return self.rules.get(rule_id)

    def list_rules(self, step: Optional[str] = None) -> list[RateRule]:
        rules = list(self.rules.values())
        if step:
            rules = [r for r in rules if r.step == step]
        # ties broken by id so resolution never depends on insertion order
        rules.sort(key=lambda r: (-r.priority, r.id))
        return rules

    def match(self, step: str, context: dict) -> Optional[RateRule]:
        for rule in self.list_rules(step):
            if rule.evaluate(context):
                return rule
        return None

    def resolve(self, steps: Iterable[str], context: dict) -> dict[str, Optional[RateRule]]:
        return {step: self.match(step, context) for step in steps}

    def to_config(self) -> list[dict]:
        return [r.to_dict() for r in self.list_rules()]

    @classmethod
    def from_config(cls, data: Iterable[dict]) -> "RateRuleEngine":
        return cls(RateRule.from_dict(d) for d in data)
