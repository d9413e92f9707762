from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from rules.rule_engine import RateRuleEngine

from .currency import round_money
from .models import DEDUCTION_ORDER, DeductionLine, DeductionRate, DeductionSchedule, DeductionStep


ZERO = Decimal("0")


@dataclass(frozen=True)
class DeductionResult:
    gross: Decimal
    lines: tuple[DeductionLine, ...]
    net: Decimal

    @property
    def total(self) -> Decimal:
        return sum((line.amount for line in self.lines), ZERO)


def schedule_from_rules(rate_rules: Optional[RateRuleEngine], context: dict) -> DeductionSchedule:
    """Price every pipeline step for a calculation context; unmatched steps get a zero rate."""
    if rate_rules is None:
        return DeductionSchedule()
    matched = rate_rules.resolve([step.value for step in DEDUCTION_ORDER], context)
    rates = []
    for step in DEDUCTION_ORDER:
        rule = matched[step.value]
        if rule is None:
            rates.append(DeductionRate(step=step))
        else:
            rates.append(DeductionRate(step=step, rate=rule.rate, flat_amount=rule.flat_amount, rule_id=rule.id))
    return DeductionSchedule(rates=tuple(rates))


class DeductionPipeline:
    """Applies the named deduction steps in their fixed order.

    Each step is charged on the remainder left by the steps before it (net of
    net), never on the original gross. Steps priced at zero are still recorded.
    """

    steps = DEDUCTION_ORDER

    def apply(self, gross: Decimal, currency: str, schedule: DeductionSchedule) -> DeductionResult:
        remainder = gross
        lines = []
        for step in self.steps:
            pricing = schedule.for_step(step)
            amount = self._charge(remainder, currency, pricing)
            lines.append(DeductionLine(
                step=step,
                basis_amount=remainder,
                rate=pricing.rate,
                flat_amount=pricing.flat_amount,
                amount=amount,
                rule_id=pricing.rule_id,
            ))
            remainder -= amount
        return DeductionResult(gross=gross, lines=tuple(lines), net=remainder)

    @staticmethod
    def _charge(basis: Decimal, currency: str, pricing: DeductionRate) -> Decimal:
        if pricing.flat_amount is not None:
            if basis <= ZERO:
                return round_money(ZERO, currency)
            return min(round_money(pricing.flat_amount, currency), basis)
        return round_money(basis * pricing.rate, currency)
