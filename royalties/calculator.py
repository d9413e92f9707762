import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Mapping, Optional
from uuid import UUID

from rules.rule_engine import RateRuleEngine

from .currency import CurrencyNormalizer, round_money
from .deductions import DeductionPipeline, DeductionResult, schedule_from_rules
from .errors import StatementValidationError, RoyaltyEngineError
from .models import (
    Conversion,
    Recipient,
    RoyaltyCalculation,
    RoyaltyStatement,
    SplitType,
    StatementLineItem,
    derive_id,
)
from .recoupment import RecoupmentResult, RecoupmentTransaction
from .splits import SplitResolver


HUNDRED = Decimal("100")


@dataclass(frozen=True)
class PreparedShare:
    """Everything about one (line, split type, recipient) share that does not touch shared state."""
    calculation_id: UUID
    statement_id: str
    line_item_id: str
    track_ref: str
    territory: str
    usage_date: date
    recipient_id: str
    split_type: SplitType
    split_percentage: Decimal
    source_amount: Decimal
    conversion: Conversion
    deductions: DeductionResult

    @property
    def supersession_key(self) -> tuple:
        return (self.line_item_id, self.split_type, self.recipient_id)


class SplitCalculator:
    def __init__(
        self,
        resolver: SplitResolver,
        normalizer: CurrencyNormalizer,
        recipients: Mapping[str, Recipient],
        catalog_owner: Recipient,
        pipeline: Optional[DeductionPipeline] = None,
        rate_rules: Optional[RateRuleEngine] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.resolver = resolver
        self.normalizer = normalizer
        self.recipients = recipients
        self.catalog_owner = catalog_owner
        self.pipeline = pipeline or DeductionPipeline()
        self.rate_rules = rate_rules
        self.logger = logger or logging.getLogger(__name__)

    def prepare(self, statement: RoyaltyStatement) -> list[PreparedShare]:
        content_hash = statement.content_hash()
        prepared = []
        for item in statement.line_items:
            try:
                prepared.extend(self._prepare_line(statement, item, content_hash))
            except RoyaltyEngineError as e:
                raise e.with_context(statement.statement_id, item.line_item_id)
        self.logger.debug("Prepared %d share(s) for statement %s", len(prepared), statement.statement_id)
        return prepared

    @staticmethod
    def finalize(
        prepared: list[PreparedShare],
        tx: RecoupmentTransaction,
        calculated_at: datetime,
        supersedes: Optional[Mapping[tuple, UUID]] = None,
    ) -> list[tuple[RoyaltyCalculation, RecoupmentResult]]:
        supersedes = supersedes or {}
        results = []
        for share in prepared:
            try:
                recoupment = tx.apply(
                    share.recipient_id,
                    share.deductions.net,
                    share.usage_date,
                    calculation_id=share.calculation_id,
                    statement_id=share.statement_id,
                    created_at=calculated_at,
                )
            except RoyaltyEngineError as e:
                raise e.with_context(share.statement_id, share.line_item_id)
            calc = RoyaltyCalculation(
                calculation_id=share.calculation_id,
                statement_id=share.statement_id,
                line_item_id=share.line_item_id,
                track_ref=share.track_ref,
                territory=share.territory,
                recipient_id=share.recipient_id,
                split_type=share.split_type,
                split_percentage=share.split_percentage,
                source_currency=share.conversion.original_currency,
                source_amount=share.source_amount,
                gross_share=share.conversion.amount,
                deductions=share.deductions.lines,
                net_share=share.deductions.net,
                recoupments=recoupment.withholdings,
                recouped_amount=recoupment.recouped_amount,
                payable_amount=recoupment.payable_amount,
                base_currency=share.conversion.currency,
                exchange_rate_used=share.conversion.rate,
                rate_date=share.conversion.rate_date,
                rate_source=share.conversion.rate_source,
                calculated_at=calculated_at,
                supersedes_id=supersedes.get(share.supersession_key),
            )
            if not calc.is_conserved():
                raise StatementValidationError(
                    f"Calculation {calc.calculation_id} leaks "
                    f"{calc.gross_share - calc.total_deductions - calc.recouped_amount - calc.payable_amount}",
                    statement_id=share.statement_id,
                    line_item_id=share.line_item_id,
                    invariant="gross_share = deductions + recouped + payable",
                )
            results.append((calc, recoupment))
        return results

    def _prepare_line(self, statement: RoyaltyStatement, item: StatementLineItem, content_hash: str) -> list[PreparedShare]:
        usage_date = statement.usage_date_for(item)
        if item.split_type is not None:
            split_types = [item.split_type]
        else:
            split_types = self.resolver.split_types_for(item.track_ref, item.release_ref) or [SplitType.MASTER]

        shares = []
        for split_type in split_types:
            splits = self.resolver.resolve(
                item.track_ref,
                split_type,
                usage_date,
                territory=item.territory,
                fallback_subject_id=item.release_ref,
            )
            for split in splits:
                recipient = self._recipient(split.recipient_id)
                allocated = item.gross_amount * split.percentage / HUNDRED
                conversion = self.normalizer.normalize(allocated, statement.currency, statement.statement_date)
                context = self._rule_context(statement, item, split_type, recipient)
                schedule = schedule_from_rules(self.rate_rules, context)
                deductions = self.pipeline.apply(conversion.amount, conversion.currency, schedule)
                shares.append(PreparedShare(
                    calculation_id=derive_id(
                        "calculation", statement.statement_id, content_hash, item.line_item_id,
                        split_type.value, split.recipient_id, split.split_id or "fallback",
                    ),
                    statement_id=statement.statement_id,
                    line_item_id=item.line_item_id,
                    track_ref=item.track_ref,
                    territory=item.territory,
                    usage_date=usage_date,
                    recipient_id=split.recipient_id,
                    split_type=split_type,
                    split_percentage=split.percentage,
                    source_amount=round_money(allocated, statement.currency),
                    conversion=conversion,
                    deductions=deductions,
                ))
        return shares

    def _recipient(self, recipient_id: str) -> Recipient:
        if recipient_id == self.catalog_owner.recipient_id:
            return self.recipients.get(recipient_id, self.catalog_owner)
        recipient = self.recipients.get(recipient_id)
        if recipient is None:
            raise StatementValidationError(
                f"Split references unknown recipient {recipient_id}",
                invariant="every split recipient is configured",
            )
        return recipient

    @staticmethod
    def _rule_context(
        statement: RoyaltyStatement,
        item: StatementLineItem,
        split_type: SplitType,
        recipient: Recipient,
    ) -> dict:
        return {
            "platform": statement.platform,
            "currency": statement.currency,
            "territory": item.territory,
            "track_ref": item.track_ref,
            "release_ref": item.release_ref,
            "split_type": split_type.value,
            "recipient": {
                "id": recipient.recipient_id,
                "jurisdiction": recipient.jurisdiction,
                "role": recipient.role.value,
            },
        }
