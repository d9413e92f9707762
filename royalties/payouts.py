import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, Optional
from uuid import UUID

from .audit import AuditLog, make_entry
from .currency import CurrencyNormalizer
from .errors import IdempotencyConflictError, InvalidStateTransitionError, NotFoundError, RateUnavailable
from .models import (
    CarriedBalance,
    EventType,
    PayoutBatch,
    PayoutStatus,
    Recipient,
    RoyaltyCalculation,
    derive_id,
)
from .storage import InMemoryStorage


ZERO = Decimal("0")


@dataclass(frozen=True)
class AggregationResult:
    run_id: str
    batches: tuple[PayoutBatch, ...] = ()
    carried: tuple[CarriedBalance, ...] = ()


class PayoutAggregator:
    """Turns a run's payable amounts into payout batches or carried balances.

    Totals are kept in the base currency and converted once, explicitly, into
    the recipient's single payout currency before the threshold check.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        audit: AuditLog,
        normalizer: CurrencyNormalizer,
        catalog_owner: Recipient,
        clock: Optional[Callable[[], datetime]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.storage = storage
        self.audit = audit
        self.normalizer = normalizer
        self.catalog_owner = catalog_owner
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logger or logging.getLogger(__name__)

    @property
    def base_currency(self) -> str:
        return self.normalizer.base_currency

    def aggregate(
        self,
        run_id: str,
        period_start: date,
        period_end: date,
        calculations: Optional[Iterable[RoyaltyCalculation]] = None,
    ) -> AggregationResult:
        if calculations is None:
            calculations = self.storage.unsettled_calculations()
        with self.storage.lock:
            if run_id in self.storage.aggregated_runs:
                raise IdempotencyConflictError(
                    f"Run {run_id} has already been aggregated",
                    invariant="one aggregation per run id",
                )
            pending = [
                c for c in calculations
                if c.calculation_id not in self.storage.settled_calculation_ids
                and c.calculation_id not in self.storage.superseded_by
            ]
            carried_now = dict(self.storage.carried_balances)
            settled_ids = set(self.storage.settled_calculation_ids)

        groups: dict[str, list[RoyaltyCalculation]] = {}
        for calc in sorted(pending, key=lambda c: str(c.calculation_id)):
            groups.setdefault(calc.recipient_id, []).append(calc)
        for recipient_id, balance in carried_now.items():
            if balance.amount != ZERO:
                groups.setdefault(recipient_id, [])

        now = self.clock()
        batches, carried, entries = [], [], []
        for recipient_id in sorted(groups):
            calcs = groups[recipient_id]
            recipient = self._recipient(recipient_id)
            previous = carried_now.get(recipient_id)
            total = sum((c.payable_amount for c in calcs), ZERO) + self._settled_adjustment(calcs, settled_ids)
            ids = tuple(c.calculation_id for c in calcs)
            if previous is not None:
                total += previous.amount
                ids = previous.calculation_ids + ids

            try:
                conversion = self.normalizer.convert(total, self.base_currency, recipient.payout_currency, period_end)
            except RateUnavailable as e:
                self.logger.warning("Carrying %s %s forward for %s: %s", total, self.base_currency, recipient_id, e)
                conversion = None
            if conversion is not None and conversion.amount > ZERO and conversion.amount >= recipient.minimum_payout_threshold:
                batch = PayoutBatch(
                    batch_id=derive_id("batch", run_id, recipient_id),
                    run_id=run_id,
                    recipient_id=recipient_id,
                    period_start=period_start,
                    period_end=period_end,
                    total_payable=conversion.amount,
                    currency=conversion.currency,
                    base_currency_total=total,
                    exchange_rate_used=conversion.rate,
                    constituent_calculation_ids=ids,
                    created_at=now,
                )
                batches.append(batch)
                entries.append(make_entry(
                    EventType.PAYOUT_BATCH_CREATED,
                    f"{run_id}:payout:{recipient_id}",
                    amount=batch.total_payable,
                    currency=batch.currency,
                    description=f"Payout batch of {batch.total_payable} {batch.currency} ({len(ids)} calculation(s))",
                    created_at=now,
                    recipient_id=recipient_id,
                    batch_id=batch.batch_id,
                    metadata={
                        "base_currency_total": str(total),
                        "exchange_rate": str(conversion.rate),
                        "carried_in": str(previous.amount) if previous else "0",
                    },
                ))
            else:
                balance = CarriedBalance(
                    recipient_id=recipient_id,
                    amount=total,
                    currency=self.base_currency,
                    calculation_ids=ids,
                )
                carried.append(balance)
                if conversion is None:
                    reason = f"no {self.base_currency}/{recipient.payout_currency} rate on {period_end}"
                else:
                    reason = f"below threshold {recipient.minimum_payout_threshold} {recipient.payout_currency}"
                entries.append(make_entry(
                    EventType.BALANCE_CARRIED_FORWARD,
                    f"{run_id}:carry:{recipient_id}",
                    amount=total,
                    currency=self.base_currency,
                    balance_after=total,
                    description=f"Carried {total} {self.base_currency} forward ({reason})",
                    created_at=now,
                    recipient_id=recipient_id,
                ))

        with self.storage.lock:
            if run_id in self.storage.aggregated_runs:
                raise IdempotencyConflictError(
                    f"Run {run_id} was aggregated concurrently",
                    invariant="one aggregation per run id",
                )
            for batch in batches:
                self.storage.payout_batches[batch.batch_id] = batch
                self.storage.carried_balances.pop(batch.recipient_id, None)
            for balance in carried:
                self.storage.carried_balances[balance.recipient_id] = balance
            for calcs in groups.values():
                self.storage.settled_calculation_ids.update(c.calculation_id for c in calcs)
            self.storage.aggregated_runs.add(run_id)
            self.audit.append(entries)

        self.logger.info(
            "Run %s aggregated %d recipient(s): %d batch(es), %d carried forward",
            run_id, len(groups), len(batches), len(carried),
        )
        return AggregationResult(run_id=run_id, batches=tuple(batches), carried=tuple(carried))

    def transition(self, batch_id: UUID, status: PayoutStatus) -> PayoutBatch:
        status = PayoutStatus(status)
        now = self.clock()
        with self.storage.lock:
            batch = self.storage.payout_batches.get(batch_id)
            if batch is None:
                raise NotFoundError(f"Payout batch {batch_id} not found")
            if not batch.can_transition(status):
                raise InvalidStateTransitionError(
                    f"Cannot move payout batch {batch_id} from {batch.status.value} to {status.value}"
                )
            updated = batch.model_copy(update={"status": status})
            self.storage.payout_batches[batch_id] = updated
            entries = [make_entry(
                EventType.PAYOUT_STATUS_CHANGED,
                f"{batch_id}:status:{status.value}",
                amount=ZERO,
                currency=batch.currency,
                description=f"Payout batch {batch.status.value} -> {status.value}",
                created_at=now,
                recipient_id=batch.recipient_id,
                batch_id=batch_id,
            )]
            if status in (PayoutStatus.FAILED, PayoutStatus.CANCELLED):
                previous = self.storage.carried_balances.get(batch.recipient_id)
                amount = batch.base_currency_total + (previous.amount if previous else ZERO)
                ids = (previous.calculation_ids if previous else ()) + batch.constituent_calculation_ids
                self.storage.carried_balances[batch.recipient_id] = CarriedBalance(
                    recipient_id=batch.recipient_id,
                    amount=amount,
                    currency=self.base_currency,
                    calculation_ids=ids,
                )
                entries.append(make_entry(
                    EventType.PAYOUT_RETURNED,
                    f"{batch_id}:returned",
                    amount=batch.base_currency_total,
                    currency=self.base_currency,
                    balance_after=amount,
                    description=f"Returned {batch.base_currency_total} {self.base_currency} from {status.value} batch to carried balance",
                    created_at=now,
                    recipient_id=batch.recipient_id,
                    batch_id=batch_id,
                ))
            self.audit.append(entries)
        self.logger.info("Payout batch %s is now %s", batch_id, status.value)
        return updated

    def _recipient(self, recipient_id: str) -> Recipient:
        recipient = self.storage.recipients.get(recipient_id)
        if recipient is None and recipient_id == self.catalog_owner.recipient_id:
            return self.catalog_owner
        if recipient is None:
            raise NotFoundError(f"Recipient {recipient_id} not found")
        return recipient

    def _settled_adjustment(self, calcs: list[RoyaltyCalculation], settled_ids: set[UUID]) -> Decimal:
        """Claw back what superseded calculations already released to batches or carried balances."""
        adjustment = ZERO
        for calc in calcs:
            # walk back past corrections that were themselves never settled
            previous_id = calc.supersedes_id
            while previous_id is not None:
                old = self.storage.calculations.get(previous_id)
                if old is None:
                    break
                if previous_id in settled_ids:
                    adjustment -= old.payable_amount
                    break
                previous_id = old.supersedes_id
        return adjustment
