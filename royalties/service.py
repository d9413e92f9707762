import hashlib
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, Optional
from uuid import UUID

from rules.rule_engine import RateRuleEngine

from .audit import AuditLog, make_entry
from .calculator import PreparedShare, SplitCalculator
from .config import EngineSettings
from .currency import CurrencyNormalizer, RateProvider, StaticRateProvider
from .errors import (
    IdempotencyConflictError,
    NotFoundError,
    ProcessingCancelled,
    RecoupmentInvariantError,
    RoyaltyEngineError,
)
from .models import (
    CarriedBalance,
    EventType,
    ExchangeRate,
    LedgerEntry,
    PayoutBatch,
    PayoutStatus,
    Recipient,
    RecipientRole,
    RecoupmentAccount,
    RoyaltyCalculation,
    RoyaltyStatement,
    Split,
    StatementRecord,
    StatementStatus,
)
from .payouts import AggregationResult, PayoutAggregator
from .recoupment import RecoupmentLedger
from .splits import SplitResolver
from .storage import InMemoryStorage


@dataclass(frozen=True)
class StatementResult:
    statement_id: str
    status: StatementStatus
    calculations: tuple[RoyaltyCalculation, ...] = ()
    idempotent: bool = False
    message: str = ""


@dataclass(frozen=True)
class RunResult:
    run_id: str
    period_start: date
    period_end: date
    statements: tuple[StatementResult, ...] = ()
    failures: dict = field(default_factory=dict)
    aggregation: Optional[AggregationResult] = None
    rates: tuple[ExchangeRate, ...] = ()

    @property
    def batches(self) -> tuple[PayoutBatch, ...]:
        return self.aggregation.batches if self.aggregation else ()


class RoyaltyService:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[EngineSettings] = None,
        rate_provider: Optional[RateProvider] = None,
        rate_rules: Optional[RateRuleEngine] = None,
        clock: Optional[Callable[[], datetime]] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or EngineSettings()
        self.rate_provider = rate_provider or StaticRateProvider()
        self.rate_rules = rate_rules
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logger or logging.getLogger(__name__)
        self._sleep = sleep
        self.audit = AuditLog(self.storage, logger=self.logger)
        self.recoupment = RecoupmentLedger(
            self.storage, self.audit, self.settings.base_currency, clock=self.clock, logger=self.logger
        )
        self.catalog_owner = Recipient(
            recipient_id=self.settings.catalog_owner_id,
            name="Catalog owner",
            role=RecipientRole.CATALOG_OWNER,
            payout_currency=self.settings.base_currency,
            minimum_payout_threshold=self.settings.default_minimum_payout,
        )

    # --- configuration ------------------------------------------------------

    def add_recipient(self, recipient: Recipient) -> Recipient:
        with self.storage.lock:
            self.storage.recipients[recipient.recipient_id] = recipient
        return recipient

    def get_recipient(self, recipient_id: str) -> Recipient:
        recipient = self.storage.recipients.get(recipient_id)
        if recipient is None:
            if recipient_id == self.catalog_owner.recipient_id:
                return self.catalog_owner
            raise NotFoundError(f"Recipient {recipient_id} not found")
        return recipient

    def add_splits(self, splits: Iterable[Split]) -> list[Split]:
        splits = list(splits)
        with self.storage.lock:
            for split in splits:
                self.storage.splits[split.split_id] = split
        return splits

    def open_recoupment_account(
        self,
        recipient_id: str,
        pool_id: str,
        outstanding_balance: Decimal,
        recoupment_rate: Decimal,
        priority_order: int = 1,
        description: str = "",
        effective_from: Optional[date] = None,
    ) -> RecoupmentAccount:
        self.get_recipient(recipient_id)
        account = RecoupmentAccount(
            recipient_id=recipient_id,
            pool_id=pool_id,
            description=description,
            outstanding_balance=outstanding_balance,
            recoupment_rate=recoupment_rate,
            priority_order=priority_order,
            currency=self.settings.base_currency,
            effective_from=effective_from,
            created_at=self.clock(),
        )
        return self.recoupment.open_account(account)

    def get_accounts(self, recipient_id: str) -> list[RecoupmentAccount]:
        return self.recoupment.accounts(recipient_id)

    # --- processing ---------------------------------------------------------

    def new_normalizer(self) -> CurrencyNormalizer:
        return CurrencyNormalizer(
            self.rate_provider,
            self.settings.base_currency,
            max_attempts=self.settings.rate_fetch_max_attempts,
            backoff_seconds=self.settings.rate_fetch_backoff_seconds,
            timeout_seconds=self.settings.rate_fetch_timeout_seconds,
            sleep=self._sleep,
            logger=self.logger,
        )

    def process_statement(
        self,
        statement: RoyaltyStatement,
        cancel_event: Optional[threading.Event] = None,
    ) -> StatementResult:
        """Calculate one statement atomically.

        Re-submitting a processed statement with the same content is a no-op that
        returns the stored calculations. The same id with different content is a
        conflict; use ``process_correction`` for that.
        """
        existing, prepared = self._prepare(statement, self.new_normalizer())
        if existing is not None:
            return existing
        return self._commit(statement, prepared, cancel_event)

    def process_correction(
        self,
        statement: RoyaltyStatement,
        cancel_event: Optional[threading.Event] = None,
    ) -> StatementResult:
        """Replace a processed statement with corrected content.

        Recoupment drawn by the previous calculations is returned to the pools
        before the corrected lines are recouped again; the new calculations carry
        ``supersedes_id`` links to the ones they replace.
        """
        content_hash = statement.content_hash()
        with self.storage.lock:
            record = self.storage.statements.get(statement.statement_id)
            if record is None or record.status != StatementStatus.PROCESSED:
                raise NotFoundError(
                    f"No processed statement {statement.statement_id} to correct",
                    statement_id=statement.statement_id,
                )
            if record.content_hash == content_hash:
                return self._idempotent_result(record)
            previous = [self.storage.calculations[cid] for cid in record.calculation_ids]
            self.storage.statements[statement.statement_id] = record.model_copy(update={
                "status": StatementStatus.PROCESSING,
                "content_hash": content_hash,
                "attempts": record.attempts + 1,
                "error": None,
            })

        try:
            prepared = self._calculator(self.new_normalizer()).prepare(statement)
        except Exception as e:
            self._restore(record, e)
            raise
        return self._commit(statement, prepared, cancel_event, previous=previous, restore_to=record)

    def process_run(
        self,
        statements: Iterable[RoyaltyStatement],
        period_start: date,
        period_end: date,
        run_id: Optional[str] = None,
    ) -> RunResult:
        """Process a set of statements, then aggregate payouts once all of them finished.

        Statements are prepared in parallel; recoupment and commits happen one
        statement at a time in (period_end, statement_id) order so the result
        does not depend on thread scheduling. A failing statement is recorded
        and skipped; a recoupment invariant violation aborts the run. Two
        versions of one statement id, or a run id that was already aggregated,
        are refused before anything is processed.
        """
        unique: dict[str, RoyaltyStatement] = {}
        for statement in statements:
            seen = unique.setdefault(statement.statement_id, statement)
            if seen.idempotency_key != statement.idempotency_key:
                raise IdempotencyConflictError(
                    "Run contains two versions of the statement",
                    statement_id=statement.statement_id,
                    invariant="one content version per statement id in a run",
                )
        ordered = sorted(unique.values(), key=lambda s: (s.period_end, s.statement_id))
        run_id = run_id or self._run_id(ordered, period_start, period_end)
        if run_id in self.storage.aggregated_runs:
            raise IdempotencyConflictError(
                f"Run {run_id} has already been aggregated",
                invariant="one aggregation per run id",
            )
        normalizer = self.new_normalizer()
        self.logger.info("Run %s: processing %d statement(s) for %s..%s", run_id, len(ordered), period_start, period_end)

        results, failures = [], {}
        with ThreadPoolExecutor(max_workers=self.settings.max_workers) as pool:
            futures = [(s, pool.submit(self._prepare, s, normalizer)) for s in ordered]
            for statement, future in futures:
                try:
                    existing, prepared = future.result()
                    if existing is not None:
                        results.append(existing)
                        continue
                    results.append(self._commit(statement, prepared))
                except RoyaltyEngineError as e:
                    if isinstance(e, RecoupmentInvariantError):
                        self._abandon(futures, run_id, e)
                        raise
                    failures[statement.statement_id] = str(e)
                    results.append(StatementResult(
                        statement_id=statement.statement_id,
                        status=StatementStatus.FAILED,
                        message=str(e),
                    ))
                except Exception as e:
                    self._abandon(futures, run_id, e)
                    raise

        aggregator = self._aggregator(normalizer)
        aggregation = aggregator.aggregate(run_id, period_start, period_end)
        return RunResult(
            run_id=run_id,
            period_start=period_start,
            period_end=period_end,
            statements=tuple(results),
            failures=failures,
            aggregation=aggregation,
            rates=tuple(normalizer.snapshot()),
        )

    def aggregate_payouts(self, run_id: str, period_start: date, period_end: date) -> AggregationResult:
        return self._aggregator(self.new_normalizer()).aggregate(run_id, period_start, period_end)

    def update_batch_status(self, batch_id: UUID, status: PayoutStatus) -> PayoutBatch:
        return self._aggregator(self.new_normalizer()).transition(batch_id, status)

    # --- queries ------------------------------------------------------------

    def get_statement(self, statement_id: str) -> StatementRecord:
        record = self.storage.statements.get(statement_id)
        if record is None:
            raise NotFoundError(f"Statement {statement_id} not found", statement_id=statement_id)
        return record

    def get_calculations(
        self,
        statement_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
        include_superseded: bool = False,
    ) -> list[RoyaltyCalculation]:
        with self.storage.lock:
            calcs = list(self.storage.calculations.values())
            superseded = set(self.storage.superseded_by)
        if statement_id is not None:
            calcs = [c for c in calcs if c.statement_id == statement_id]
        if recipient_id is not None:
            calcs = [c for c in calcs if c.recipient_id == recipient_id]
        if not include_superseded:
            calcs = [c for c in calcs if c.calculation_id not in superseded]
        return calcs

    def get_ledger_history(self, recipient_id: Optional[str] = None, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        return self.audit.history(recipient_id=recipient_id, limit=limit, offset=offset)

    def get_carried_balance(self, recipient_id: str) -> CarriedBalance:
        balance = self.storage.carried_balances.get(recipient_id)
        if balance is None:
            return CarriedBalance(recipient_id=recipient_id, currency=self.settings.base_currency)
        return balance

    def get_batches(self, recipient_id: Optional[str] = None, status: Optional[PayoutStatus] = None) -> list[PayoutBatch]:
        batches = list(self.storage.payout_batches.values())
        if recipient_id is not None:
            batches = [b for b in batches if b.recipient_id == recipient_id]
        if status is not None:
            batches = [b for b in batches if b.status == status]
        return batches

    # --- internals ----------------------------------------------------------

    def _calculator(self, normalizer: CurrencyNormalizer) -> SplitCalculator:
        # configuration is snapshotted here; nothing is looked up lazily mid-calculation
        with self.storage.lock:
            splits = list(self.storage.splits.values())
            recipients = dict(self.storage.recipients)
        return SplitCalculator(
            SplitResolver(splits, self.catalog_owner.recipient_id),
            normalizer,
            recipients,
            self.catalog_owner,
            rate_rules=self.rate_rules,
            logger=self.logger,
        )

    def _aggregator(self, normalizer: CurrencyNormalizer) -> PayoutAggregator:
        return PayoutAggregator(
            self.storage, self.audit, normalizer, self.catalog_owner, clock=self.clock, logger=self.logger
        )

    def _prepare(
        self,
        statement: RoyaltyStatement,
        normalizer: CurrencyNormalizer,
    ) -> tuple[Optional[StatementResult], Optional[list[PreparedShare]]]:
        existing = self._begin(statement)
        if existing is not None:
            return existing, None
        try:
            prepared = self._calculator(normalizer).prepare(statement)
        except Exception as e:
            self._fail(statement.statement_id, e)
            raise
        return None, prepared

    def _begin(self, statement: RoyaltyStatement) -> Optional[StatementResult]:
        content_hash = statement.content_hash()
        with self.storage.lock:
            record = self.storage.statements.get(statement.statement_id)
            if record is not None:
                if record.status == StatementStatus.PROCESSED:
                    if record.content_hash == content_hash:
                        self.logger.info("Statement %s already processed; skipping", statement.statement_id)
                        return self._idempotent_result(record)
                    raise IdempotencyConflictError(
                        "Statement was already processed with different content",
                        statement_id=statement.statement_id,
                        invariant="statement id + content hash is the idempotency key",
                    )
                if record.status == StatementStatus.PROCESSING:
                    raise IdempotencyConflictError(
                        "Statement is already being processed",
                        statement_id=statement.statement_id,
                        invariant="one processing attempt per statement at a time",
                    )
            attempts = record.attempts if record is not None else 0
            self.storage.statements[statement.statement_id] = StatementRecord(
                statement_id=statement.statement_id,
                content_hash=content_hash,
                status=StatementStatus.PROCESSING,
                attempts=attempts + 1,
            )
        return None

    def _commit(
        self,
        statement: RoyaltyStatement,
        prepared: list[PreparedShare],
        cancel_event: Optional[threading.Event] = None,
        previous: Optional[list[RoyaltyCalculation]] = None,
        restore_to: Optional[StatementRecord] = None,
    ) -> StatementResult:
        previous = previous or []
        if cancel_event is not None and cancel_event.is_set():
            error = ProcessingCancelled(
                "Cancelled before recoupment started", statement_id=statement.statement_id
            )
            self._settle_failure(statement.statement_id, error, restore_to)
            raise error

        recipients = {s.recipient_id for s in prepared} | {c.recipient_id for c in previous}
        calculated_at = self.clock()
        try:
            with self.recoupment.transaction(recipients) as tx:
                entries = []
                supersedes = {}
                for old in previous:
                    entries.extend(tx.reverse(old, calculated_at))
                    supersedes[(old.line_item_id, old.split_type, old.recipient_id)] = old.calculation_id
                results = SplitCalculator.finalize(prepared, tx, calculated_at, supersedes)
                calcs = [calc for calc, _ in results]
                for calc, recoupment in results:
                    calc_entries = AuditLog.entries_for_calculation(calc)
                    entries.extend(calc_entries[:-1])
                    entries.extend(recoupment.entries)
                    entries.append(calc_entries[-1])

                with self.storage.lock:
                    adjusted, adjustment_entries = self._correction_adjustments(previous, calcs, calculated_at)
                    entries.extend(adjustment_entries)
                    tx.commit(entries)
                    self.storage.carried_balances.update(adjusted)
                    for calc in calcs:
                        self.storage.calculations[calc.calculation_id] = calc
                    replaced = {c.supersedes_id: c.calculation_id for c in calcs if c.supersedes_id}
                    for old in previous:
                        self.storage.superseded_by[old.calculation_id] = replaced.get(old.calculation_id)
                    record = self.storage.statements[statement.statement_id]
                    self.storage.statements[statement.statement_id] = record.model_copy(update={
                        "status": StatementStatus.PROCESSED,
                        "error": None,
                        "calculation_ids": tuple(c.calculation_id for c in calcs),
                        "processed_at": calculated_at,
                    })
        except Exception as e:
            self._settle_failure(statement.statement_id, e, restore_to)
            raise

        self.logger.info(
            "Statement %s processed: %d calculation(s), payable %s %s",
            statement.statement_id,
            len(calcs),
            sum((c.payable_amount for c in calcs), Decimal("0")),
            self.settings.base_currency,
        )
        return StatementResult(
            statement_id=statement.statement_id,
            status=StatementStatus.PROCESSED,
            calculations=tuple(calcs),
            message="Statement processed successfully",
        )

    def _correction_adjustments(
        self,
        previous: list[RoyaltyCalculation],
        calcs: list[RoyaltyCalculation],
        created_at: datetime,
    ) -> tuple[dict[str, CarriedBalance], list[LedgerEntry]]:
        """Pull settled payables of dropped calculations back out of the carried balance.

        Replaced calculations are netted by the aggregator instead.
        """
        replaced = {c.supersedes_id for c in calcs if c.supersedes_id}
        adjusted: dict[str, CarriedBalance] = {}
        entries = []
        for old in previous:
            if old.calculation_id in replaced or old.calculation_id not in self.storage.settled_calculation_ids:
                continue
            carried = adjusted.get(old.recipient_id) or self.get_carried_balance(old.recipient_id)
            updated = carried.model_copy(update={"amount": carried.amount - old.payable_amount})
            adjusted[old.recipient_id] = updated
            entries.append(make_entry(
                EventType.CORRECTION_ADJUSTMENT,
                f"{old.calculation_id}:dropped",
                amount=-old.payable_amount,
                currency=old.base_currency,
                balance_after=updated.amount,
                description=f"Correction removed line {old.line_item_id}; settled payable deducted from carried balance",
                created_at=created_at,
                statement_id=old.statement_id,
                calculation_id=old.calculation_id,
                recipient_id=old.recipient_id,
            ))
        return adjusted, entries

    def _fail(self, statement_id: str, error: Exception) -> None:
        with self.storage.lock:
            record = self.storage.statements.get(statement_id)
            if record is None:
                return
            self.storage.statements[statement_id] = record.model_copy(update={
                "status": StatementStatus.FAILED,
                "error": str(error),
            })
        self.logger.warning("Statement %s failed: %s", statement_id, error)

    def _abandon(self, futures: list, run_id: str, error: Exception) -> None:
        """Mark every statement the aborted run left mid-flight as failed so it can be retried."""
        self.logger.error("Run %s aborted: %s", run_id, error)
        for statement, future in futures:
            # wait for in-flight preparation so no worker flips the record afterwards
            if future.exception() is not None:
                continue
            record = self.storage.statements.get(statement.statement_id)
            if record is not None and record.status == StatementStatus.PROCESSING:
                self._fail(statement.statement_id, RoyaltyEngineError(f"Run {run_id} aborted: {error}"))

    def _restore(self, record: StatementRecord, error: Exception) -> None:
        with self.storage.lock:
            self.storage.statements[record.statement_id] = record.model_copy(update={"error": str(error)})
        self.logger.warning("Correction of statement %s failed: %s", record.statement_id, error)

    def _settle_failure(self, statement_id: str, error: Exception, restore_to: Optional[StatementRecord]) -> None:
        if restore_to is not None:
            self._restore(restore_to, error)
        else:
            self._fail(statement_id, error)

    def _idempotent_result(self, record: StatementRecord) -> StatementResult:
        return StatementResult(
            statement_id=record.statement_id,
            status=record.status,
            calculations=tuple(self.storage.calculations[cid] for cid in record.calculation_ids),
            idempotent=True,
            message="Statement already processed (idempotent return)",
        )

    @staticmethod
    def _run_id(statements: list[RoyaltyStatement], period_start: date, period_end: date) -> str:
        digest = hashlib.sha256("|".join(s.idempotency_key for s in statements).encode("utf-8")).hexdigest()
        return f"run-{period_start.isoformat()}-{period_end.isoformat()}-{digest[:12]}"
