"""
Unit Tests for the Royalty Service

Tests cover:
1. End-to-end calculation of a statement
2. Idempotency (duplicate prevention)
3. Atomic failure of a statement
4. Corrections and supersession
5. Processing runs and deterministic replay
"""

import pytest
import threading
from datetime import date, datetime, timezone
from decimal import Decimal

from royalties.config import EngineSettings
from royalties.currency import StaticRateProvider
from royalties.errors import (
    IdempotencyConflictError,
    NotFoundError,
    ProcessingCancelled,
    RateUnavailable,
    SplitConfigurationError,
    StatementValidationError,
)
from royalties.models import (
    EventType,
    ExchangeRate,
    Recipient,
    RoyaltyStatement,
    Split,
    SplitType,
    StatementLineItem,
    StatementStatus,
)
from royalties.service import RoyaltyService
from rules.rule_engine import Condition, ConditionOperator, RateRule, RateRuleEngine


# Test constants
ARTIST = "artist-1"
PRODUCER = "producer-1"
TRACK = "ISRC-USRC12400001"
OTHER_TRACK = "ISRC-USRC12400002"
PERIOD_START = date(2024, 1, 1)
PERIOD_END = date(2024, 3, 31)
FIXED_NOW = datetime(2024, 4, 5, 12, 0, tzinfo=timezone.utc)


def make_service(**kwargs):
    kwargs.setdefault("clock", lambda: FIXED_NOW)
    kwargs.setdefault("sleep", lambda seconds: None)
    service = RoyaltyService(**kwargs)
    service.add_recipient(Recipient(recipient_id=ARTIST, name="Artist", jurisdiction="US"))
    service.add_recipient(Recipient(recipient_id=PRODUCER, name="Producer", jurisdiction="DE"))
    return service


def make_split(split_id, recipient_id, percentage, subject_id=TRACK):
    return Split(
        split_id=split_id,
        subject_id=subject_id,
        split_type=SplitType.MASTER,
        recipient_id=recipient_id,
        percentage=Decimal(percentage),
        effective_from=PERIOD_START,
    )


def make_statement(statement_id="stmt-001", lines=None, currency="USD", platform="spotify"):
    lines = lines or [("line-1", TRACK, "1000.00")]
    return RoyaltyStatement(
        statement_id=statement_id,
        platform=platform,
        period_start=PERIOD_START,
        period_end=PERIOD_END,
        currency=currency,
        line_items=tuple(
            StatementLineItem(line_item_id=line_id, track_ref=track, territory="US", units=100, gross_amount=Decimal(amount))
            for line_id, track, amount in lines
        ),
    )


def spotify_rules():
    return RateRuleEngine([
        RateRule(
            id="spotify-commission", step="platform_commission", rate=Decimal("0.25"),
            conditions=Condition(field="platform", operator=ConditionOperator.EQUALS, value="spotify"),
        ),
        RateRule(id="withholding-flat", step="withholding_tax", flat_amount=Decimal("50")),
    ])


class TestStatementProcessing:
    """Tests for calculating a single statement."""

    def test_deductions_then_recoupment(self):
        """$1000 gross, 25% commission and $50 tax leave $700; half goes to the $500 advance."""
        service = make_service(rate_rules=spotify_rules())
        service.add_splits([make_split("s1", ARTIST, "100")])
        service.open_recoupment_account(ARTIST, "advance-2024", Decimal("500.00"), Decimal("0.5"))

        result = service.process_statement(make_statement())

        assert result.status == StatementStatus.PROCESSED
        assert len(result.calculations) == 1
        calc = result.calculations[0]
        assert calc.gross_share == Decimal("1000.00")
        assert [line.amount for line in calc.deductions] == [
            Decimal("250.00"), Decimal("0.00"), Decimal("0.00"), Decimal("50.00"),
        ]
        assert calc.net_share == Decimal("700.00")
        assert calc.recouped_amount == Decimal("350.00")
        assert calc.payable_amount == Decimal("350.00")
        assert service.get_accounts(ARTIST)[0].outstanding_balance == Decimal("150.00")

        events = [e.event_type for e in service.audit.history(statement_id="stmt-001")]
        assert events == [
            EventType.CURRENCY_CONVERSION,
            EventType.DEDUCTION,
            EventType.DEDUCTION,
            EventType.DEDUCTION,
            EventType.DEDUCTION,
            EventType.RECOUPMENT,
            EventType.CALCULATION,
        ]

    def test_shares_are_conserved(self):
        """Odd splits, conversion and deductions never create or lose a cent."""
        provider = StaticRateProvider([ExchangeRate(
            source_currency="EUR", target_currency="USD", rate=Decimal("1.0873"), effective_date=PERIOD_START,
        )])
        rules = RateRuleEngine([
            RateRule(id="commission", step="platform_commission", rate=Decimal("0.15")),
            RateRule(
                id="wht-de", step="withholding_tax", rate=Decimal("0.1583"),
                conditions=Condition(field="recipient.jurisdiction", operator=ConditionOperator.EQUALS, value="DE"),
            ),
        ])
        service = make_service(rate_provider=provider, rate_rules=rules)
        service.add_splits([
            make_split("s1", ARTIST, "33.33"),
            make_split("s2", PRODUCER, "33.33"),
        ])
        service.open_recoupment_account(PRODUCER, "advance", Decimal("7.77"), Decimal("0.35"))

        result = service.process_statement(make_statement(
            currency="EUR",
            lines=[("line-1", TRACK, "100.01"), ("line-2", TRACK, "0.07"), ("line-3", TRACK, "-3.33")],
        ))

        assert len(result.calculations) == 6
        for calc in result.calculations:
            assert calc.is_conserved()
            assert calc.gross_share == calc.total_deductions + calc.recouped_amount + calc.payable_amount
            assert calc.base_currency == "USD"
            assert calc.exchange_rate_used == Decimal("1.0873")
            assert calc.gross_share.as_tuple().exponent == -2

    def test_unsplit_track_goes_to_catalog_owner(self):
        """Revenue for a track without splits is attributed to the catalog owner."""
        service = make_service()

        result = service.process_statement(make_statement(lines=[("line-1", OTHER_TRACK, "20.00")]))

        calc = result.calculations[0]
        assert calc.recipient_id == "catalog-owner"
        assert calc.split_percentage == Decimal("100")
        assert calc.payable_amount == Decimal("20.00")

    def test_unknown_recipient_rejected(self):
        """Splits must point at configured recipients."""
        service = make_service()
        service.add_splits([make_split("s1", "ghost", "50")])

        with pytest.raises(StatementValidationError) as exc_info:
            service.process_statement(make_statement())

        assert "ghost" in str(exc_info.value)
        assert service.get_statement("stmt-001").status == StatementStatus.FAILED


class TestIdempotency:
    """Tests for duplicate statement submission."""

    def test_reprocessing_is_a_no_op(self):
        """The same statement twice yields the same calculations and no new entries."""
        service = make_service(rate_rules=spotify_rules())
        service.add_splits([make_split("s1", ARTIST, "100")])
        service.open_recoupment_account(ARTIST, "advance-2024", Decimal("500.00"), Decimal("0.5"))

        first = service.process_statement(make_statement())
        entries_after_first = len(service.storage.ledger_entries)
        second = service.process_statement(make_statement())

        assert second.idempotent is True
        assert second.calculations == first.calculations
        assert len(service.storage.ledger_entries) == entries_after_first
        assert service.get_accounts(ARTIST)[0].outstanding_balance == Decimal("150.00")
        assert service.get_statement("stmt-001").attempts == 1

    def test_changed_content_conflicts(self):
        """Re-using a statement id for different content is refused."""
        service = make_service()
        service.add_splits([make_split("s1", ARTIST, "100")])
        service.process_statement(make_statement())

        with pytest.raises(IdempotencyConflictError):
            service.process_statement(make_statement(lines=[("line-1", TRACK, "999.00")]))

    def test_calculation_ids_are_deterministic(self):
        """Two services derive identical calculation ids for identical input."""
        first = make_service()
        second = make_service()
        for service in (first, second):
            service.add_splits([make_split("s1", ARTIST, "100")])

        a = first.process_statement(make_statement()).calculations
        b = second.process_statement(make_statement()).calculations

        assert [c.calculation_id for c in a] == [c.calculation_id for c in b]


class TestAtomicity:
    """A failing statement commits nothing."""

    def test_split_error_rolls_back_whole_statement(self):
        """A bad line leaves pools, calculations and ledger untouched."""
        service = make_service()
        service.add_splits([
            make_split("s1", ARTIST, "100"),
            make_split("s2", ARTIST, "70", subject_id=OTHER_TRACK),
            make_split("s3", PRODUCER, "40", subject_id=OTHER_TRACK),
        ])
        service.open_recoupment_account(ARTIST, "advance", Decimal("500.00"), Decimal("0.5"))
        entries_before = len(service.storage.ledger_entries)
        statement = make_statement(lines=[("line-1", TRACK, "100.00"), ("line-2", OTHER_TRACK, "50.00")])

        with pytest.raises(SplitConfigurationError) as exc_info:
            service.process_statement(statement)

        assert exc_info.value.statement_id == "stmt-001"
        assert exc_info.value.line_item_id == "line-2"
        assert service.get_calculations() == []
        assert service.get_accounts(ARTIST)[0].outstanding_balance == Decimal("500.00")
        assert len(service.storage.ledger_entries) == entries_before
        record = service.get_statement("stmt-001")
        assert record.status == StatementStatus.FAILED
        assert "line-2" in record.error

    def test_failed_statement_can_be_retried(self):
        """Fixing the configuration lets the same statement through."""
        service = make_service()
        service.add_splits([
            make_split("s2", ARTIST, "70", subject_id=OTHER_TRACK),
            make_split("s3", PRODUCER, "40", subject_id=OTHER_TRACK),
        ])
        statement = make_statement(lines=[("line-1", OTHER_TRACK, "50.00")])
        with pytest.raises(SplitConfigurationError):
            service.process_statement(statement)

        service.add_splits([make_split("s3", PRODUCER, "30", subject_id=OTHER_TRACK)])
        result = service.process_statement(statement)

        assert result.status == StatementStatus.PROCESSED
        assert sorted(c.payable_amount for c in result.calculations) == [Decimal("15.00"), Decimal("35.00")]
        assert service.get_statement("stmt-001").attempts == 2

    def test_missing_rate_fails_statement(self):
        """A foreign-currency statement without a rate is not partially applied."""
        provider = StaticRateProvider()
        service = make_service(rate_provider=provider)
        service.add_splits([make_split("s1", ARTIST, "100")])

        with pytest.raises(RateUnavailable):
            service.process_statement(make_statement(currency="GBP"))
        assert service.get_calculations() == []

        provider.add(ExchangeRate(
            source_currency="GBP", target_currency="USD", rate=Decimal("1.25"), effective_date=PERIOD_END,
        ))
        result = service.process_statement(make_statement(currency="GBP"))

        assert result.calculations[0].gross_share == Decimal("1250.00")
        assert result.calculations[0].source_amount == Decimal("1000.00")

    def test_cancelled_before_recoupment(self):
        """Cancellation leaves no recoupment or calculation behind."""
        service = make_service()
        service.add_splits([make_split("s1", ARTIST, "100")])
        service.open_recoupment_account(ARTIST, "advance", Decimal("500.00"), Decimal("0.5"))
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(ProcessingCancelled):
            service.process_statement(make_statement(), cancel_event=cancel)

        assert service.get_accounts(ARTIST)[0].outstanding_balance == Decimal("500.00")
        assert service.audit.history(event_type=EventType.CALCULATION) == []
        assert service.get_statement("stmt-001").status == StatementStatus.FAILED


class TestCorrections:
    """Tests for superseding a processed statement."""

    def test_correction_reverses_and_reapplies_recoupment(self):
        """Recoupment drawn by the old version goes back to the pool first."""
        service = make_service()
        service.add_splits([make_split("s1", ARTIST, "100")])
        service.open_recoupment_account(ARTIST, "advance", Decimal("500.00"), Decimal("0.5"))
        original = service.process_statement(make_statement()).calculations[0]
        assert service.get_accounts(ARTIST)[0].outstanding_balance == Decimal("0.00")

        corrected = service.process_correction(make_statement(lines=[("line-1", TRACK, "600.00")]))

        calc = corrected.calculations[0]
        assert calc.supersedes_id == original.calculation_id
        assert calc.recouped_amount == Decimal("300.00")
        assert calc.payable_amount == Decimal("300.00")
        assert service.get_accounts(ARTIST)[0].outstanding_balance == Decimal("200.00")
        assert service.get_calculations(statement_id="stmt-001") == [calc]
        assert len(service.get_calculations(statement_id="stmt-001", include_superseded=True)) == 2
        reversals = service.audit.history(event_type=EventType.RECOUPMENT_REVERSAL)
        assert [e.amount for e in reversals] == [Decimal("500.00")]

    def test_correction_of_unknown_statement(self):
        """Only processed statements can be corrected."""
        service = make_service()

        with pytest.raises(NotFoundError):
            service.process_correction(make_statement())

    def test_settled_calculation_is_netted(self):
        """Correcting an already paid statement claws back the difference."""
        service = make_service()
        service.add_splits([make_split("s1", ARTIST, "100")])
        run = service.process_run([make_statement()], PERIOD_START, PERIOD_END)
        assert run.batches[0].total_payable == Decimal("1000.00")

        service.process_correction(make_statement(lines=[("line-1", TRACK, "600.00")]))
        aggregation = service.aggregate_payouts("run-correction", PERIOD_START, PERIOD_END)

        assert aggregation.batches == ()
        assert service.get_carried_balance(ARTIST).amount == Decimal("-400.00")


class TestProcessRun:
    """Tests for processing runs."""

    def test_failing_statement_does_not_block_others(self):
        """A bad statement is reported; the rest are paid."""
        service = make_service()
        service.add_splits([
            make_split("s1", ARTIST, "100"),
            make_split("s2", ARTIST, "70", subject_id=OTHER_TRACK),
            make_split("s3", PRODUCER, "40", subject_id=OTHER_TRACK),
        ])
        good = make_statement("stmt-good")
        bad = make_statement("stmt-bad", lines=[("line-1", OTHER_TRACK, "10.00")])

        run = service.process_run([bad, good], PERIOD_START, PERIOD_END)

        assert list(run.failures) == ["stmt-bad"]
        assert [b.recipient_id for b in run.batches] == [ARTIST]
        assert run.batches[0].total_payable == Decimal("1000.00")
        statuses = {r.statement_id: r.status for r in run.statements}
        assert statuses == {"stmt-bad": StatementStatus.FAILED, "stmt-good": StatementStatus.PROCESSED}

    def test_duplicate_statements_counted_once(self):
        """The same statement submitted twice in a run is processed once."""
        service = make_service()
        service.add_splits([make_split("s1", ARTIST, "100")])

        run = service.process_run([make_statement(), make_statement()], PERIOD_START, PERIOD_END)

        assert len(run.statements) == 1
        assert run.batches[0].total_payable == Decimal("1000.00")

    def test_two_versions_of_a_statement_refused(self):
        """A run holding conflicting content for one statement id processes nothing."""
        service = make_service()
        service.add_splits([make_split("s1", ARTIST, "100")])
        revised = make_statement(lines=[("line-1", TRACK, "999.00")])

        with pytest.raises(IdempotencyConflictError) as exc_info:
            service.process_run([make_statement(), revised], PERIOD_START, PERIOD_END)

        assert exc_info.value.statement_id == "stmt-001"
        assert service.storage.statements == {}
        assert service.get_calculations() == []

    def test_replay_reproduces_ledger(self):
        """Same inputs, rates and clock give a byte-identical ledger."""
        def build(provider):
            service = make_service(rate_provider=provider, rate_rules=spotify_rules())
            service.add_splits([make_split("s1", ARTIST, "60"), make_split("s2", PRODUCER, "40")])
            service.open_recoupment_account(PRODUCER, "advance", Decimal("120.00"), Decimal("0.4"))
            return service

        statements = [
            make_statement("stmt-eur", currency="EUR", lines=[("l1", TRACK, "431.17"), ("l2", TRACK, "12.05")]),
            make_statement("stmt-usd", lines=[("l1", TRACK, "999.99")]),
        ]
        live = build(StaticRateProvider([ExchangeRate(
            source_currency="EUR", target_currency="USD", rate=Decimal("1.0921"), effective_date=PERIOD_START,
        )]))
        first = live.process_run(statements, PERIOD_START, PERIOD_END)

        replay = build(StaticRateProvider(first.rates))
        second = replay.process_run(list(reversed(statements)), PERIOD_START, PERIOD_END)

        assert first.run_id == second.run_id
        assert live.audit.fingerprint() == replay.audit.fingerprint()
        assert first.batches == second.batches


class TestStatementIngestion:
    """Tests for building statements from flattened rows."""

    def rows(self):
        header = {"platform": "spotify", "period_start": "2024-01-01", "period_end": "2024-03-31", "currency": "EUR"}
        return [
            {**header, "line_item_id": "1", "track_ref": TRACK, "territory": "de", "units": 10, "gross_amount": "12.50"},
            {**header, "line_item_id": "2", "track_ref": OTHER_TRACK, "territory": "FR", "units": 3, "gross_amount": "3.10"},
        ]

    def test_from_rows(self):
        """Rows sharing a header become one statement."""
        statement = RoyaltyStatement.from_rows("stmt-rows", self.rows())

        assert statement.currency == "EUR"
        assert statement.period_end == PERIOD_END
        assert [i.territory for i in statement.line_items] == ["DE", "FR"]
        assert statement.line_items[0].gross_amount == Decimal("12.50")

    def test_mixed_currency_rejected(self):
        """A statement has exactly one currency."""
        rows = self.rows()
        rows[1]["currency"] = "USD"

        with pytest.raises(StatementValidationError) as exc_info:
            RoyaltyStatement.from_rows("stmt-rows", rows)

        assert exc_info.value.line_item_id == "2"

    def test_malformed_row_rejected(self):
        """Rows missing required fields name the offending line."""
        rows = self.rows()
        del rows[0]["track_ref"]

        with pytest.raises(StatementValidationError) as exc_info:
            RoyaltyStatement.from_rows("stmt-rows", rows)

        assert exc_info.value.statement_id == "stmt-rows"
        assert exc_info.value.line_item_id == "1"


class TestSettings:
    """Tests for environment configuration."""

    def test_from_env(self, monkeypatch):
        """ROYALTY_* variables override defaults."""
        monkeypatch.setenv("ROYALTY_BASE_CURRENCY", "eur")
        monkeypatch.setenv("ROYALTY_DEFAULT_MINIMUM_PAYOUT", "25.00")
        monkeypatch.setenv("ROYALTY_MAX_WORKERS", "2")

        settings = EngineSettings.from_env()

        assert settings.base_currency == "EUR"
        assert settings.default_minimum_payout == Decimal("25.00")
        assert settings.max_workers == 2
        assert settings.rate_fetch_max_attempts == 3


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
