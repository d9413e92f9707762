"""
Royalty Calculation and Distribution Engine

This module provides:
- Currency normalization against immutable rate snapshots
- Split resolution per subject, rights category and usage date
- Ordered net-of-net deduction pipeline
- Multi-pool recoupment of advances, serialized per recipient
- Payout aggregation with minimum thresholds and carried balances
- Append-only, replayable audit ledger
"""

from .models import (
    SplitType,
    DeductionStep,
    EventType,
    PayoutStatus,
    StatementStatus,
    Recipient,
    Split,
    RecoupmentAccount,
    StatementLineItem,
    RoyaltyStatement,
    ExchangeRate,
    RoyaltyCalculation,
    PayoutBatch,
    CarriedBalance,
    LedgerEntry,
)
from .config import EngineSettings
from .currency import CurrencyNormalizer, StaticRateProvider
from .errors import (
    RoyaltyEngineError,
    StatementValidationError,
    SplitConfigurationError,
    RateUnavailable,
    RecoupmentInvariantError,
    IdempotencyConflictError,
)
from .service import RoyaltyService, RunResult, StatementResult

__all__ = [
    "SplitType",
    "DeductionStep",
    "EventType",
    "PayoutStatus",
    "StatementStatus",
    "Recipient",
    "Split",
    "RecoupmentAccount",
    "StatementLineItem",
    "RoyaltyStatement",
    "ExchangeRate",
    "RoyaltyCalculation",
    "PayoutBatch",
    "CarriedBalance",
    "LedgerEntry",
    "EngineSettings",
    "CurrencyNormalizer",
    "StaticRateProvider",
    "RoyaltyEngineError",
    "StatementValidationError",
    "SplitConfigurationError",
    "RateUnavailable",
    "RecoupmentInvariantError",
    "IdempotencyConflictError",
    "RoyaltyService",
    "RunResult",
    "StatementResult",
]
