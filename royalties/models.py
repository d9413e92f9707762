import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid5

from pydantic import (
    BaseModel,
    Field,
    ConfigDict,
    ValidationError,
    computed_field,
    field_validator,
    model_validator,
)

from .errors import StatementValidationError


# Namespace for every deterministic id the engine derives (calculations, entries, batches).
ROYALTY_NAMESPACE = UUID("8f3c2a6e-5b1d-4c7e-9a0f-2d6b8e4c1a57")


def derive_id(*parts) -> UUID:
    return uuid5(ROYALTY_NAMESPACE, ":".join(str(p) for p in parts))


def _currency_code(value: str) -> str:
    value = value.strip().upper()
    if len(value) != 3 or not value.isalpha():
        raise ValueError(f"Invalid currency code: {value!r}")
    return value


class SplitType(str, Enum):
    MASTER = "master"
    PUBLISHING = "publishing"
    PERFORMANCE = "performance"
    MECHANICAL = "mechanical"
    SYNC = "sync"


class SubjectType(str, Enum):
    TRACK = "track"
    RELEASE = "release"


class SplitStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING_APPROVAL = "pending_approval"


class RecipientRole(str, Enum):
    ARTIST = "artist"
    PUBLISHER = "publisher"
    LABEL = "label"
    SESSION_CONTRIBUTOR = "session_contributor"
    CATALOG_OWNER = "catalog_owner"


class DeductionStep(str, Enum):
    PLATFORM_COMMISSION = "platform_commission"
    DISTRIBUTOR_COMMISSION = "distributor_commission"
    PROCESSING_FEE = "processing_fee"
    WITHHOLDING_TAX = "withholding_tax"


DEDUCTION_ORDER = (
    DeductionStep.PLATFORM_COMMISSION,
    DeductionStep.DISTRIBUTOR_COMMISSION,
    DeductionStep.PROCESSING_FEE,
    DeductionStep.WITHHOLDING_TAX,
)


class StatementStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


PAYOUT_TRANSITIONS = {
    PayoutStatus.PENDING: (PayoutStatus.PROCESSING, PayoutStatus.CANCELLED),
    PayoutStatus.PROCESSING: (PayoutStatus.COMPLETED, PayoutStatus.FAILED),
    PayoutStatus.COMPLETED: (),
    PayoutStatus.FAILED: (),
    PayoutStatus.CANCELLED: (),
}


class EventType(str, Enum):
    ADVANCE = "ADVANCE"
    CURRENCY_CONVERSION = "CURRENCY_CONVERSION"
    DEDUCTION = "DEDUCTION"
    RECOUPMENT = "RECOUPMENT"
    RECOUPMENT_REVERSAL = "RECOUPMENT_REVERSAL"
    CORRECTION_ADJUSTMENT = "CORRECTION_ADJUSTMENT"
    CALCULATION = "CALCULATION"
    PAYOUT_BATCH_CREATED = "PAYOUT_BATCH_CREATED"
    BALANCE_CARRIED_FORWARD = "BALANCE_CARRIED_FORWARD"
    PAYOUT_STATUS_CHANGED = "PAYOUT_STATUS_CHANGED"
    PAYOUT_RETURNED = "PAYOUT_RETURNED"


# --- configuration records -------------------------------------------------


class Recipient(BaseModel):
    recipient_id: str = Field(..., min_length=1)
    name: str = ""
    role: RecipientRole = RecipientRole.ARTIST
    jurisdiction: Optional[str] = Field(default=None, description="ISO country code used for withholding")
    payout_currency: str = "USD"
    minimum_payout_threshold: Decimal = Field(default=Decimal("50.00"), ge=0)

    model_config = ConfigDict(frozen=True, from_attributes=True)

    @field_validator("payout_currency")
    @classmethod
    def _payout_currency(cls, value: str) -> str:
        return _currency_code(value)

    @field_validator("jurisdiction")
    @classmethod
    def _jurisdiction(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().upper() if value else None


class Split(BaseModel):
    split_id: str = Field(..., min_length=1)
    subject_id: str = Field(..., min_length=1)
    subject_type: SubjectType = SubjectType.TRACK
    split_type: SplitType
    recipient_id: str = Field(..., min_length=1)
    percentage: Decimal = Field(..., ge=0, le=100)
    effective_from: date
    effective_to: Optional[date] = None
    status: SplitStatus = SplitStatus.ACTIVE
    territories: frozenset[str] = Field(default_factory=frozenset, description="Empty means worldwide")
    role: Optional[str] = None

    model_config = ConfigDict(frozen=True, from_attributes=True)

    @field_validator("territories")
    @classmethod
    def _territories(cls, value: frozenset[str]) -> frozenset[str]:
        return frozenset(t.strip().upper() for t in value)

    @model_validator(mode="after")
    def _check_interval(self) -> "Split":
        if self.effective_to is not None and self.effective_to <= self.effective_from:
            raise ValueError("effective_to must be after effective_from")
        return self

    def is_effective_on(self, on_date: date) -> bool:
        if on_date < self.effective_from:
            return False
        return self.effective_to is None or on_date < self.effective_to

    def applies_to_territory(self, territory: Optional[str]) -> bool:
        if not self.territories or territory is None:
            return True
        return territory.upper() in self.territories


class RecoupmentAccount(BaseModel):
    recipient_id: str = Field(..., min_length=1)
    pool_id: str = Field(..., min_length=1)
    description: str = ""
    outstanding_balance: Decimal = Field(..., ge=0)
    recoupment_rate: Decimal = Field(..., ge=0, le=1)
    priority_order: int = Field(default=1, ge=0)
    currency: str = "USD"
    effective_from: Optional[date] = None
    created_at: datetime

    model_config = ConfigDict(frozen=True, from_attributes=True)

    @field_validator("currency")
    @classmethod
    def _currency(cls, value: str) -> str:
        return _currency_code(value)

    @property
    def key(self) -> tuple[str, str]:
        return (self.recipient_id, self.pool_id)

    @property
    def is_blocking(self) -> bool:
        return self.priority_order == 0

    def applies_on(self, usage_date: date) -> bool:
        return self.effective_from is None or usage_date >= self.effective_from


# --- statements -------------------------------------------------------------


class StatementLineItem(BaseModel):
    line_item_id: str = Field(..., min_length=1)
    track_ref: str = Field(..., min_length=1)
    release_ref: Optional[str] = None
    territory: str = Field(..., min_length=2, max_length=3)
    units: int = Field(default=0, ge=0)
    gross_amount: Decimal
    split_type: Optional[SplitType] = None
    usage_date: Optional[date] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("territory")
    @classmethod
    def _territory(cls, value: str) -> str:
        return value.strip().upper()


class RoyaltyStatement(BaseModel):
    statement_id: str = Field(..., min_length=1)
    platform: str = Field(..., min_length=1)
    period_start: date
    period_end: date
    currency: str
    line_items: tuple[StatementLineItem, ...] = Field(..., min_length=1)

    model_config = ConfigDict(frozen=True)

    @field_validator("currency")
    @classmethod
    def _currency(cls, value: str) -> str:
        return _currency_code(value)

    @model_validator(mode="after")
    def _check_statement(self) -> "RoyaltyStatement":
        if self.period_end < self.period_start:
            raise ValueError("period_end precedes period_start")
        seen = set()
        for item in self.line_items:
            if item.line_item_id in seen:
                raise ValueError(f"Duplicate line item id {item.line_item_id!r}")
            seen.add(item.line_item_id)
        return self

    @property
    def statement_date(self) -> date:
        return self.period_end

    def usage_date_for(self, item: StatementLineItem) -> date:
        return item.usage_date or self.period_end

    def content_hash(self) -> str:
        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    @property
    def idempotency_key(self) -> str:
        return f"{self.statement_id}:{self.content_hash()}"

    @classmethod
    def from_rows(cls, statement_id: str, rows: list[dict]) -> "RoyaltyStatement":
        """Build a statement from flattened ingestion rows.

        Every row carries the statement header fields (platform, period, currency);
        rows that disagree on them make the statement malformed.
        """
        if not rows:
            raise StatementValidationError(
                "Statement has no line items", statement_id=statement_id, invariant="non-empty statement"
            )
        header_fields = ("platform", "period_start", "period_end", "currency")
        header = {name: rows[0].get(name) for name in header_fields}
        items = []
        for index, row in enumerate(rows):
            line_item_id = str(row.get("line_item_id") or index + 1)
            for name in header_fields:
                if str(row.get(name)) != str(header[name]):
                    raise StatementValidationError(
                        f"{name} differs from the statement header ({row.get(name)!r} != {header[name]!r})",
                        statement_id=statement_id,
                        line_item_id=line_item_id,
                        invariant="single platform, period and currency per statement",
                    )
            try:
                items.append(StatementLineItem(
                    line_item_id=line_item_id,
                    track_ref=row.get("track_ref"),
                    release_ref=row.get("release_ref"),
                    territory=row.get("territory"),
                    units=row.get("units", 0),
                    gross_amount=row.get("gross_amount"),
                    split_type=row.get("split_type"),
                    usage_date=row.get("usage_date"),
                ))
            except ValidationError as e:
                raise StatementValidationError(
                    f"Malformed line item: {e.errors()[0]['msg']}",
                    statement_id=statement_id,
                    line_item_id=line_item_id,
                    invariant="well-formed line item",
                ) from e
        try:
            return cls(statement_id=statement_id, line_items=tuple(items), **header)
        except ValidationError as e:
            raise StatementValidationError(
                f"Malformed statement: {e.errors()[0]['msg']}",
                statement_id=statement_id,
                invariant="well-formed statement",
            ) from e


class StatementRecord(BaseModel):
    statement_id: str
    content_hash: str
    status: StatementStatus = StatementStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None
    calculation_ids: tuple[UUID, ...] = ()
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# --- currency ---------------------------------------------------------------


class ExchangeRate(BaseModel):
    source_currency: str
    target_currency: str
    rate: Decimal = Field(..., gt=0)
    effective_date: date
    source: str = "snapshot"

    model_config = ConfigDict(frozen=True)

    @field_validator("source_currency", "target_currency")
    @classmethod
    def _currency(cls, value: str) -> str:
        return _currency_code(value)


class Conversion(BaseModel):
    amount: Decimal
    currency: str
    original_amount: Decimal
    original_currency: str
    rate: Decimal
    rate_date: date
    rate_source: str

    model_config = ConfigDict(frozen=True)


# --- deductions -------------------------------------------------------------


class DeductionRate(BaseModel):
    step: DeductionStep
    rate: Decimal = Field(default=Decimal("0"), ge=0, le=1)
    flat_amount: Optional[Decimal] = Field(default=None, ge=0)
    rule_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _rate_or_flat(self) -> "DeductionRate":
        if self.flat_amount is not None and self.rate != 0:
            raise ValueError("set either rate or flat_amount, not both")
        return self


class DeductionSchedule(BaseModel):
    rates: tuple[DeductionRate, ...] = ()

    model_config = ConfigDict(frozen=True)

    def for_step(self, step: DeductionStep) -> DeductionRate:
        for rate in self.rates:
            if rate.step == step:
                return rate
        return DeductionRate(step=step)


class DeductionLine(BaseModel):
    step: DeductionStep
    basis_amount: Decimal
    rate: Decimal
    flat_amount: Optional[Decimal] = None
    amount: Decimal
    rule_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


# --- outputs ----------------------------------------------------------------


class PoolWithholding(BaseModel):
    pool_id: str
    priority_order: int
    withheld: Decimal
    balance_before: Decimal
    balance_after: Decimal

    model_config = ConfigDict(frozen=True)


class RoyaltyCalculation(BaseModel):
    calculation_id: UUID
    statement_id: str
    line_item_id: str
    track_ref: str
    territory: str
    recipient_id: str
    split_type: SplitType
    split_percentage: Decimal
    source_currency: str
    source_amount: Decimal
    gross_share: Decimal
    deductions: tuple[DeductionLine, ...]
    net_share: Decimal
    recoupments: tuple[PoolWithholding, ...] = ()
    recouped_amount: Decimal
    payable_amount: Decimal
    base_currency: str
    exchange_rate_used: Decimal
    rate_date: date
    rate_source: str
    calculated_at: datetime
    supersedes_id: Optional[UUID] = None

    model_config = ConfigDict(frozen=True, from_attributes=True)

    @computed_field
    @property
    def base_currency_amount(self) -> Decimal:
        return self.gross_share

    @property
    def total_deductions(self) -> Decimal:
        return sum((d.amount for d in self.deductions), Decimal("0"))

    def is_conserved(self) -> bool:
        return self.gross_share == self.total_deductions + self.recouped_amount + self.payable_amount


class CarriedBalance(BaseModel):
    recipient_id: str
    amount: Decimal = Decimal("0")
    currency: str = "USD"
    calculation_ids: tuple[UUID, ...] = ()

    model_config = ConfigDict(frozen=True)


class PayoutBatch(BaseModel):
    batch_id: UUID
    run_id: str
    recipient_id: str
    period_start: date
    period_end: date
    total_payable: Decimal
    currency: str
    base_currency_total: Decimal
    exchange_rate_used: Decimal
    constituent_calculation_ids: tuple[UUID, ...]
    status: PayoutStatus = PayoutStatus.PENDING
    created_at: datetime

    model_config = ConfigDict(frozen=True, from_attributes=True)

    def can_transition(self, status: PayoutStatus) -> bool:
        return status in PAYOUT_TRANSITIONS[self.status]


class LedgerEntry(BaseModel):
    entry_id: UUID
    sequence: int = 0
    event_type: EventType
    idempotency_key: str
    statement_id: Optional[str] = None
    calculation_id: Optional[UUID] = None
    recipient_id: Optional[str] = None
    pool_id: Optional[str] = None
    batch_id: Optional[UUID] = None
    amount: Decimal
    currency: str
    balance_after: Optional[Decimal] = None
    description: str
    created_at: datetime
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, from_attributes=True)
