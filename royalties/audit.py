"""
Append-only audit ledger.

Every monetary transformation (conversion, deduction, recoupment, calculation,
payout, carry-forward) is written here exactly once, keyed by an idempotency
key. Entries are never updated or removed; replaying the same inputs must
produce the same ``fingerprint()``.
"""

import hashlib
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from .models import EventType, LedgerEntry, RoyaltyCalculation, derive_id
from .storage import InMemoryStorage


def make_entry(
    event_type: EventType,
    idempotency_key: str,
    *,
    amount: Decimal,
    currency: str,
    description: str,
    created_at: datetime,
    **fields,
) -> LedgerEntry:
    return LedgerEntry(
        entry_id=derive_id("ledger", idempotency_key),
        event_type=event_type,
        idempotency_key=idempotency_key,
        amount=amount,
        currency=currency,
        description=description,
        created_at=created_at,
        **fields,
    )


class AuditLog:
    def __init__(self, storage: InMemoryStorage, logger: Optional[logging.Logger] = None):
        self.storage = storage
        self.logger = logger or logging.getLogger(__name__)

    def append(self, entries: Iterable[LedgerEntry]) -> list[LedgerEntry]:
        """Append entries, returning the stored versions.

        An entry whose idempotency key is already present is not written again;
        the stored entry is returned in its place.
        """
        stored = []
        with self.storage.lock:
            for entry in entries:
                position = self.storage.idempotency_index.get(entry.idempotency_key)
                if position is not None:
                    stored.append(self.storage.ledger_entries[position])
                    continue
                position = len(self.storage.ledger_entries)
                entry = entry.model_copy(update={"sequence": position + 1})
                self.storage.ledger_entries.append(entry)
                self.storage.idempotency_index[entry.idempotency_key] = position
                stored.append(entry)
        return stored

    def history(
        self,
        recipient_id: Optional[str] = None,
        statement_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[LedgerEntry]:
        with self.storage.lock:
            entries = list(self.storage.ledger_entries)
        if recipient_id is not None:
            entries = [e for e in entries if e.recipient_id == recipient_id]
        if statement_id is not None:
            entries = [e for e in entries if e.statement_id == statement_id]
        if event_type is not None:
            entries = [e for e in entries if e.event_type == event_type]
        end = offset + limit if limit is not None else None
        return entries[offset:end]

    def fingerprint(self) -> str:
        digest = hashlib.sha256()
        with self.storage.lock:
            for entry in self.storage.ledger_entries:
                digest.update(json.dumps(entry.model_dump(mode="json"), sort_keys=True).encode("utf-8"))
        return digest.hexdigest()

    @staticmethod
    def entries_for_calculation(calc: RoyaltyCalculation) -> list[LedgerEntry]:
        """Conversion, per-step deduction and calculation entries for one calculation.

        Recoupment entries are staged by the recoupment transaction, which knows
        the pool balances.
        """
        key = str(calc.calculation_id)
        common = dict(
            statement_id=calc.statement_id,
            calculation_id=calc.calculation_id,
            recipient_id=calc.recipient_id,
            created_at=calc.calculated_at,
        )
        entries = [
            make_entry(
                EventType.CURRENCY_CONVERSION,
                f"{key}:conversion",
                amount=calc.gross_share,
                currency=calc.base_currency,
                description=(
                    f"Converted {calc.source_amount} {calc.source_currency} at {calc.exchange_rate_used} "
                    f"({calc.rate_source}, {calc.rate_date})"
                ),
                metadata={
                    "source_amount": str(calc.source_amount),
                    "source_currency": calc.source_currency,
                    "rate": str(calc.exchange_rate_used),
                    "rate_date": calc.rate_date.isoformat(),
                    "rate_source": calc.rate_source,
                },
                **common,
            )
        ]
        for line in calc.deductions:
            entries.append(make_entry(
                EventType.DEDUCTION,
                f"{key}:deduction:{line.step.value}",
                amount=-line.amount,
                currency=calc.base_currency,
                description=f"{line.step.value} on {line.basis_amount}",
                metadata={
                    "step": line.step.value,
                    "basis_amount": str(line.basis_amount),
                    "rate": str(line.rate),
                    "flat_amount": str(line.flat_amount) if line.flat_amount is not None else None,
                    "rule_id": line.rule_id,
                },
                **common,
            ))
        entries.append(make_entry(
            EventType.CALCULATION,
            f"{key}:calculation",
            amount=calc.payable_amount,
            currency=calc.base_currency,
            description=(
                f"{calc.split_type.value} {calc.split_percentage}% of line {calc.line_item_id}: "
                f"gross {calc.gross_share}, net {calc.net_share}, recouped {calc.recouped_amount}"
            ),
            metadata={
                "gross_share": str(calc.gross_share),
                "net_share": str(calc.net_share),
                "recouped_amount": str(calc.recouped_amount),
                "supersedes_id": str(calc.supersedes_id) if calc.supersedes_id else None,
            },
            **common,
        ))
        return entries
