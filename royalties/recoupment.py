"""
Recoupment of advances against recipients' net shares.

Balances live in per-recipient pools. All mutation goes through a
``RecoupmentTransaction``, which holds the per-recipient locks, works on a
private copy of the pools and only touches storage on ``commit()``. A
transaction left without commit changes nothing.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, Iterator, Optional
from uuid import UUID, uuid4

from .audit import AuditLog, make_entry
from .currency import round_money
from .errors import NotFoundError, RecoupmentInvariantError, StatementValidationError
from .models import EventType, LedgerEntry, PoolWithholding, RecoupmentAccount, RoyaltyCalculation
from .storage import InMemoryStorage


ZERO = Decimal("0")


@dataclass(frozen=True)
class RecoupmentResult:
    recipient_id: str
    net_share: Decimal
    payable_amount: Decimal
    withholdings: tuple[PoolWithholding, ...] = ()
    entries: tuple[LedgerEntry, ...] = field(default=(), compare=False)

    @property
    def recouped_amount(self) -> Decimal:
        return sum((w.withheld for w in self.withholdings), ZERO)


class RecoupmentTransaction:
    def __init__(self, ledger: "RecoupmentLedger", recipient_ids: Iterable[str]):
        self._ledger = ledger
        self.recipient_ids = frozenset(recipient_ids)
        self._accounts: dict[tuple[str, str], RecoupmentAccount] = {}
        for recipient_id in self.recipient_ids:
            for account in ledger.storage.accounts_for(recipient_id):
                self._accounts[account.key] = account
        self._touched: set[tuple[str, str]] = set()
        self.staged_entries: list[LedgerEntry] = []
        self.committed = False

    def open_accounts(self, recipient_id: str, usage_date: date) -> list[RecoupmentAccount]:
        accounts = [
            a for a in self._accounts.values()
            if a.recipient_id == recipient_id and a.outstanding_balance > ZERO and a.applies_on(usage_date)
        ]
        accounts.sort(key=lambda a: (a.priority_order, a.created_at, a.pool_id))
        return accounts

    def balance(self, recipient_id: str, pool_id: str) -> Decimal:
        account = self._accounts.get((recipient_id, pool_id))
        if account is None:
            raise NotFoundError(f"Recoupment pool {pool_id} not found for {recipient_id}")
        return account.outstanding_balance

    def apply(
        self,
        recipient_id: str,
        net_share: Decimal,
        usage_date: date,
        *,
        calculation_id: Optional[UUID] = None,
        statement_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> RecoupmentResult:
        self._check_open(recipient_id)
        currency = self._ledger.base_currency
        created_at = created_at or self._ledger.now()
        operation = str(calculation_id) if calculation_id else f"manual-{uuid4()}"
        remaining = net_share
        withholdings = []
        entries = []

        for account in self.open_accounts(recipient_id, usage_date):
            if remaining <= ZERO:
                break
            if account.recoupment_rate == ZERO:
                continue
            balance = account.outstanding_balance
            if account.is_blocking:
                withheld = min(balance, remaining)
            else:
                withheld = min(balance, round_money(remaining * account.recoupment_rate, currency))
            if withheld < ZERO or withheld > balance or withheld > remaining:
                self._ledger.logger.error(
                    "Recoupment invariant violated for %s pool %s: withheld=%s balance=%s remaining=%s",
                    recipient_id, account.pool_id, withheld, balance, remaining,
                )
                raise RecoupmentInvariantError(
                    f"Pool {account.pool_id} of {recipient_id} would withhold {withheld} "
                    f"(balance {balance}, remaining {remaining})",
                    statement_id=statement_id,
                    invariant="0 <= withheld <= min(outstanding_balance, net_share_remaining)",
                )
            if withheld == ZERO:
                continue

            updated = account.model_copy(update={"outstanding_balance": balance - withheld})
            self._accounts[account.key] = updated
            self._touched.add(account.key)
            remaining -= withheld
            withholdings.append(PoolWithholding(
                pool_id=account.pool_id,
                priority_order=account.priority_order,
                withheld=withheld,
                balance_before=balance,
                balance_after=updated.outstanding_balance,
            ))
            entries.append(make_entry(
                EventType.RECOUPMENT,
                f"{operation}:recoupment:{account.pool_id}",
                amount=-withheld,
                currency=currency,
                balance_after=updated.outstanding_balance,
                description=f"Recouped {withheld} against pool {account.pool_id}",
                created_at=created_at,
                statement_id=statement_id,
                calculation_id=calculation_id,
                recipient_id=recipient_id,
                pool_id=account.pool_id,
                metadata={"usage_date": usage_date.isoformat(), "balance_before": str(balance)},
            ))

        self.staged_entries.extend(entries)
        return RecoupmentResult(
            recipient_id=recipient_id,
            net_share=net_share,
            payable_amount=remaining,
            withholdings=tuple(withholdings),
            entries=tuple(entries),
        )

    def reverse(self, calculation: RoyaltyCalculation, created_at: Optional[datetime] = None) -> list[LedgerEntry]:
        """Give back what a superseded calculation withheld from each pool."""
        self._check_open(calculation.recipient_id)
        created_at = created_at or self._ledger.now()
        entries = []
        for withholding in calculation.recoupments:
            key = (calculation.recipient_id, withholding.pool_id)
            account = self._accounts.get(key)
            if account is None:
                raise NotFoundError(
                    f"Recoupment pool {withholding.pool_id} not found for {calculation.recipient_id}",
                    statement_id=calculation.statement_id,
                )
            updated = account.model_copy(
                update={"outstanding_balance": account.outstanding_balance + withholding.withheld}
            )
            self._accounts[key] = updated
            self._touched.add(key)
            entries.append(make_entry(
                EventType.RECOUPMENT_REVERSAL,
                f"{calculation.calculation_id}:reversal:{withholding.pool_id}",
                amount=withholding.withheld,
                currency=account.currency,
                balance_after=updated.outstanding_balance,
                description=f"Reversed recoupment of {withholding.withheld} from superseded calculation",
                created_at=created_at,
                statement_id=calculation.statement_id,
                calculation_id=calculation.calculation_id,
                recipient_id=calculation.recipient_id,
                pool_id=withholding.pool_id,
            ))
        self.staged_entries.extend(entries)
        return entries

    def commit(self, entries: Optional[Iterable[LedgerEntry]] = None) -> None:
        """Write touched pools and ledger entries. ``entries`` defaults to everything staged."""
        if self.committed:
            return
        storage = self._ledger.storage
        with storage.lock:
            for key in self._touched:
                storage.recoupment_accounts[key] = self._accounts[key]
            self._ledger.audit.append(self.staged_entries if entries is None else entries)
        self.committed = True

    def _check_open(self, recipient_id: str) -> None:
        if self.committed:
            raise RecoupmentInvariantError("Recoupment transaction already committed")
        if recipient_id not in self.recipient_ids:
            raise RecoupmentInvariantError(
                f"Recipient {recipient_id} is not locked by this transaction",
                invariant="single writer per recipient",
            )


class RecoupmentLedger:
    def __init__(
        self,
        storage: InMemoryStorage,
        audit: AuditLog,
        base_currency: str = "USD",
        clock: Optional[Callable[[], datetime]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.storage = storage
        self.audit = audit
        self.base_currency = base_currency
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logger or logging.getLogger(__name__)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def now(self) -> datetime:
        return self.clock()

    def _lock_for(self, recipient_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(recipient_id)
            if lock is None:
                lock = self._locks[recipient_id] = threading.Lock()
            return lock

    @contextmanager
    def transaction(self, recipient_ids: Iterable[str]) -> Iterator[RecoupmentTransaction]:
        # sorted acquisition keeps two multi-recipient transactions from deadlocking
        ordered = sorted(set(recipient_ids))
        acquired = []
        try:
            for recipient_id in ordered:
                lock = self._lock_for(recipient_id)
                lock.acquire()
                acquired.append(lock)
            yield RecoupmentTransaction(self, ordered)
        finally:
            for lock in reversed(acquired):
                lock.release()

    def apply_recoupment(
        self,
        recipient_id: str,
        net_share: Decimal,
        usage_date: date,
        calculation_id: Optional[UUID] = None,
    ) -> RecoupmentResult:
        with self.transaction([recipient_id]) as tx:
            result = tx.apply(recipient_id, net_share, usage_date, calculation_id=calculation_id)
            tx.commit()
        if result.withholdings:
            self.logger.info("Recouped %s from %s across %d pool(s)", result.recouped_amount, recipient_id, len(result.withholdings))
        return result

    def open_account(self, account: RecoupmentAccount) -> RecoupmentAccount:
        if account.currency != self.base_currency:
            raise StatementValidationError(
                f"Recoupment pool {account.pool_id} is in {account.currency}, expected {self.base_currency}",
                invariant="recoupment pools are held in the base currency",
            )
        with self.transaction([account.recipient_id]):
            with self.storage.lock:
                if account.key in self.storage.recoupment_accounts:
                    raise StatementValidationError(
                        f"Recoupment pool {account.pool_id} already exists for {account.recipient_id}",
                        invariant="unique pool per recipient",
                    )
                self.storage.recoupment_accounts[account.key] = account
                self.audit.append([make_entry(
                    EventType.ADVANCE,
                    f"advance:{account.recipient_id}:{account.pool_id}",
                    amount=account.outstanding_balance,
                    currency=account.currency,
                    balance_after=account.outstanding_balance,
                    description=f"Opened recoupment pool {account.pool_id} {account.description}".strip(),
                    created_at=account.created_at,
                    recipient_id=account.recipient_id,
                    pool_id=account.pool_id,
                    metadata={
                        "recoupment_rate": str(account.recoupment_rate),
                        "priority_order": account.priority_order,
                    },
                )])
        self.logger.info("Opened recoupment pool %s for %s: %s %s", account.pool_id, account.recipient_id, account.outstanding_balance, account.currency)
        return account

    def accounts(self, recipient_id: str) -> list[RecoupmentAccount]:
        accounts = self.storage.accounts_for(recipient_id)
        accounts.sort(key=lambda a: (a.priority_order, a.created_at, a.pool_id))
        return accounts
