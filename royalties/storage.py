import threading
from uuid import UUID

from .models import (
    CarriedBalance,
    LedgerEntry,
    PayoutBatch,
    Recipient,
    RecoupmentAccount,
    RoyaltyCalculation,
    Split,
    StatementRecord,
)


class InMemoryStorage:
    """Process-local store for configuration, calculations, payouts and the ledger.

    Records are immutable models; updates replace a record wholesale. Multi-record
    commits hold ``lock`` so readers never observe half of a statement.
    """

    def __init__(self):
        self.recipients: dict[str, Recipient] = {}
        self.splits: dict[str, Split] = {}
        self.recoupment_accounts: dict[tuple[str, str], RecoupmentAccount] = {}
        self.statements: dict[str, StatementRecord] = {}
        self.calculations: dict[UUID, RoyaltyCalculation] = {}
        self.settled_calculation_ids: set[UUID] = set()
        self.superseded_by: dict[UUID, UUID] = {}
        self.carried_balances: dict[str, CarriedBalance] = {}
        self.payout_batches: dict[UUID, PayoutBatch] = {}
        self.aggregated_runs: set[str] = set()
        self.ledger_entries: list[LedgerEntry] = []
        self.idempotency_index: dict[str, int] = {}
        self.lock = threading.RLock()

    def accounts_for(self, recipient_id: str) -> list[RecoupmentAccount]:
        with self.lock:
            return [a for a in self.recoupment_accounts.values() if a.recipient_id == recipient_id]

    def unsettled_calculations(self) -> list[RoyaltyCalculation]:
        with self.lock:
            return [
                c for cid, c in self.calculations.items()
                if cid not in self.settled_calculation_ids and cid not in self.superseded_by
            ]
