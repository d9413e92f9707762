from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from .errors import SplitConfigurationError
from .models import Split, SplitStatus, SplitType


HUNDRED = Decimal("100")


@dataclass(frozen=True)
class ResolvedSplit:
    recipient_id: str
    percentage: Decimal
    split_id: Optional[str] = None
    subject_id: Optional[str] = None
    is_fallback: bool = False


class SplitResolver:
    """Answers which recipients share a subject's revenue on a given date.

    Splits are loaded once; resolution never reaches back to a store, so a
    statement's calculations depend only on what was loaded up front.
    """

    def __init__(self, splits: Iterable[Split], catalog_owner_id: str):
        self.catalog_owner_id = catalog_owner_id
        self._by_subject: dict[str, list[Split]] = {}
        for split in splits:
            self._by_subject.setdefault(split.subject_id, []).append(split)

    def split_types_for(self, subject_id: str, fallback_subject_id: Optional[str] = None) -> list[SplitType]:
        types = {s.split_type for s in self._by_subject.get(subject_id, [])}
        if fallback_subject_id:
            types |= {s.split_type for s in self._by_subject.get(fallback_subject_id, [])}
        return sorted(types, key=lambda t: t.value)

    def resolve(
        self,
        subject_id: str,
        split_type: SplitType,
        usage_date: date,
        territory: Optional[str] = None,
        fallback_subject_id: Optional[str] = None,
    ) -> list[ResolvedSplit]:
        resolved_subject = subject_id
        configured = self._configured(subject_id, split_type)
        if not configured and fallback_subject_id:
            resolved_subject = fallback_subject_id
            configured = self._configured(fallback_subject_id, split_type)

        applicable = [
            s for s in configured
            if s.status == SplitStatus.ACTIVE
            and s.is_effective_on(usage_date)
            and s.applies_to_territory(territory)
        ]
        if not applicable:
            return [ResolvedSplit(recipient_id=self.catalog_owner_id, percentage=HUNDRED, is_fallback=True)]

        total = sum((s.percentage for s in applicable), Decimal("0"))
        if total > HUNDRED:
            raise SplitConfigurationError(
                f"Active {split_type.value} splits for {resolved_subject} on {usage_date} total {total}%",
                invariant="sum of active split percentages <= 100",
            )

        applicable.sort(key=lambda s: (s.recipient_id, s.effective_from, s.split_id))
        return [
            ResolvedSplit(
                recipient_id=s.recipient_id,
                percentage=s.percentage,
                split_id=s.split_id,
                subject_id=resolved_subject,
            )
            for s in applicable
        ]

    def _configured(self, subject_id: str, split_type: SplitType) -> list[Split]:
        return [s for s in self._by_subject.get(subject_id, []) if s.split_type == split_type]
