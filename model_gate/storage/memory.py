"""
In-process stores for single-process use and testing.

All state is lost when the process exits.
"""

import threading
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from model_gate.core.errors import ApprovalAlreadyDecided, ApprovalNotFound

from .interface import ApprovalStore, UsageStore
from .models import ApprovalRecord, Disposition, UsageRecord


class MemoryUsageStore(UsageStore):
    """Usage counters guarded by a single lock.

    The ceiling check sums a whole period, so every read-modify-write holds
    the one lock rather than a lock per key.
    """

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, str], UsageRecord] = {}
        self._lock = threading.Lock()

    def get(self, period: str, agent_id: str) -> Optional[UsageRecord]:
        with self._lock:
            return self._records.get((period, agent_id))

    def list_period(self, period: str) -> List[UsageRecord]:
        with self._lock:
            return [r for (p, _), r in self._records.items() if p == period]

    def increment(
        self,
        periods: Sequence[str],
        agent_id: str,
        model: str,
        amount: Decimal,
        tokens: int,
        ceiling: Optional[Tuple[str, Decimal]] = None
    ) -> bool:
        with self._lock:
            if ceiling is not None:
                ceiling_period, limit = ceiling
                total = sum(
                    (r.total_cost for (p, _), r in self._records.items() if p == ceiling_period),
                    Decimal("0")
                )
                if total + amount > limit:
                    return False
            for period in dict.fromkeys(periods):
                key = (period, agent_id)
                record = self._records.get(key) or UsageRecord(period=period, agent_id=agent_id)
                self._records[key] = record.incremented(model, amount, tokens)
        return True


class MemoryApprovalStore(ApprovalStore):
    """Approval records guarded by a single lock."""

    def __init__(self) -> None:
        self._records: Dict[str, ApprovalRecord] = {}
        self._lock = threading.Lock()

    def insert(self, record: ApprovalRecord) -> None:
        with self._lock:
            if record.id in self._records:
                raise ValueError(f"Duplicate approval id: {record.id}")
            self._records[record.id] = record

    def get(self, approval_id: str) -> Optional[ApprovalRecord]:
        with self._lock:
            return self._records.get(approval_id)

    def list(self, disposition: Disposition) -> List[ApprovalRecord]:
        with self._lock:
            matching = [r for r in self._records.values() if r.disposition == disposition]
        return sorted(matching, key=lambda r: r.created_at)

    def transition(
        self,
        approval_id: str,
        disposition: Disposition,
        reviewer: Optional[str],
        decided_at: datetime,
        note: str = ""
    ) -> ApprovalRecord:
        with self._lock:
            record = self._records.get(approval_id)
            if record is None:
                raise ApprovalNotFound(approval_id)
            if record.disposition != Disposition.PENDING:
                raise ApprovalAlreadyDecided(approval_id, record.disposition.value)
            decided = replace(
                record,
                disposition=disposition,
                reviewer=reviewer,
                decided_at=decided_at,
                review_note=note
            )
            self._records[approval_id] = decided
            return decided

    def reopen(self, approval_id: str, disposition: Disposition) -> ApprovalRecord:
        with self._lock:
            record = self._records.get(approval_id)
            if record is None:
                raise ApprovalNotFound(approval_id)
            if record.disposition != disposition:
                raise ApprovalAlreadyDecided(approval_id, record.disposition.value)
            reopened = replace(
                record,
                disposition=Disposition.PENDING,
                reviewer=None,
                decided_at=None,
                review_note=""
            )
            self._records[approval_id] = reopened
            return reopened
