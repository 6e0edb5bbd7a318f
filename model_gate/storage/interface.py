"""
Persistence contracts for the ledger and the approval queue.

Implementors may back these with SQLite, Redis, Postgres or any store that
offers atomic per-key read-modify-write. Callers never assume single-writer
access.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from .models import ApprovalRecord, Disposition, UsageRecord


class UsageStore(ABC):
    """Usage counters keyed by (period, agent)."""

    @abstractmethod
    def get(self, period: str, agent_id: str) -> Optional[UsageRecord]:
        ...

    @abstractmethod
    def list_period(self, period: str) -> List[UsageRecord]:
        ...

    def period_total(self, period: str) -> Decimal:
        return sum((r.total_cost for r in self.list_period(period)), Decimal("0"))

    @abstractmethod
    def increment(
        self,
        periods: Sequence[str],
        agent_id: str,
        model: str,
        amount: Decimal,
        tokens: int,
        ceiling: Optional[Tuple[str, Decimal]] = None
    ) -> bool:
        """Atomically add one run to the record of every period in ``periods``.

        Either every period is updated or none is. With ``ceiling`` given as
        ``(period, limit)``, the run is refused when the total of ``period``
        across all agents plus ``amount`` would exceed ``limit``; the check
        and the write are one atomic step.

        Returns:
            True if the run was recorded, False if the ceiling refused it
        """


class ApprovalStore(ABC):
    """Approval records keyed by id, bucketed by disposition."""

    @abstractmethod
    def insert(self, record: ApprovalRecord) -> None:
        ...

    @abstractmethod
    def get(self, approval_id: str) -> Optional[ApprovalRecord]:
        ...

    @abstractmethod
    def list(self, disposition: Disposition) -> List[ApprovalRecord]:
        """Records in one bucket, oldest first."""

    @abstractmethod
    def transition(
        self,
        approval_id: str,
        disposition: Disposition,
        reviewer: Optional[str],
        decided_at: datetime,
        note: str = ""
    ) -> ApprovalRecord:
        """Move a PENDING record to a terminal disposition exactly once.

        Raises:
            ApprovalNotFound: If no record has this id
            ApprovalAlreadyDecided: If the record is not PENDING
        """

    @abstractmethod
    def reopen(self, approval_id: str, disposition: Disposition) -> ApprovalRecord:
        """Return a record decided as ``disposition`` to PENDING.

        Only used to undo a decision whose follow-up work failed.

        Raises:
            ApprovalNotFound: If no record has this id
            ApprovalAlreadyDecided: If the record is not in ``disposition``
        """
