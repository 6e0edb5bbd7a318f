"""
Usage ledger.

Accumulates realized cost and token consumption per calendar day and
calendar month and per agent. One commit updates both period records in a
single store operation, so the day and month views never disagree.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from model_gate.storage.interface import UsageStore
from model_gate.storage.models import UsageRecord

from .block_policy import as_utc

logger = logging.getLogger(__name__)


def month_key(moment: datetime) -> str:
    """Calendar-month period key (UTC), e.g. ``2025-01``."""
    return as_utc(moment).strftime("%Y-%m")


def day_key(moment: datetime) -> str:
    """Calendar-day period key (UTC), e.g. ``2025-01-15``."""
    return as_utc(moment).strftime("%Y-%m-%d")


def period_keys(moment: datetime) -> Tuple[str, str]:
    """(day, month) keys for an instant."""
    return day_key(moment), month_key(moment)


class UsageLedger:
    """Period and agent partitioned usage counters over a UsageStore."""

    def __init__(self, store: UsageStore):
        self.store = store

    def current_period_total(self, period: str) -> Decimal:
        """Sum of total cost across all agents for ``period``."""
        return self.store.period_total(period)

    def agent_period_total(self, period: str, agent_id: str) -> Decimal:
        record = self.store.get(period, agent_id)
        return record.total_cost if record else Decimal("0")

    def agent_period_tokens(self, period: str, agent_id: str) -> int:
        record = self.store.get(period, agent_id)
        return record.total_tokens if record else 0

    def record(self, period: str, agent_id: str) -> Optional[UsageRecord]:
        return self.store.get(period, agent_id)

    def records(self, period: str) -> List[UsageRecord]:
        return self.store.list_period(period)

    def commit(
        self,
        at: datetime,
        agent_id: str,
        model: str,
        amount: Decimal,
        tokens: int = 0,
        month_ceiling: Optional[Decimal] = None
    ) -> bool:
        """Add one run to the day and month records containing ``at``.

        With ``month_ceiling`` set, the run is only recorded if the month's
        total across all agents stays at or below it after adding ``amount``.

        Returns:
            True if recorded, False if ``month_ceiling`` refused the run

        Raises:
            ValueError: If amount or tokens is negative
            PersistenceFailure: If the store write failed; nothing was recorded
        """
        if amount < 0:
            raise ValueError("amount must be >= 0")
        if tokens < 0:
            raise ValueError("tokens must be >= 0")

        ceiling = (month_key(at), month_ceiling) if month_ceiling is not None else None
        if not self.store.increment(period_keys(at), agent_id, model, amount, tokens, ceiling=ceiling):
            logger.warning("Refused %s for %s/%s: monthly ceiling %s reached", amount, agent_id, model, month_ceiling)
            return False
        logger.debug("Committed %s for %s/%s at %s", amount, agent_id, model, as_utc(at).isoformat())
        return True
