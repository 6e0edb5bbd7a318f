"""
Data models for storage layer.

Defines the persisted usage and approval records.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from model_gate.core.pricing import CostEstimate


@dataclass(frozen=True)
class UsageRecord:
    """Aggregated usage for one (period, agent) pair.

    Invariant: ``sum(cost_by_model.values()) == total_cost``. Values only
    grow within a period and records are never deleted.
    """
    period: str
    agent_id: str
    total_cost: Decimal = Decimal("0")
    run_count: int = 0
    total_tokens: int = 0
    cost_by_model: Dict[str, Decimal] = field(default_factory=dict)

    def incremented(self, model: str, amount: Decimal, tokens: int) -> "UsageRecord":
        """Return a copy with one more committed run."""
        by_model = dict(self.cost_by_model)
        by_model[model] = by_model.get(model, Decimal("0")) + amount
        return UsageRecord(
            period=self.period,
            agent_id=self.agent_id,
            total_cost=self.total_cost + amount,
            run_count=self.run_count + 1,
            total_tokens=self.total_tokens + tokens,
            cost_by_model=by_model
        )


class Disposition(Enum):
    """Approval lifecycle states. PENDING transitions exactly once."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ApprovalRecord:
    """A run deferred to a human approver. Kept forever as an audit trail."""
    id: str
    agent_id: str
    requested_model: str
    estimate: CostEstimate
    prompt_preview: str
    created_at: datetime
    disposition: Disposition = Disposition.PENDING
    reviewer: Optional[str] = None
    decided_at: Optional[datetime] = None
    reason: str = ""
    review_note: str = ""
