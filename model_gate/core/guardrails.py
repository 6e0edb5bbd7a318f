"""
Threshold evaluation with strict precedence.

Per-run and global monthly thresholds are independent axes. Every axis is
evaluated and the most restrictive action wins:

    REJECT > APPROVE > SUBSTITUTE > ALLOW

Any threshold left as ``None`` disables that axis.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional


class EnforcementAction(Enum):
    """Available enforcement actions in order of severity."""
    ALLOW = 1
    SUBSTITUTE = 2  # Silently switch to a cheaper fallback
    APPROVE = 3     # Defer to a human approver
    REJECT = 4      # Refuse the run entirely


class RejectReason(Enum):
    """Why a run was rejected."""
    HARD_THRESHOLD_EXCEEDED = "hard_threshold_exceeded"
    AGENT_QUOTA_EXCEEDED = "agent_quota_exceeded"
    MODEL_BLOCKED = "model_blocked"
    UNPRICED_MODEL = "unpriced_model"


@dataclass(frozen=True)
class Thresholds:
    """Cost thresholds. ``None`` disables the axis."""
    monthly_hard: Optional[Decimal] = None
    monthly_soft: Optional[Decimal] = None
    per_run_soft: Optional[Decimal] = None
    per_run_hard: Optional[Decimal] = None
    per_run_approval: Optional[Decimal] = None


@dataclass(frozen=True)
class AgentQuota:
    """Monthly quota for one agent. ``None`` means unlimited on that unit."""
    monthly_cost: Optional[Decimal] = None
    monthly_tokens: Optional[int] = None


@dataclass(frozen=True)
class SpendState:
    """Month-to-date usage read from the ledger before a decision."""
    global_cost: Decimal
    agent_cost: Decimal
    agent_tokens: int = 0


@dataclass
class Evaluation:
    """Outcome of threshold evaluation for a single estimate."""
    action: EnforcementAction = EnforcementAction.ALLOW
    reason: Optional[RejectReason] = None
    message: str = ""
    threshold: Optional[Decimal] = None
    warnings: List[str] = field(default_factory=list)


def evaluate_thresholds(
    amount: Decimal,
    tokens: int,
    thresholds: Thresholds,
    quota: AgentQuota,
    spend: SpendState
) -> Evaluation:
    """
    Evaluate every threshold axis against a cost estimate.

    Enforcement Order:
    1. Global monthly hard ceiling - rejects
    2. Per-run hard limit - rejects
    3. Agent quota (cost, then tokens) - rejects
    4. Per-run approval threshold - defers to a human
    5. Per-run soft threshold - substitutes a cheaper model
    6. Global monthly soft level - warns only

    Ties at equal severity keep the first message recorded.
    """
    result = Evaluation()

    def _update_action(
        new_action: EnforcementAction,
        new_message: str,
        reason: Optional[RejectReason] = None,
        threshold: Optional[Decimal] = None
    ) -> None:
        if new_action.value > result.action.value:
            result.action = new_action
            result.message = new_message
            result.reason = reason
            result.threshold = threshold

    projected_global = spend.global_cost + amount
    projected_agent = spend.agent_cost + amount

    # 1. Global hard ceiling
    if thresholds.monthly_hard is not None and projected_global > thresholds.monthly_hard:
        _update_action(
            EnforcementAction.REJECT,
            f"Projected monthly spend ${projected_global:.4f} exceeds "
            f"hard threshold ${thresholds.monthly_hard:.4f}",
            RejectReason.HARD_THRESHOLD_EXCEEDED,
            thresholds.monthly_hard
        )

    # 2. Per-run hard limit
    if thresholds.per_run_hard is not None and amount >= thresholds.per_run_hard:
        _update_action(
            EnforcementAction.REJECT,
            f"Estimated run cost ${amount:.4f} reaches per-run hard limit "
            f"${thresholds.per_run_hard:.4f}",
            RejectReason.HARD_THRESHOLD_EXCEEDED,
            thresholds.per_run_hard
        )

    # 3. Agent quota
    if quota.monthly_cost is not None and projected_agent > quota.monthly_cost:
        _update_action(
            EnforcementAction.REJECT,
            f"Projected agent spend ${projected_agent:.4f} exceeds "
            f"monthly quota ${quota.monthly_cost:.4f}",
            RejectReason.AGENT_QUOTA_EXCEEDED,
            quota.monthly_cost
        )
    if quota.monthly_tokens is not None and spend.agent_tokens + tokens > quota.monthly_tokens:
        _update_action(
            EnforcementAction.REJECT,
            f"Projected agent tokens {spend.agent_tokens + tokens} exceed "
            f"monthly token quota {quota.monthly_tokens}",
            RejectReason.AGENT_QUOTA_EXCEEDED,
            Decimal(quota.monthly_tokens)
        )

    # 4. Human approval
    if thresholds.per_run_approval is not None and amount > thresholds.per_run_approval:
        _update_action(
            EnforcementAction.APPROVE,
            f"Estimated run cost ${amount:.4f} exceeds approval threshold "
            f"${thresholds.per_run_approval:.4f}",
            threshold=thresholds.per_run_approval
        )

    # 5. Soft substitution band
    if thresholds.per_run_soft is not None and amount > thresholds.per_run_soft:
        _update_action(
            EnforcementAction.SUBSTITUTE,
            f"Estimated run cost ${amount:.4f} exceeds soft threshold "
            f"${thresholds.per_run_soft:.4f}",
            threshold=thresholds.per_run_soft
        )

    # 6. Global soft warning, never blocks
    if thresholds.monthly_soft is not None and projected_global > thresholds.monthly_soft:
        result.warnings.append(
            f"Projected monthly spend ${projected_global:.4f} exceeds "
            f"soft threshold ${thresholds.monthly_soft:.4f}"
        )

    return result
