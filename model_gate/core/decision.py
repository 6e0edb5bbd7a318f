"""
Decision engine.

For every proposed model invocation decides, before the call is made, whether
to allow it, substitute a cheaper model, reject it or defer it to a human:

    Start -> BlockCheck -> CostCheck -> {Allowed | Substituted | Rejected | PendingApproval}

Blocked models are advisory: the caller gets a rejection with a suggested
fallback and re-requests. Automatic substitution happens only in the per-run
soft cost band. Policy and estimation problems are returned as outcomes;
persistence failures become a retryable ``Failed`` outcome so accounting is
never reported as committed when it was not.
"""

import logging
import threading
import weakref
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import ClassVar, Optional, Union

from model_gate.config.loader import PolicySnapshot
from model_gate.storage.models import ApprovalRecord, Disposition

from .approvals import ApprovalQueue
from .block_policy import as_utc
from .errors import PersistenceFailure
from .guardrails import (
    EnforcementAction,
    RejectReason,
    SpendState,
    evaluate_thresholds,
)
from .ledger import UsageLedger, month_key
from .pricing import CostEstimate, CostEstimator
from .token_counter import HeuristicTokenEstimator, TokenEstimator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunRequest:
    """One proposed model invocation. Never mutated."""
    agent_id: str
    requested_model: str
    prompt_text: str = ""
    declared_max_output_tokens: int = 0
    premium_requested: bool = False

    def __post_init__(self):
        if not self.agent_id or not self.agent_id.strip():
            raise ValueError("agent_id is required and cannot be empty")
        if not self.requested_model or not self.requested_model.strip():
            raise ValueError("requested_model is required and cannot be empty")
        if self.declared_max_output_tokens < 0:
            raise ValueError("declared_max_output_tokens must be >= 0")


@dataclass(frozen=True)
class Allowed:
    kind: ClassVar[str] = "allowed"
    model: str
    estimate: CostEstimate
    warning: Optional[str] = None


@dataclass(frozen=True)
class Substituted:
    kind: ClassVar[str] = "substituted"
    from_model: str
    to_model: str
    estimate: CostEstimate
    requested_estimate: Optional[CostEstimate] = None
    warning: Optional[str] = None


@dataclass(frozen=True)
class Rejected:
    kind: ClassVar[str] = "rejected"
    reason: RejectReason
    detail: str
    estimate: Optional[CostEstimate] = None
    suggested_fallback: Optional[str] = None
    threshold: Optional[Decimal] = None
    blocked_until: Optional[datetime] = None


@dataclass(frozen=True)
class PendingApproval:
    kind: ClassVar[str] = "pending_approval"
    request_id: str
    estimate: CostEstimate
    detail: str = ""
    threshold: Optional[Decimal] = None
    warning: Optional[str] = None


@dataclass(frozen=True)
class Failed:
    """The run could not be decided.

    ``retryable`` is True when accounting could not be read or written, and
    False when the token estimator itself failed.
    """
    kind: ClassVar[str] = "failed"
    detail: str
    retryable: bool = True


DecisionOutcome = Union[Allowed, Substituted, Rejected, PendingApproval, Failed]


class DecisionEngine:
    """Orchestrates block checks, cost estimation, thresholds and accounting.

    ``policy`` is the snapshot used when ``decide`` is not handed one. Check
    and commit for the same agent run under a per-agent lock, so two
    concurrent requests cannot both pass a quota that only one of them fits.
    The monthly hard ceiling spans all agents and is enforced again by the
    store at commit time.
    """

    def __init__(
        self,
        ledger: UsageLedger,
        queue: ApprovalQueue,
        policy: Optional[PolicySnapshot] = None,
        token_estimator: Optional[TokenEstimator] = None
    ):
        self.ledger = ledger
        self.queue = queue
        self.policy = policy or PolicySnapshot()
        self.token_estimator = token_estimator or HeuristicTokenEstimator()
        # Entries vanish once no decision holds the agent's lock
        self._agent_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _agent_lock(self, agent_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._agent_locks.get(agent_id)
            if lock is None:
                lock = threading.Lock()
                self._agent_locks[agent_id] = lock
            return lock

    def decide(
        self,
        request: RunRequest,
        now: datetime,
        policy: Optional[PolicySnapshot] = None
    ) -> DecisionOutcome:
        snapshot = policy or self.policy
        try:
            outcome = self._decide(request, as_utc(now), snapshot)
        except PersistenceFailure as e:
            logger.error("Decision for %s/%s failed: %s", request.agent_id, request.requested_model, e)
            return Failed(detail=str(e))

        log = logger.warning if isinstance(outcome, Rejected) else logger.info
        log(
            "Decision %s for %s/%s (policy %s)",
            outcome.kind, request.agent_id, request.requested_model, snapshot.version
        )
        return outcome

    def _decide(self, request: RunRequest, now: datetime, policy: PolicySnapshot) -> DecisionOutcome:
        block_policy = policy.block_policy
        estimator = CostEstimator(policy.pricing, policy.fallback_price)
        try:
            usage = self.token_estimator.estimate(request.prompt_text, request.declared_max_output_tokens)
        except Exception as e:
            # Estimator errors never escape decide
            logger.exception("Token estimation failed for %s/%s", request.agent_id, request.requested_model)
            return Failed(detail=f"Token estimation failed: {e}", retryable=False)
        model = request.requested_model
        estimate = estimator.estimate(model, usage.prompt_tokens, usage.completion_tokens)

        # BlockCheck
        status = block_policy.status(model, now)
        if status.blocked and not request.premium_requested:
            fallback = block_policy.fallback_for(model, now)
            return Rejected(
                reason=RejectReason.MODEL_BLOCKED,
                detail=(
                    f"Model {model} is blocked until {status.blocked_until.isoformat()}"
                    + (f" ({status.reason})" if status.reason else "")
                    + (f". Consider using {fallback}." if fallback else ".")
                ),
                estimate=estimate if estimate.priced else None,
                suggested_fallback=fallback,
                blocked_until=status.blocked_until
            )

        if not estimate.priced:
            return Rejected(
                reason=RejectReason.UNPRICED_MODEL,
                detail=f"No pricing configured for model {model}",
                suggested_fallback=block_policy.fallback_for(model, now)
            )

        # CostCheck
        month = month_key(now)
        with self._agent_lock(request.agent_id):
            spend = SpendState(
                global_cost=self.ledger.current_period_total(month),
                agent_cost=self.ledger.agent_period_total(month, request.agent_id),
                agent_tokens=self.ledger.agent_period_tokens(month, request.agent_id)
            )
            evaluation = evaluate_thresholds(
                estimate.amount,
                estimate.total_tokens,
                policy.thresholds,
                policy.quota_for(request.agent_id),
                spend
            )
            warning = "; ".join(evaluation.warnings) or None

            if evaluation.action == EnforcementAction.REJECT:
                return Rejected(
                    reason=evaluation.reason,
                    detail=evaluation.message,
                    estimate=estimate,
                    suggested_fallback=block_policy.fallback_for(model, now),
                    threshold=evaluation.threshold
                )

            if status.blocked or evaluation.action == EnforcementAction.APPROVE:
                detail = evaluation.message
                if status.blocked:
                    detail = f"Premium use of blocked model {model} requires approval"
                request_id = self.queue.enqueue(
                    agent_id=request.agent_id,
                    requested_model=model,
                    estimate=estimate,
                    prompt_text=request.prompt_text,
                    created_at=now,
                    reason=detail
                )
                return PendingApproval(
                    request_id=request_id,
                    estimate=estimate,
                    detail=detail,
                    threshold=evaluation.threshold,
                    warning=warning
                )

            if evaluation.action == EnforcementAction.SUBSTITUTE:
                substitute = self._substitute(estimator, estimate, model, now, policy)
                if substitute is not None:
                    refused = self._charge(now, request.agent_id, substitute, policy)
                    if refused is not None:
                        return refused
                    return Substituted(
                        from_model=model,
                        to_model=substitute.model,
                        estimate=substitute,
                        requested_estimate=estimate,
                        warning=warning
                    )
                note = f"{evaluation.message}; no cheaper fallback available"
                warning = f"{note}; {warning}" if warning else note

            refused = self._charge(now, request.agent_id, estimate, policy)
            if refused is not None:
                return refused
            return Allowed(model=model, estimate=estimate, warning=warning)

    def _charge(
        self,
        now: datetime,
        agent_id: str,
        estimate: CostEstimate,
        policy: PolicySnapshot
    ) -> Optional[Rejected]:
        """Commit ``estimate``, or a Rejected if the monthly hard ceiling refused it."""
        ceiling = policy.thresholds.monthly_hard
        if self.ledger.commit(
            now, agent_id, estimate.model, estimate.amount, estimate.total_tokens,
            month_ceiling=ceiling
        ):
            return None
        return Rejected(
            reason=RejectReason.HARD_THRESHOLD_EXCEEDED,
            detail=f"Monthly spend would exceed hard threshold ${ceiling:.4f}",
            estimate=estimate,
            suggested_fallback=policy.block_policy.fallback_for(estimate.model, now),
            threshold=ceiling
        )

    @staticmethod
    def _substitute(
        estimator: CostEstimator,
        estimate: CostEstimate,
        model: str,
        now: datetime,
        policy: PolicySnapshot
    ) -> Optional[CostEstimate]:
        """Estimate for the soft-band fallback, or None if no priced, cheaper one exists."""
        fallback = policy.block_policy.fallback_for(model, now)
        if fallback is None:
            return None
        candidate = estimator.estimate(fallback, estimate.input_tokens, estimate.output_tokens)
        if not candidate.priced or candidate.amount > estimate.amount:
            return None
        return candidate

    def resolve_approval(
        self,
        approval_id: str,
        approved: bool,
        reviewer: str,
        now: datetime,
        note: str = ""
    ) -> ApprovalRecord:
        """Decide a queued run and, when approved, charge its estimate to the ledger.

        If the charge cannot be stored the approval is reopened, so the
        record is never APPROVED without its cost on the ledger and the
        call can be retried.

        Raises:
            ApprovalNotFound: If the id is unknown
            ApprovalAlreadyDecided: If the record was already decided
            PersistenceFailure: If the decision or the commit could not be stored
        """
        record = self.queue.decide(approval_id, approved, reviewer, now, note)
        if not approved:
            return record

        estimate = record.estimate
        try:
            self.ledger.commit(now, record.agent_id, record.requested_model, estimate.amount, estimate.total_tokens)
        except PersistenceFailure:
            logger.error("Charging approval %s failed; reopening it", approval_id)
            self.queue.reopen(approval_id, Disposition.APPROVED)
            raise
        return record
