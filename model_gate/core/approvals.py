"""
Approval queue.

Owns the lifecycle of runs deferred to a human approver. Records start
PENDING, move exactly once to APPROVED or REJECTED and are never deleted.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from model_gate.storage.interface import ApprovalStore
from model_gate.storage.models import ApprovalRecord, Disposition

from .block_policy import as_utc
from .pricing import CostEstimate

logger = logging.getLogger(__name__)

PROMPT_PREVIEW_LIMIT = 200


def make_preview(prompt_text: str, limit: int = PROMPT_PREVIEW_LIMIT) -> str:
    """Bounded single-line preview of a prompt."""
    flat = " ".join((prompt_text or "").split())
    if len(flat) <= limit:
        return flat
    return flat[:limit - 3] + "..."


class ApprovalQueue:
    """Pending/approved/rejected approval records over an ApprovalStore."""

    def __init__(self, store: ApprovalStore):
        self.store = store

    def enqueue(
        self,
        agent_id: str,
        requested_model: str,
        estimate: CostEstimate,
        prompt_text: str,
        created_at: datetime,
        reason: str = ""
    ) -> str:
        """Create a PENDING record and return its generated id."""
        approval_id = f"apr_{uuid.uuid4().hex}"
        self.store.insert(ApprovalRecord(
            id=approval_id,
            agent_id=agent_id,
            requested_model=requested_model,
            estimate=estimate,
            prompt_preview=make_preview(prompt_text),
            created_at=as_utc(created_at),
            reason=reason
        ))
        logger.info("Queued %s for approval: %s/%s $%s", approval_id, agent_id, requested_model, estimate.amount)
        return approval_id

    def list_pending(self) -> List[ApprovalRecord]:
        return self.store.list(Disposition.PENDING)

    def list_approved(self) -> List[ApprovalRecord]:
        return self.store.list(Disposition.APPROVED)

    def list_rejected(self) -> List[ApprovalRecord]:
        return self.store.list(Disposition.REJECTED)

    def get(self, approval_id: str) -> Optional[ApprovalRecord]:
        return self.store.get(approval_id)

    def decide(
        self,
        approval_id: str,
        approved: bool,
        reviewer: str,
        now: datetime,
        note: str = ""
    ) -> ApprovalRecord:
        """Give a pending record its terminal disposition.

        Raises:
            ApprovalNotFound: If the id is unknown
            ApprovalAlreadyDecided: If the record was already decided
        """
        disposition = Disposition.APPROVED if approved else Disposition.REJECTED
        record = self.store.transition(approval_id, disposition, reviewer, as_utc(now), note)
        logger.info("Approval %s %s by %s", approval_id, disposition.value, reviewer)
        return record

    def reopen(self, approval_id: str, disposition: Disposition) -> ApprovalRecord:
        """Put a record decided as ``disposition`` back in the pending set."""
        record = self.store.reopen(approval_id, disposition)
        logger.warning("Approval %s reopened after a failed %s", approval_id, disposition.value)
        return record
