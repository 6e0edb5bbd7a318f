"""
Gated OpenAI client wrapper.

Asks the decision engine before every chat completion and only calls the
API with the model the engine allowed or substituted.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..config.loader import PolicySnapshot
from ..core.decision import (
    Allowed,
    DecisionEngine,
    DecisionOutcome,
    RunRequest,
    Substituted,
)


class GateBlocked(Exception):
    """Raised when the engine did not clear the call (rejected, pending or failed)."""

    def __init__(self, outcome: DecisionOutcome):
        detail = getattr(outcome, "detail", "")
        super().__init__(f"Call not permitted ({outcome.kind}): {detail}")
        self.outcome = outcome


class GatedOpenAI:
    """OpenAI client wrapper that enforces model policy before each call.

    Failures are loud: a blocked call raises GateBlocked and API errors
    propagate unchanged.
    """

    def __init__(
        self,
        engine: DecisionEngine,
        agent_id: str,
        model: str,
        policy: Optional[PolicySnapshot] = None,
        client: Optional[OpenAI] = None
    ):
        """Initialize gated OpenAI client.

        Args:
            engine: Decision engine consulted before every call
            agent_id: Agent identity charged for usage (required)
            model: Requested OpenAI model name (required)
            policy: Policy snapshot; defaults to the engine's
            client: Preconfigured OpenAI client

        Raises:
            ValueError: If agent_id or model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not agent_id or not agent_id.strip():
            raise ValueError("agent_id is required and cannot be empty")

        self.engine = engine
        self.agent_id = agent_id
        self.model = model
        self.policy = policy
        self.client = client or OpenAI()
        self.last_outcome: Optional[DecisionOutcome] = None

    def chat(
        self,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int] = None,
        premium: bool = False,
        **kwargs: Any
    ):
        """Create a chat completion if the gate clears it.

        Returns:
            OpenAI chat completion response, from the substituted model when
            the engine substituted one

        Raises:
            ValueError: If messages is empty
            GateBlocked: If the outcome is not Allowed or Substituted
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        request = RunRequest(
            agent_id=self.agent_id,
            requested_model=self.model,
            prompt_text="\n".join(str(m.get("content") or "") for m in messages),
            declared_max_output_tokens=max_tokens or 0,
            premium_requested=premium
        )
        outcome = self.engine.decide(request, datetime.now(timezone.utc), policy=self.policy)
        self.last_outcome = outcome

        if isinstance(outcome, Allowed):
            model = outcome.model
        elif isinstance(outcome, Substituted):
            model = outcome.to_model
        else:
            raise GateBlocked(outcome)

        return self.client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            **kwargs
        )
