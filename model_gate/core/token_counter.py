"""
Token counting and estimation.

Token counts used before a call is made are approximate. The estimator
interface is the stable seam: an exact tokenizer can replace the heuristic
without changing any caller.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation."""
    prompt_tokens: int
    completion_tokens: int

    def __post_init__(self):
        if self.prompt_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts must be >= 0")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


class TokenEstimator(ABC):
    """Produces an approximate (input, output) token pair for a prospective run."""

    @abstractmethod
    def estimate(self, prompt_text: str, declared_max_output_tokens: int) -> TokenUsage:
        ...


class HeuristicTokenEstimator(TokenEstimator):
    """Length-based estimator.

    APPROXIMATE: assumes ``chars_per_token`` characters per token, rounded up.
    The output side is ``declared_max_output_tokens`` when positive, otherwise
    it mirrors the input estimate.
    """

    def __init__(self, chars_per_token: int = 4):
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be > 0")
        self.chars_per_token = chars_per_token

    def estimate(self, prompt_text: str, declared_max_output_tokens: int) -> TokenUsage:
        input_tokens = math.ceil(len(prompt_text or "") / self.chars_per_token)
        if declared_max_output_tokens and declared_max_output_tokens > 0:
            output_tokens = declared_max_output_tokens
        else:
            output_tokens = input_tokens
        return TokenUsage(prompt_tokens=input_tokens, completion_tokens=output_tokens)
