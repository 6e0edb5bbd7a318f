"""
Pricing lookups and cost estimation.

Handles cost computations for priced models. Prices are injected, never
fetched. An unknown model is an explicit outcome and is never priced at zero
silently.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict, Mapping, Optional

from .errors import UnknownModel
from .token_counter import TokenUsage

_THOUSAND = Decimal("1000")
# Conservative rounding: estimates always round UP at this precision
COST_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class PriceEntry:
    """Per-1K-token pricing for a specific model."""
    input_per_1k: Decimal
    output_per_1k: Decimal

    def __post_init__(self):
        if self.input_per_1k < 0 or self.output_per_1k < 0:
            raise ValueError("prices must be >= 0")


class PricingTable:
    """Immutable model -> PriceEntry lookup."""

    def __init__(self, prices: Mapping[str, PriceEntry]):
        self._prices: Dict[str, PriceEntry] = dict(prices)

    def price(self, model: str) -> PriceEntry:
        """Get pricing for a specific model.

        Raises:
            UnknownModel: If the model has no price entry
        """
        try:
            return self._prices[model]
        except KeyError:
            raise UnknownModel(model) from None

    def get(self, model: str) -> Optional[PriceEntry]:
        return self._prices.get(model)

    def __contains__(self, model: str) -> bool:
        return model in self._prices

    @property
    def models(self):
        return tuple(self._prices)


DEFAULT_PRICING = PricingTable({
    "gpt-5": PriceEntry(
        input_per_1k=Decimal("0.10"),
        output_per_1k=Decimal("0.30")
    ),
    "gpt-4.1": PriceEntry(
        input_per_1k=Decimal("0.05"),
        output_per_1k=Decimal("0.15")
    ),
    "gpt-codex": PriceEntry(
        input_per_1k=Decimal("0.02"),
        output_per_1k=Decimal("0.06")
    ),
})


@dataclass(frozen=True)
class CostEstimate:
    """Estimated cost of a prospective run.

    ``priced`` is False when the model had no price entry; ``amount`` is then
    zero and must be treated as a policy gap, not as a free run.
    """
    model: str
    input_tokens: int
    output_tokens: int
    amount: Decimal
    priced: bool = True

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class CostEstimator:
    """Combines a PricingTable with token counts.

    ``fallback_price`` prices models missing from the table when the caller
    has explicitly opted into a default tier.
    """

    def __init__(self, pricing: PricingTable, fallback_price: Optional[PriceEntry] = None):
        self.pricing = pricing
        self.fallback_price = fallback_price

    def estimate(self, model: str, input_tokens: int, output_tokens: int) -> CostEstimate:
        if input_tokens < 0 or output_tokens < 0:
            raise ValueError("token counts must be >= 0")

        entry = self.pricing.get(model) or self.fallback_price
        if entry is None:
            return CostEstimate(
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                amount=Decimal("0"),
                priced=False
            )

        return CostEstimate(
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            amount=calculate_cost(entry, TokenUsage(input_tokens, output_tokens))
        )


def calculate_cost(entry: PriceEntry, usage: TokenUsage) -> Decimal:
    """Calculate cost for token usage with conservative rounding.

    Returns:
        Cost rounded UP to COST_QUANTUM
    """
    prompt_cost = (Decimal(usage.prompt_tokens) / _THOUSAND) * entry.input_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / _THOUSAND) * entry.output_per_1k
    return (prompt_cost + completion_cost).quantize(COST_QUANTUM, rounding=ROUND_UP)
