"""
Pricing calculations and rate management.

Handles cost computations for the chat models the generator may use.
"""

from dataclasses import dataclass
from typing import Dict
from decimal import Decimal, ROUND_HALF_UP

from .errors import UnknownModelError
from .token_counter import TokenUsage


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_cost_per_1k: Decimal  # USD per 1K prompt tokens
    completion_cost_per_1k: Decimal  # USD per 1K completion tokens


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            UnknownModelError: If model is not supported
        """
        if model not in self.prices:
            raise UnknownModelError(f"Unsupported model: {model}")
        return self.prices[model]

    def models(self):
        return sorted(self.prices)


# Fixed pricing table - no dynamic fetching, unknown models fail closed
PRICING_TABLE = PricingTable({
    "gpt-4-turbo-preview": ModelPricing(
        prompt_cost_per_1k=Decimal("0.01"),
        completion_cost_per_1k=Decimal("0.03")
    ),
    "gpt-4": ModelPricing(
        prompt_cost_per_1k=Decimal("0.03"),
        completion_cost_per_1k=Decimal("0.06")
    ),
    "gpt-4o": ModelPricing(
        prompt_cost_per_1k=Decimal("0.005"),
        completion_cost_per_1k=Decimal("0.015")
    ),
    "gpt-4o-mini": ModelPricing(
        prompt_cost_per_1k=Decimal("0.00015"),
        completion_cost_per_1k=Decimal("0.0006")
    ),
    "gpt-3.5-turbo": ModelPricing(
        prompt_cost_per_1k=Decimal("0.0015"),
        completion_cost_per_1k=Decimal("0.002")
    ),
})


def calculate_cost(model: str, usage: TokenUsage, table: PricingTable = PRICING_TABLE) -> float:
    """Calculate total cost for model usage.

    Args:
        model: Model identifier
        usage: Token usage data
        table: Pricing table to read rates from

    Returns:
        Total cost in USD rounded to 6 decimal places

    Raises:
        UnknownModelError: If model is not supported
    """
    pricing = table.get_pricing(model)

    # Calculate prompt cost: (tokens / 1000) * cost_per_1k
    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k

    # Calculate completion cost: (tokens / 1000) * cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k

    total_cost = prompt_cost + completion_cost
    rounded_cost = total_cost.quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)

    return float(rounded_cost)
