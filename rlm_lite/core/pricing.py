"""
Pricing calculations and rate management.

Handles cost computations per normalized model family.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict

from .families import normalize_family
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

ONE_MILLION = Decimal("1000000")
COST_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a model family."""
    input_cost_per_1m: Decimal  # Cost per 1M input tokens
    output_cost_per_1m: Decimal  # Cost per 1M output tokens

    def __post_init__(self):
        """Validate rates are non-negative."""
        if self.input_cost_per_1m < 0:
            raise ValueError("input_cost_per_1m cannot be negative")
        if self.output_cost_per_1m < 0:
            raise ValueError("output_cost_per_1m cannot be negative")


@dataclass(frozen=True)
class CostQuote:
    """Computed cost of one call.

    unknown_rate is set when the family has no pricing; cost is then 0.
    """
    cost_usd: float
    unknown_rate: bool = False


@dataclass(frozen=True)
class PricingTable:
    """Pricing keyed by canonical family name."""
    prices: Dict[str, ModelPricing]

    def has_family(self, model: str) -> bool:
        """Check whether a model's family has pricing."""
        return normalize_family(model) in self.prices

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a model identifier.

        Args:
            model: Model identifier, dated variants allowed

        Returns:
            ModelPricing for the model's family

        Raises:
            ValueError: If the family is not priced
        """
        family = normalize_family(model)
        if family not in self.prices:
            raise ValueError(f"Unsupported model family: {family}")
        return self.prices[family]


# Standard-tier rates per 1M tokens
DEFAULT_PRICING_TABLE = PricingTable({
    "gpt-5.2": ModelPricing(
        input_cost_per_1m=Decimal("1.75"),
        output_cost_per_1m=Decimal("14.00")
    ),
    "gpt-5-mini": ModelPricing(
        input_cost_per_1m=Decimal("0.25"),
        output_cost_per_1m=Decimal("2.00")
    ),
    "gpt-5-nano": ModelPricing(
        input_cost_per_1m=Decimal("0.05"),
        output_cost_per_1m=Decimal("0.40")
    )
})


def calculate_cost(model: str, usage: TokenUsage,
                   table: PricingTable = DEFAULT_PRICING_TABLE) -> CostQuote:
    """Calculate the cost of a call with conservative rounding.

    cost = input_tokens / 1e6 * input_rate + output_tokens / 1e6 * output_rate

    Args:
        model: Model identifier (normalized before lookup)
        usage: Token usage data
        table: Pricing table to use

    Returns:
        CostQuote rounded UP to 6 decimal places, or a zero cost flagged
        with unknown_rate when the family is not priced
    """
    if not table.has_family(model):
        logger.warning("No pricing for model family %s, recording cost as 0",
                       normalize_family(model))
        return CostQuote(cost_usd=0.0, unknown_rate=True)

    pricing = table.get_pricing(model)

    input_cost = (Decimal(usage.input_tokens) / ONE_MILLION) * pricing.input_cost_per_1m
    output_cost = (Decimal(usage.output_tokens) / ONE_MILLION) * pricing.output_cost_per_1m

    total_cost = input_cost + output_cost
    rounded_cost = total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP)

    return CostQuote(cost_usd=float(rounded_cost))
