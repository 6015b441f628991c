"""
Pricing calculations and rate management.

Handles cost computations for models grouped by provider.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Mapping, Optional

from .token_counter import TokenUsage

TOKENS_PER_UNIT = Decimal("1000000")
DEFAULT_MODEL_KEY = "default"


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_cost_per_1m: Decimal  # Cost per 1M prompt tokens
    output_cost_per_1m: Decimal  # Cost per 1M completion tokens

    def __post_init__(self):
        """Validate prices are non-negative."""
        if self.input_cost_per_1m < 0:
            raise ValueError("input_cost_per_1m cannot be negative")
        if self.output_cost_per_1m < 0:
            raise ValueError("output_cost_per_1m cannot be negative")


FREE = ModelPricing(input_cost_per_1m=Decimal("0"), output_cost_per_1m=Decimal("0"))


@dataclass(frozen=True)
class PricingTable:
    """Provider → model → pricing table.

    A provider may define a ``"default"`` entry used for models it does
    not list explicitly.
    """
    prices: Dict[str, Dict[str, ModelPricing]]

    def get_pricing(self, provider: str, model: str) -> Optional[ModelPricing]:
        """Get pricing for a provider/model pair.

        Args:
            provider: Provider name (case-insensitive)
            model: Model identifier

        Returns:
            ModelPricing for the model, the provider default, FREE when the
            provider has neither, or None if the provider is unknown
        """
        provider_prices = self.prices.get(provider.lower())
        if provider_prices is None:
            return None
        return provider_prices.get(model) or provider_prices.get(DEFAULT_MODEL_KEY) or FREE

    def with_overrides(self, overrides: Mapping[str, Mapping[str, ModelPricing]]) -> "PricingTable":
        """Return a new table with ``overrides`` merged over this one."""
        merged = {provider: dict(models) for provider, models in self.prices.items()}
        for provider, models in overrides.items():
            merged.setdefault(provider.lower(), {}).update(models)
        return PricingTable(merged)


def _price(input_cost: str, output_cost: str) -> ModelPricing:
    return ModelPricing(
        input_cost_per_1m=Decimal(input_cost),
        output_cost_per_1m=Decimal(output_cost)
    )


PRICING_TABLE = PricingTable({
    "openai": {
        "gpt-4": _price("30.00", "60.00"),
        "gpt-4-turbo": _price("10.00", "30.00"),
        "gpt-3.5-turbo": _price("0.50", "1.50"),
    },
    "anthropic": {
        "claude-3-opus": _price("15.00", "75.00"),
        "claude-3-sonnet": _price("3.00", "15.00"),
        "claude-3-haiku": _price("0.25", "1.25"),
    },
    "ollama": {
        DEFAULT_MODEL_KEY: FREE,  # Local models
    },
})


def calculate_cost(
    provider: str,
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    table: PricingTable = PRICING_TABLE
) -> float:
    """Calculate the estimated cost of a call.

    Args:
        provider: Provider name
        model: Model identifier
        prompt_tokens: Prompt (input) token count
        completion_tokens: Completion (output) token count
        table: Pricing table to use

    Returns:
        Estimated cost in USD, 0.0 for unknown providers

    Raises:
        ValueError: If a token count is negative
    """
    usage = TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    pricing = table.get_pricing(provider, model)
    if pricing is None:
        return 0.0

    prompt_cost = (Decimal(usage.prompt_tokens) / TOKENS_PER_UNIT) * pricing.input_cost_per_1m
    completion_cost = (Decimal(usage.completion_tokens) / TOKENS_PER_UNIT) * pricing.output_cost_per_1m

    return float(prompt_cost + completion_cost)
