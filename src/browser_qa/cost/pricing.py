"""Per-model token prices."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelPricing:
    input_per_million: float
    output_per_million: float

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens / 1_000_000 * self.input_per_million
            + output_tokens / 1_000_000 * self.output_per_million
        )


PRICING_TABLE: dict[str, ModelPricing] = {
    "google/gemini-2.5-computer-use-preview-10-2025": ModelPricing(1.25, 10.0),
    "google/gemini-2.5-flash": ModelPricing(0.15, 0.6),
    "anthropic/claude-sonnet-4-20250514": ModelPricing(3.0, 15.0),
    "openai/computer-use-preview": ModelPricing(3.0, 12.0),
    "openai/gpt-4o": ModelPricing(2.5, 10.0),
    "openai/gpt-4o-mini": ModelPricing(0.15, 0.6),
}

_FREE = ModelPricing(0.0, 0.0)


def get_pricing(model: str) -> ModelPricing:
    """Return the price for ``model``; unknown models are free."""

    if model in PRICING_TABLE:
        return PRICING_TABLE[model]
    # Bare model names match the provider-qualified entries.
    for key, pricing in PRICING_TABLE.items():
        if key.split("/", 1)[-1] == model:
            return pricing
    return _FREE
