"""Token cost estimation for generated work items."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


MODEL_COST_RATES: dict[str, ModelPricing] = {
    "anthropic/claude-sonnet-4.5": ModelPricing(input_per_1m=3, output_per_1m=15),
    "anthropic/claude-opus-4.5": ModelPricing(input_per_1m=5, output_per_1m=25),
    "openai/gpt-4o": ModelPricing(input_per_1m=2.5, output_per_1m=10),
    "openai/gpt-4o-mini": ModelPricing(input_per_1m=0.15, output_per_1m=0.6),
    "google/gemini-2.5-pro-preview": ModelPricing(input_per_1m=1.25, output_per_1m=10),
}


def estimate_cost(model_id: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Estimate USD cost; unknown models cost nothing."""

    pricing = MODEL_COST_RATES.get(model_id)
    if pricing is None:
        return 0.0
    return (
        (prompt_tokens / 1_000_000) * pricing.input_per_1m
        + (completion_tokens / 1_000_000) * pricing.output_per_1m
    )
