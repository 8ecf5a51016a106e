"""Token-to-currency conversion with extended-context pricing tiers.

Rates are USD per million tokens. Models with an extended tier switch to it
once the total input side of a request (input + cache write + cache read)
exceeds EXTENDED_CONTEXT_THRESHOLD.
"""

from __future__ import annotations

from dataclasses import dataclass

EXTENDED_CONTEXT_THRESHOLD = 200_000
TOKENS_PER_UNIT = 1_000_000

STANDARD_TIER = "standard"
EXTENDED_TIER = "extended"


@dataclass(frozen=True)
class TierRates:
    """Per-million-token rates for one pricing tier."""

    input: float
    output: float
    cache_write: float
    cache_read: float


@dataclass(frozen=True)
class ModelPricing:
    """Pricing table for one model.

    Attributes:
        standard: Rates applied at or below the threshold.
        extended: Rates applied above the threshold, or None when the model
            bills every request at the standard rate.
    """

    standard: TierRates
    extended: TierRates | None = None

    def select_tier(self, total_input_tokens: int) -> tuple[str, TierRates]:
        """Pick the tier for a request with the given input-side token count."""
        if self.extended is not None and total_input_tokens > EXTENDED_CONTEXT_THRESHOLD:
            return EXTENDED_TIER, self.extended
        return STANDARD_TIER, self.standard


_SONNET = ModelPricing(
    standard=TierRates(input=3.0, output=15.0, cache_write=3.75, cache_read=0.30),
    extended=TierRates(input=6.0, output=22.5, cache_write=7.50, cache_read=0.60),
)
_OPUS = ModelPricing(
    standard=TierRates(input=15.0, output=75.0, cache_write=18.75, cache_read=1.50),
)
_HAIKU_4_5 = ModelPricing(
    standard=TierRates(input=1.0, output=5.0, cache_write=1.25, cache_read=0.10),
)
_HAIKU_3_5 = ModelPricing(
    standard=TierRates(input=0.80, output=4.0, cache_write=1.00, cache_read=0.08),
)

PRICING: dict[str, ModelPricing] = {
    "claude-sonnet-4-5-20250929": _SONNET,
    "claude-sonnet-4-20250514": _SONNET,
    "claude-opus-4-1-20250805": _OPUS,
    "claude-opus-4-20250514": _OPUS,
    "claude-haiku-4-5-20251001": _HAIKU_4_5,
    "claude-3-5-haiku-20241022": _HAIKU_3_5,
}

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported for one assistant message."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def total_input_tokens(self) -> int:
        """Input-side tokens used for tier selection."""
        return self.input_tokens + self.cache_write_tokens + self.cache_read_tokens

    @property
    def total_tokens(self) -> int:
        """Fresh input plus output tokens."""
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class CostBreakdown:
    """Cost of one usage tuple, split by token category."""

    model: str
    tier: str
    input_cost: float
    output_cost: float
    cache_write_cost: float
    cache_read_cost: float

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost + self.cache_write_cost + self.cache_read_cost


def pricing_for(model: str | None, default_model: str = DEFAULT_MODEL) -> tuple[str, ModelPricing]:
    """Look up a model's pricing, falling back to the default model.

    Returns:
        Tuple of (model name whose table was used, pricing table).
    """
    if model and model in PRICING:
        return model, PRICING[model]
    return default_model, PRICING[default_model]


def calculate_cost(
    usage: TokenUsage,
    model: str | None,
    default_model: str = DEFAULT_MODEL,
) -> CostBreakdown:
    """Calculate the cost of a usage tuple.

    Args:
        usage: Token counts for the message.
        model: Model identifier reported alongside the usage.
        default_model: Model whose pricing applies to unrecognized models.

    Returns:
        CostBreakdown with per-category and total cost in USD.
    """
    priced_model, pricing = pricing_for(model, default_model)
    tier, rates = pricing.select_tier(usage.total_input_tokens)

    return CostBreakdown(
        model=priced_model,
        tier=tier,
        input_cost=usage.input_tokens / TOKENS_PER_UNIT * rates.input,
        output_cost=usage.output_tokens / TOKENS_PER_UNIT * rates.output,
        cache_write_cost=usage.cache_write_tokens / TOKENS_PER_UNIT * rates.cache_write,
        cache_read_cost=usage.cache_read_tokens / TOKENS_PER_UNIT * rates.cache_read,
    )
