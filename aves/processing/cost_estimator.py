"""
Cost estimation for vision API usage.

Token arithmetic against a per-model pricing table, plus running totals
accumulated through explicit ``track_usage`` calls. Not safe for concurrent
increments; one estimator per batch run.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
CHARS_PER_TOKEN = 4
IMAGE_TOKENS = 1600
TOKENS_PER_PRICE_UNIT = 1_000_000


@dataclass(frozen=True)
class ModelPricing:
    """Prices in USD per 1M tokens; image price is per image, for reference."""

    input_token_price: float
    output_token_price: float
    image_token_price: float


MODEL_PRICING: dict[str, ModelPricing] = {
    "claude-sonnet-4-5-20250929": ModelPricing(3.00, 15.00, 0.0048),
    "claude-3-5-sonnet-20241022": ModelPricing(3.00, 15.00, 0.0048),
    "claude-3-opus-20240229": ModelPricing(15.00, 75.00, 0.024),
    "claude-3-sonnet-20240229": ModelPricing(3.00, 15.00, 0.0048),
    "claude-3-haiku-20240307": ModelPricing(0.25, 1.25, 0.0004),
}


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    image_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.image_tokens


@dataclass
class CostBreakdown:
    input_cost: float = 0.0
    output_cost: float = 0.0
    image_cost: float = 0.0
    currency: str = "USD"

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost + self.image_cost

    def scaled(self, factor: float) -> CostBreakdown:
        return CostBreakdown(
            input_cost=self.input_cost * factor,
            output_cost=self.output_cost * factor,
            image_cost=self.image_cost * factor,
            currency=self.currency,
        )


class CostEstimator:
    """Estimate and track vision API spend for one model."""

    def __init__(self, model: str = DEFAULT_MODEL):
        if model not in MODEL_PRICING:
            logger.warning(f"No pricing for model {model}, using {DEFAULT_MODEL}")
        self.model = model
        self.pricing = MODEL_PRICING.get(model, MODEL_PRICING[DEFAULT_MODEL])
        self._usage = TokenUsage()
        self._cost = CostBreakdown()

    def estimate_annotation_cost(
        self,
        prompt_length: int,
        expected_output_tokens: int = 1000,
        include_image: bool = True,
    ) -> CostBreakdown:
        """Estimate one request from prompt length in characters."""
        usage = TokenUsage(
            input_tokens=-(-prompt_length // CHARS_PER_TOKEN),
            output_tokens=expected_output_tokens,
            image_tokens=IMAGE_TOKENS if include_image else 0,
        )
        return self.calculate_cost(usage)

    def estimate_batch_cost(
        self,
        batch_size: int,
        prompt_length: int,
        expected_output_tokens: int = 1000,
    ) -> CostBreakdown:
        single = self.estimate_annotation_cost(prompt_length, expected_output_tokens, True)
        return single.scaled(batch_size)

    def calculate_cost(self, usage: TokenUsage) -> CostBreakdown:
        # Image tokens are billed at the input token rate
        return CostBreakdown(
            input_cost=usage.input_tokens / TOKENS_PER_PRICE_UNIT * self.pricing.input_token_price,
            output_cost=usage.output_tokens / TOKENS_PER_PRICE_UNIT * self.pricing.output_token_price,
            image_cost=usage.image_tokens / TOKENS_PER_PRICE_UNIT * self.pricing.input_token_price,
        )

    def track_usage(self, usage: TokenUsage) -> None:
        self._usage.input_tokens += usage.input_tokens
        self._usage.output_tokens += usage.output_tokens
        self._usage.image_tokens += usage.image_tokens

        cost = self.calculate_cost(usage)
        self._cost.input_cost += cost.input_cost
        self._cost.output_cost += cost.output_cost
        self._cost.image_cost += cost.image_cost

    def get_total_usage(self) -> tuple[TokenUsage, CostBreakdown]:
        """Copies of the running totals."""
        usage = TokenUsage(
            self._usage.input_tokens, self._usage.output_tokens, self._usage.image_tokens
        )
        cost = CostBreakdown(self._cost.input_cost, self._cost.output_cost, self._cost.image_cost)
        return usage, cost

    def reset(self) -> None:
        self._usage = TokenUsage()
        self._cost = CostBreakdown()

    @staticmethod
    def format_cost(cost: float) -> str:
        if cost < 0.01:
            return f"{cost * 100:.4f}¢"
        return f"${cost:.4f}"

    def get_optimization_tips(self) -> list[str]:
        tips = []
        if self._usage.output_tokens > self._usage.input_tokens * 2:
            tips.append("Consider reducing max_tokens to optimize output costs")
        if "opus" in self.model:
            tips.append("Consider using Sonnet or Haiku for 80-95% cost reduction")
        if self._usage.total_tokens > 100_000:
            tips.append("Use prompt caching for repeated prompts to reduce costs by 90%")
        return tips

    def log_summary(self) -> None:
        usage, cost = self.get_total_usage()
        logger.info(
            "Cost summary for {}: {:,} input, {:,} output, {:,} image tokens; total {}",
            self.model,
            usage.input_tokens,
            usage.output_tokens,
            usage.image_tokens,
            self.format_cost(cost.total_cost),
        )
        for tip in self.get_optimization_tips():
            logger.info(f"Cost tip: {tip}")
