"""Token and dollar accounting across loop iterations.

Prices are per million tokens. Usage comes from the agent's structured
output when it reports it; otherwise it is estimated from prompt and output
length. The tracker never blocks anything: the loop controller compares
:attr:`CostTracker.total_cost` against its ceiling.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    input: float
    output: float
    cache_write: float
    cache_read: float


# Longest prefix wins, so "claude-3-5-haiku" beats "claude".
PRICING: Dict[str, ModelPricing] = {
    "claude-opus-4": ModelPricing(15.0, 75.0, 18.75, 1.50),
    "claude-sonnet-4": ModelPricing(3.0, 15.0, 3.75, 0.30),
    "claude-3-7-sonnet": ModelPricing(3.0, 15.0, 3.75, 0.30),
    "claude-3-5-sonnet": ModelPricing(3.0, 15.0, 3.75, 0.30),
    "claude-3-5-haiku": ModelPricing(0.80, 4.0, 1.0, 0.08),
    "claude-haiku-4": ModelPricing(1.0, 5.0, 1.25, 0.10),
    "gpt-4o-mini": ModelPricing(0.15, 0.60, 0.15, 0.075),
    "gpt-4o": ModelPricing(2.50, 10.0, 2.50, 1.25),
    "gpt-4.1": ModelPricing(2.0, 8.0, 2.0, 0.50),
    "o3": ModelPricing(2.0, 8.0, 2.0, 0.50),
}

DEFAULT_MODEL = "claude-sonnet-4"
_PER_TOKEN = 1_000_000


def get_pricing(model: Optional[str]) -> ModelPricing:
    """Pricing for ``model`` by longest matching prefix, default Sonnet."""
    name = (model or "").strip().lower()
    best = ""
    for key in PRICING:
        if name.startswith(key) and len(key) > len(best):
            best = key
    if not best:
        if name:
            logger.debug("No pricing for model %r, using %s", model, DEFAULT_MODEL)
        return PRICING[DEFAULT_MODEL]
    return PRICING[best]


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters, rounded up."""
    if not text:
        return 0
    return (len(text) + 3) // 4


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    estimated: bool = False

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_write_tokens
        )

    @classmethod
    def estimate(cls, prompt: str, output: str) -> "TokenUsage":
        return cls(
            input_tokens=estimate_tokens(prompt),
            output_tokens=estimate_tokens(output),
            estimated=True,
        )


@dataclass
class IterationCost:
    iteration: int
    model: str
    usage: TokenUsage
    input_cost: float
    output_cost: float
    cache_cost: float

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost + self.cache_cost


@dataclass
class CostStats:
    """Cumulative totals plus the per-iteration breakdown."""

    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_read_tokens: int = 0
    total_cache_write_tokens: int = 0
    total_cost: float = 0.0
    iterations: List[IterationCost] = field(default_factory=list)

    @property
    def avg_cost_per_iteration(self) -> float:
        if not self.iterations:
            return 0.0
        return self.total_cost / len(self.iterations)


def compute_cost(usage: TokenUsage, pricing: ModelPricing) -> Dict[str, float]:
    return {
        "input": usage.input_tokens * pricing.input / _PER_TOKEN,
        "output": usage.output_tokens * pricing.output / _PER_TOKEN,
        "cache": (
            usage.cache_write_tokens * pricing.cache_write
            + usage.cache_read_tokens * pricing.cache_read
        )
        / _PER_TOKEN,
    }


class CostTracker:
    """Append-only record of what each iteration cost.

    Args:
        model: Price table key for the agent's model
        projection_min_iterations: Iterations needed before projecting
    """

    def __init__(self, model: str = DEFAULT_MODEL, projection_min_iterations: int = 3):
        self.model = model or DEFAULT_MODEL
        self.pricing = get_pricing(self.model)
        self.projection_min_iterations = projection_min_iterations
        self._stats = CostStats()

    def record(self, iteration: int, usage: TokenUsage, model: Optional[str] = None) -> IterationCost:
        """Add one iteration's usage. Re-recording an iteration adds a new entry."""
        pricing = get_pricing(model) if model else self.pricing
        costs = compute_cost(usage, pricing)
        entry = IterationCost(
            iteration=iteration,
            model=model or self.model,
            usage=usage,
            input_cost=costs["input"],
            output_cost=costs["output"],
            cache_cost=costs["cache"],
        )
        s = self._stats
        s.iterations.append(entry)
        s.total_input_tokens += usage.input_tokens
        s.total_output_tokens += usage.output_tokens
        s.total_cache_read_tokens += usage.cache_read_tokens
        s.total_cache_write_tokens += usage.cache_write_tokens
        s.total_cost += entry.total_cost
        logger.debug(
            "iteration %d cost %s (%s tokens%s)",
            iteration,
            format_cost(entry.total_cost),
            format_tokens(usage.total_tokens),
            ", estimated" if usage.estimated else "",
        )
        return entry

    @property
    def total_cost(self) -> float:
        return self._stats.total_cost

    def stats(self) -> CostStats:
        return self._stats

    def exceeds(self, ceiling: float) -> bool:
        """True once cumulative cost reaches a positive ``ceiling``."""
        return ceiling > 0 and self._stats.total_cost >= ceiling

    def projected_remaining_cost(self, remaining_iterations: int) -> Optional[float]:
        """Linear projection from the average so far, or None if too early."""
        if len(self._stats.iterations) < self.projection_min_iterations:
            return None
        return self._stats.avg_cost_per_iteration * max(0, remaining_iterations)

    def to_dict(self) -> Dict[str, Any]:
        s = self._stats
        return {
            "model": self.model,
            "totalInputTokens": s.total_input_tokens,
            "totalOutputTokens": s.total_output_tokens,
            "totalCacheReadTokens": s.total_cache_read_tokens,
            "totalCacheWriteTokens": s.total_cache_write_tokens,
            "totalCost": s.total_cost,
            "iterations": [
                {
                    "iteration": it.iteration,
                    "model": it.model,
                    "usage": asdict(it.usage),
                    "inputCost": it.input_cost,
                    "outputCost": it.output_cost,
                    "cacheCost": it.cache_cost,
                }
                for it in s.iterations
            ],
        }

    @classmethod
    def from_dict(
        cls, data: Optional[Dict[str, Any]], model: str = DEFAULT_MODEL, projection_min_iterations: int = 3
    ) -> "CostTracker":
        """Restore from a checkpoint; totals are rebuilt from the entries."""
        tracker = cls(str((data or {}).get("model") or model), projection_min_iterations)
        for raw in (data or {}).get("iterations", []) or []:
            if not isinstance(raw, dict):
                continue
            usage_raw = raw.get("usage") or {}
            usage = TokenUsage(
                input_tokens=int(usage_raw.get("input_tokens", 0)),
                output_tokens=int(usage_raw.get("output_tokens", 0)),
                cache_read_tokens=int(usage_raw.get("cache_read_tokens", 0)),
                cache_write_tokens=int(usage_raw.get("cache_write_tokens", 0)),
                estimated=bool(usage_raw.get("estimated", False)),
            )
            tracker.record(int(raw.get("iteration", 0)), usage, raw.get("model"))
        return tracker


def format_cost(amount: float) -> str:
    if amount < 0.01:
        return f"${amount:.4f}"
    return f"${amount:.2f}"


def format_tokens(count: int) -> str:
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1_000:
        return f"{count / 1_000:.1f}K"
    return str(count)
