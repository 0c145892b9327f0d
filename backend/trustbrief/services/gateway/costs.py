"""
Cost accounting for LLM calls.

Prices are USD per 1,000 tokens (input, output). Model names returned by
providers often carry a date suffix ("gpt-4o-2024-08-06"), so lookup falls
back to the longest matching prefix.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime

logger = logging.getLogger(__name__)

MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o": (0.005, 0.015),
    "gpt-4o-mini": (0.00015, 0.0006),
    "claude-3-5-sonnet": (0.003, 0.015),
    "claude-3-5-haiku": (0.001, 0.005),
}

# Unknown models are charged at the most expensive known rate
DEFAULT_PRICING = (0.005, 0.015)


def price_for(model: str) -> tuple[float, float]:
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]
    for name in sorted(MODEL_PRICING, key=len, reverse=True):
        if model.startswith(name):
            return MODEL_PRICING[name]
    return DEFAULT_PRICING


def compute_cost(model: str, tokens_input: int, tokens_output: int) -> float:
    input_price, output_price = price_for(model)
    return round(tokens_input / 1000 * input_price + tokens_output / 1000 * output_price, 6)


@dataclass
class CostEntry:
    correlation_id: str
    purpose: str
    provider: str
    model: str
    tokens_input: int
    tokens_output: int
    cost_usd: float
    at: datetime = field(default_factory=datetime.utcnow)


class CostLedger:
    """In-process record of successful calls, grouped by correlation id."""

    def __init__(self):
        self._entries: dict[str, list[CostEntry]] = defaultdict(list)

    def record(self, entry: CostEntry) -> None:
        self._entries[entry.correlation_id].append(entry)
        logger.debug(
            f"LLM cost ${entry.cost_usd:.5f} ({entry.provider}/{entry.model}, "
            f"{entry.tokens_input}+{entry.tokens_output} tokens, {entry.purpose})"
        )

    def entries_for(self, correlation_id: str) -> list[CostEntry]:
        return list(self._entries.get(correlation_id, []))

    def total_for(self, correlation_id: str) -> float:
        return round(sum(e.cost_usd for e in self._entries.get(correlation_id, [])), 6)

    def by_purpose(self, correlation_id: str) -> dict[str, float]:
        totals: dict[str, float] = defaultdict(float)
        for entry in self._entries.get(correlation_id, []):
            totals[entry.purpose] += entry.cost_usd
        return dict(totals)

    def forget(self, correlation_id: str) -> None:
        """Drop entries once a run is terminal and its total is persisted."""
        self._entries.pop(correlation_id, None)
