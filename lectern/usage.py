"""Token usage normalization and cost accounting."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# USD per token. Rates switch from "below" to "above" once the token count
# exceeds "threshold" (threshold 0 means a flat rate).
PRICING: dict[str, dict[str, dict[str, float]]] = {
    "gemini-2.5-pro": {
        "input": {"above": 2.5 / 1e6, "below": 1.25 / 1e6, "threshold": 200_000},
        "output": {"above": 15 / 1e6, "below": 10 / 1e6, "threshold": 200_000},
        "caching": {"above": 0.25 / 1e6, "below": 0.125 / 1e6, "threshold": 200_000},
    },
    "gemini-2.5-flash": {
        "input": {"above": 0.3 / 1e6, "below": 0.3 / 1e6, "threshold": 0},
        "output": {"above": 2.5 / 1e6, "below": 2.5 / 1e6, "threshold": 0},
        "caching": {"above": 0.03 / 1e6, "below": 0.03 / 1e6, "threshold": 0},
    },
    "gemini-2.5-flash-lite": {
        "input": {"above": 0.1 / 1e6, "below": 0.1 / 1e6, "threshold": 0},
        "output": {"above": 0.4 / 1e6, "below": 0.4 / 1e6, "threshold": 0},
        "caching": {"above": 0.01 / 1e6, "below": 0.01 / 1e6, "threshold": 0},
    },
    "gemini-2.0-flash": {
        "input": {"above": 0, "below": 0, "threshold": 0},
        "output": {"above": 0, "below": 0, "threshold": 0},
        "caching": {"above": 0, "below": 0, "threshold": 0},
    },
}

DEFAULT_PRICING_MODEL = "gemini-2.5-flash"


@dataclass
class UsageRecord:
    """Normalized token counts and cost for one model call."""

    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    currency: str = "USD"
    breakdown: dict[str, float] = field(default_factory=dict)

    @property
    def tokens(self) -> dict[str, int]:
        return {
            "input": self.input_tokens,
            "output": self.output_tokens,
            "cached": self.cached_tokens,
            "total": self.total_tokens,
        }

    def to_event_payload(self) -> dict[str, Any]:
        """Payload of the client-facing ``usage`` event."""
        return {
            "tokens": self.tokens,
            "cost": self.cost,
            "cost_formatted": format_cost(self.cost, self.currency),
            "currency": self.currency,
            "model": self.model,
        }


def pricing_key(model: str) -> str:
    """Strip provider prefixes (``gemini/``, ``models/``) from a model id."""
    return model.rsplit("/", 1)[-1]


def _value(usage: Any, *keys: str) -> int | None:
    for key in keys:
        if isinstance(usage, dict):
            raw = usage.get(key)
        else:
            raw = getattr(usage, key, None)
        if raw is not None:
            try:
                return int(raw)
            except (TypeError, ValueError):
                continue
    return None


def _cached_tokens(usage: Any) -> int:
    direct = _value(usage, "cachedContentTokenCount", "cached_tokens", "cache_read_input_tokens")
    if direct is not None:
        return direct
    details = usage.get("prompt_tokens_details") if isinstance(usage, dict) else getattr(usage, "prompt_tokens_details", None)
    if details is not None:
        return _value(details, "cached_tokens") or 0
    return 0


def _price(rate: dict[str, float], num_tokens: int) -> float:
    per_token = rate["below"] if num_tokens <= rate["threshold"] else rate["above"]
    return per_token * num_tokens


class UsageAccountant:
    """Convert raw provider usage reports into :class:`UsageRecord` values.

    Accepts Gemini ``usageMetadata`` keys (``promptTokenCount``...) as well as
    OpenAI/LiteLLM usage keys (``prompt_tokens``...).
    """

    def __init__(self, pricing: dict[str, dict[str, dict[str, float]]] | None = None) -> None:
        self.pricing = pricing or PRICING

    def pricing_for(self, model: str) -> dict[str, dict[str, float]]:
        return self.pricing.get(pricing_key(model)) or self.pricing[DEFAULT_PRICING_MODEL]

    def calculate(self, usage: Any, model: str) -> UsageRecord:
        prompt = _value(usage, "promptTokenCount", "prompt_tokens") or 0
        total = _value(usage, "totalTokenCount", "total_tokens") or 0
        cached = _cached_tokens(usage)
        output = _value(usage, "candidatesTokenCount", "completion_tokens")
        if output is None:
            output = max(0, total - prompt)
        if not total:
            total = prompt + output

        input_tokens = max(0, prompt - cached)
        pricing = self.pricing_for(model)
        input_cost = _price(pricing["input"], input_tokens)
        output_cost = _price(pricing["output"], output)
        caching_cost = _price(pricing["caching"], cached)

        return UsageRecord(
            model=model,
            input_tokens=input_tokens,
            output_tokens=output,
            cached_tokens=cached,
            total_tokens=total,
            cost=input_cost + output_cost + caching_cost,
            breakdown={
                "input_cost": input_cost,
                "output_cost": output_cost,
                "caching_cost": caching_cost,
            },
        )

    def model_pricing(self, model: str) -> dict[str, Any]:
        """Per-million rates for display."""
        pricing = self.pricing_for(model)
        return {
            "input_per_million": pricing["input"]["above"] * 1e6,
            "output_per_million": pricing["output"]["above"] * 1e6,
            "is_free": pricing["input"]["above"] == 0 and pricing["output"]["above"] == 0,
        }


def format_cost(cost: float, currency: str = "USD") -> str:
    if cost == 0:
        return "Free"
    formatted = f"{cost:.6f}".rstrip("0").rstrip(".")
    return f"{formatted} {currency}"


def format_tokens(tokens: dict[str, int]) -> str:
    total = tokens.get("total") or (tokens.get("input", 0) + tokens.get("output", 0))
    if total >= 1_000_000:
        return f"{round(total / 1_000_000, 2)}M"
    if total >= 1000:
        return f"{round(total / 1000, 1)}K"
    return str(total)
