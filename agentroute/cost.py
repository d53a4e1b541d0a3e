"""
Pricing and token estimation.

Prices are USD per 1M tokens. Token counts use tiktoken's cl100k_base,
which is close enough for both Claude and GPT models when estimating
rate-limit reservations and wasted cost.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any

import tiktoken

from .types import Provider


def _anthropic(input_cost: float, output_cost: float) -> dict[str, float]:
    # Cache writes bill at 1.25x input, cache reads at 0.1x
    return {
        "input": input_cost,
        "output": output_cost,
        "cache_write": input_cost * 1.25,
        "cache_read": input_cost * 0.1,
    }


def _openai(input_cost: float, output_cost: float) -> dict[str, float]:
    # Automatic prompt caching: no write surcharge, reads at half price
    return {
        "input": input_cost,
        "output": output_cost,
        "cache_write": 0.0,
        "cache_read": input_cost * 0.5,
    }


# Token costs per model (per 1M tokens)
# Input / Output / cache costs in dollars
MODEL_COSTS: dict[str, dict[str, float]] = {
    "claude-opus-4-20250514": _anthropic(15.0, 75.0),
    "claude-sonnet-4-20250514": _anthropic(3.0, 15.0),
    "claude-haiku-4-5-20251001": _anthropic(1.0, 5.0),
    # Family aliases for dated and older model ids
    "opus": _anthropic(15.0, 75.0),
    "sonnet": _anthropic(3.0, 15.0),
    "haiku": _anthropic(1.0, 5.0),
    "claude-3-haiku": _anthropic(0.25, 1.25),
    "gpt-4o": _openai(2.5, 10.0),
    "gpt-4o-mini": _openai(0.15, 0.60),
    "o1": _openai(15.0, 60.0),
    "o3-mini": _openai(1.10, 4.40),
}

# Default model for cloud ids with no match
DEFAULT_MODEL_FOR_COSTS = "sonnet"

FREE = {"input": 0.0, "output": 0.0, "cache_write": 0.0, "cache_read": 0.0}


@lru_cache(maxsize=1)
def _get_encoding() -> Any:
    """Get cached tiktoken encoding (cl100k_base)."""
    return tiktoken.get_encoding("cl100k_base")


def get_model_costs(model: str, provider: Provider | None = None) -> dict[str, float]:
    """
    Get cost rates for a model.

    Local Ollama models run on our own hardware and are free. Other ids
    resolve by exact match, then by the longest table key they contain
    (so `gpt-4o-mini-2024-07-18` prices as gpt-4o-mini, not gpt-4o),
    then fall back to sonnet pricing.
    """
    if provider == Provider.OLLAMA:
        return FREE

    if model in MODEL_COSTS:
        return MODEL_COSTS[model]

    model_lower = model.lower()
    matches = [key for key in MODEL_COSTS if key in model_lower]
    if matches:
        return MODEL_COSTS[max(matches, key=len)]

    return MODEL_COSTS[DEFAULT_MODEL_FOR_COSTS]


def estimate_call_cost(
    input_tokens: int,
    output_tokens: int,
    model: str,
    provider: Provider | None = None,
) -> float:
    """
    Estimate cost for a single API call.

    Args:
        input_tokens: Number of input tokens
        output_tokens: Number of output tokens
        model: Model id
        provider: Serving provider, if known

    Returns:
        Estimated cost in dollars
    """
    costs = get_model_costs(model, provider)
    input_cost = (input_tokens / 1_000_000) * costs["input"]
    output_cost = (output_tokens / 1_000_000) * costs["output"]
    return input_cost + output_cost


def estimate_tokens(text: str) -> int:
    """Count tokens in `text`."""
    if not text:
        return 0
    return len(_get_encoding().encode(text))


def estimate_messages_tokens(messages: list[dict[str, str]], system: str | None = None) -> int:
    """Estimate prompt tokens for a chat payload, including role framing."""
    total = estimate_tokens(system) if system else 0
    for msg in messages:
        total += estimate_tokens(msg.get("content", ""))
        total += 10  # Role and formatting overhead
    return total


__all__ = [
    "DEFAULT_MODEL_FOR_COSTS",
    "FREE",
    "MODEL_COSTS",
    "estimate_call_cost",
    "estimate_messages_tokens",
    "estimate_tokens",
    "get_model_costs",
]
