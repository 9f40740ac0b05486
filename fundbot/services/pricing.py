# =============================================================================
# Cost Estimation — Token Counting & Blended Per-Million Pricing
# =============================================================================
#
# Two jobs:
#   1. estimate_cost(): actual cost of a completed generation, used by the
#      admission controller's daily ledger.
#        cost = (input_tokens + output_tokens) / 1_000_000 * rate
#   2. projected_tokens(): worst-case token count for a request that has
#      not been sent yet (prompt tokens + the full output allowance), used
#      for the pre-generation budget check.
#
# Rates are a single blended USD figure per million tokens from settings.
# Prompt tokens are counted with tiktoken's cl100k_base. It is not the
# provider's own tokenizer, but is close enough for a budget pre-check,
# which only needs to be conservative.
# =============================================================================

from __future__ import annotations

from collections.abc import Iterable

import tiktoken

from fundbot.config import settings

TOKENS_PER_MILLION = 1_000_000

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Load the cl100k_base encoder once per process."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def count_tokens(text: str) -> int:
    if not text:
        return 0
    return len(_get_encoder().encode(text, disallowed_special=()))


def estimate_cost(
    input_tokens: int,
    output_tokens: int,
    rate_per_million: float | None = None,
) -> float:
    """Blended USD cost of a generation."""
    rate = settings.cost_per_million_tokens if rate_per_million is None else rate_per_million
    return (input_tokens + output_tokens) / TOKENS_PER_MILLION * rate


def projected_tokens(
    system_prompt: str,
    message: str,
    history: Iterable[dict[str, str]] = (),
    max_output_tokens: int | None = None,
    counter=count_tokens,
) -> int:
    """
    Worst-case total tokens for a request: everything we send plus the
    full output allowance.
    """
    prompt = counter(system_prompt) + counter(message)
    prompt += sum(counter(item["content"]) for item in history)
    allowance = settings.llm_max_tokens if max_output_tokens is None else max_output_tokens
    return prompt + allowance
