# =============================================================================
# Shared State Models — Pydantic V2
# =============================================================================
#
# Entities held in the shared keyed stores (dedup set, rate windows, budget
# ledgers, response cache, thread memory). They are Pydantic models rather
# than dataclasses so the Redis backend can round-trip them as JSON.
#
# All timestamps are epoch seconds (float) taken from the injected clock.
# None of these survive a restart on the memory backend; only ThreadContext
# has a recovery path (chat platform history).
# =============================================================================

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

Role = Literal["user", "assistant"]
TTLClass = Literal["short", "default", "long"]


class DedupMark(BaseModel):
    """Presence marker for an admitted event key."""

    admitted_at: float


class RequesterWindow(BaseModel):
    """Fixed-window request counter for one requester."""

    requester_id: str
    count: int = 0
    window_start: float
    window_end: float


class BudgetLedger(BaseModel):
    """Rolling 24h token and cost ledger for one requester."""

    requester_id: str
    tokens_used: int = 0
    estimated_cost: float = 0.0
    request_count: int = 0
    window_end: float


class CacheEntry(BaseModel):
    key: str
    value: str
    created_at: float
    ttl_class: TTLClass = "default"
    hit_count: int = 0


class Message(BaseModel):
    role: Role
    content: str
    timestamp: float

    def as_prompt_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class ThreadContext(BaseModel):
    """
    Bounded conversation memory for one thread.

    `summary_topics` and `evicted_count` accumulate across evictions so the
    one-line summary always covers the whole evicted prefix, not just the
    most recent batch.
    """

    thread_id: str
    messages: list[Message] = Field(default_factory=list)
    summary: str | None = None
    summary_topics: list[str] = Field(default_factory=list)
    evicted_count: int = 0
    last_updated: float
