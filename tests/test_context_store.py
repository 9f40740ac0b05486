# =============================================================================
# Unit Tests — Context Store (thread memory, summaries, recovery)
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

from fundbot.models.events import HistoryMessage
from fundbot.models.state import Message
from fundbot.services.context_store import (
    SUMMARY_ACK,
    ContextStore,
    build_summary,
    extract_topics,
)
from fundbot.services.state import InMemoryStore


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _store(clock: FakeClock, history=None, max_messages: int = 10) -> ContextStore:
    return ContextStore(
        InMemoryStore(),
        max_messages=max_messages,
        ttl_seconds=86_400,
        history=history,
        clock=clock,
    )


class TestTopics:
    def test_only_user_messages_scanned(self):
        messages = [
            Message(role="user", content="What's our AUM and NAV?", timestamp=1),
            Message(role="assistant", content="Bitcoin exposure is 40%", timestamp=2),
        ]
        assert extract_topics(messages) == ["aum", "nav"]

    def test_vocabulary_order(self):
        messages = [Message(role="user", content="fees, then risk, then aum", timestamp=1)]
        assert extract_topics(messages) == ["aum", "risk", "fees"]

    def test_summary_never_empty(self):
        assert build_summary([], 4)
        assert "aum, nav" in build_summary(["aum", "nav"], 2)


class TestAppendAndRead:
    def test_roundtrip_in_order(self):
        async def scenario():
            store = _store(FakeClock())
            await store.append("T1", "user", "What's our AUM?")
            await store.append("T1", "assistant", "$1.2B")
            return await store.read("T1"), await store.get_context("T1")

        surfaced, context = _run(scenario())
        assert surfaced == [
            {"role": "user", "content": "What's our AUM?"},
            {"role": "assistant", "content": "$1.2B"},
        ]
        assert context.summary is None
        assert context.evicted_count == 0

    def test_pairs_stay_adjacent_under_concurrency(self):
        async def answer(store, label):
            await asyncio.sleep(0)
            await store.append_many(
                "T1", [("user", f"question {label}"), ("assistant", f"answer {label}")],
            )

        async def scenario():
            store = _store(FakeClock())
            await asyncio.gather(answer(store, "A"), answer(store, "B"))
            return [m["content"] for m in await store.read("T1")]

        contents = _run(scenario())
        assert len(contents) == 4
        for i in (0, 2):
            label = contents[i].split()[-1]
            assert contents[i:i + 2] == [f"question {label}", f"answer {label}"]

    def test_unknown_thread_is_empty(self):
        assert _run(_store(FakeClock()).read("nope")) == []

    def test_bounded_with_summary_after_eviction(self):
        """Never more than N real messages; evicted prefix becomes a summary."""
        async def scenario():
            store = _store(FakeClock(), max_messages=4)
            await store.append("T1", "user", "What's our AUM?")
            await store.append("T1", "assistant", "$1.2B")
            for i in range(4):
                await store.append("T1", "user", f"follow-up {i}")
            return await store.get_context("T1"), await store.read("T1")

        context, surfaced = _run(scenario())
        assert len(context.messages) == 4
        assert context.evicted_count == 2
        assert context.summary_topics == ["aum"]
        assert surfaced[0]["content"].startswith("Context from earlier:")
        assert "aum" in surfaced[0]["content"]
        assert surfaced[1] == {"role": "assistant", "content": SUMMARY_ACK}
        assert [m["content"] for m in surfaced[2:]] == [f"follow-up {i}" for i in range(4)]

    def test_topics_accumulate_across_evictions(self):
        async def scenario():
            store = _store(FakeClock(), max_messages=2)
            await store.append("T1", "user", "nav please")
            await store.append("T1", "user", "and fees")
            await store.append("T1", "user", "and risk")
            await store.append("T1", "user", "anything else")
            return await store.get_context("T1")

        context = _run(scenario())
        assert context.summary_topics == ["nav", "fees"]
        assert context.evicted_count == 2

    def test_expired_thread_reads_empty(self):
        async def scenario():
            clock = FakeClock()
            store = _store(clock)
            await store.append("T1", "user", "hello")
            clock.now += 86_401
            return await store.read("T1")

        assert _run(scenario()) == []

    def test_append_after_expiry_starts_fresh(self):
        async def scenario():
            clock = FakeClock()
            store = _store(clock)
            await store.append("T1", "user", "old")
            clock.now += 86_401
            await store.append("T1", "user", "new")
            return await store.read("T1")

        assert _run(scenario()) == [{"role": "user", "content": "new"}]


class TestReadWithFallback:
    def _history(self, count: int, start: float = 1_700_000_000.0):
        return [
            HistoryMessage(
                role="user" if i % 2 == 0 else "assistant",
                content=f"message {i}",
                timestamp=start + i,
            )
            for i in range(count)
        ]

    def test_recovers_four_prior_messages(self):
        """Empty local memory + 4 platform messages → those 4, and memory repopulated."""
        async def scenario():
            source = AsyncMock()
            source.fetch_history = AsyncMock(return_value=self._history(4))
            store = _store(FakeClock(), history=source)
            recovered = await store.read_with_fallback("T1", "C1")
            local = await store.read("T1")
            return recovered, local, source

        recovered, local, source = _run(scenario())
        assert [m["content"] for m in recovered] == [f"message {i}" for i in range(4)]
        assert local == recovered
        source.fetch_history.assert_awaited_once_with("C1", "T1", 10)

    def test_current_message_excluded(self):
        async def scenario():
            history = self._history(5)
            source = AsyncMock()
            source.fetch_history = AsyncMock(return_value=history)
            store = _store(FakeClock(), history=source)
            latest = f"{history[-1].timestamp:.6f}"
            return await store.read_with_fallback("T1", "C1", latest=latest), source

        recovered, source = _run(scenario())
        assert [m["content"] for m in recovered] == [f"message {i}" for i in range(4)]
        source.fetch_history.assert_awaited_once_with("C1", "T1", 11)

    def test_local_memory_skips_platform(self):
        async def scenario():
            source = AsyncMock()
            source.fetch_history = AsyncMock()
            store = _store(FakeClock(), history=source)
            await store.append("T1", "user", "local")
            result = await store.read_with_fallback("T1", "C1")
            return result, source

        result, source = _run(scenario())
        assert result == [{"role": "user", "content": "local"}]
        source.fetch_history.assert_not_awaited()

    def test_recovery_keeps_last_n(self):
        async def scenario():
            source = AsyncMock()
            source.fetch_history = AsyncMock(return_value=self._history(15))
            store = _store(FakeClock(), history=source, max_messages=10)
            return await store.read_with_fallback("T1", "C1")

        recovered = _run(scenario())
        assert len(recovered) == 10
        assert recovered[-1]["content"] == "message 14"

    def test_platform_failure_degrades_to_empty(self):
        async def scenario():
            source = AsyncMock()
            source.fetch_history = AsyncMock(side_effect=RuntimeError("slack down"))
            store = _store(FakeClock(), history=source)
            return await store.read_with_fallback("T1", "C1")

        assert _run(scenario()) == []

    def test_no_history_source(self):
        assert _run(_store(FakeClock()).read_with_fallback("T1", "C1")) == []


class TestSweep:
    def test_removes_expired_threads(self):
        async def scenario():
            clock = FakeClock()
            store = _store(clock)
            await store.append("old", "user", "a")
            clock.now += 86_000
            await store.append("new", "user", "b")
            clock.now += 500
            return await store.sweep_expired()

        assert _run(scenario()) == 1
