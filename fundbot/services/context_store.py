# =============================================================================
# Context Store — Per-Thread Conversation Memory
# =============================================================================
#
# Keeps the last N messages of each Slack thread so follow-up questions can
# be answered in context.
#
#   read(thread_id)                 → messages, or [] if absent / expired
#   append(thread_id, role, text)   → add one message, evicting past N
#   append_many(thread_id, turns)   → add a question/answer pair atomically
#   read_with_fallback(...)         → read(); if empty, rebuild from the
#                                     chat platform's thread history
#
# EVICTION: when a thread exceeds N messages, the oldest are dropped and a
# one-line topical summary of everything evicted so far is kept. Topics are
# found by scanning the requester's evicted messages for a fixed vocabulary
# of fund/portfolio keywords.
#
# SUMMARY SURFACING: readers receive the summary as two synthetic leading
# messages (a user-side context note and an assistant acknowledgement), so
# prompt construction never special-cases it.
#
# RECOVERY: memory is per-process and lost on cold start. The chat platform
# keeps the durable thread, so an empty local thread is rehydrated from it.
# =============================================================================

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol

from fundbot.config import settings
from fundbot.models.events import HistoryMessage
from fundbot.models.state import Message, Role, ThreadContext
from fundbot.services.state import KeyedStore

logger = logging.getLogger(__name__)

# Ordered: topics appear in the summary in this order.
TOPIC_VOCABULARY: tuple[str, ...] = (
    "aum",
    "nav",
    "performance",
    "returns",
    "positions",
    "holdings",
    "concentration",
    "exposure",
    "bitcoin",
    "btc",
    "mnav",
    "premium",
    "equities",
    "treasury",
    "cash",
    "risk",
    "fees",
)

SUMMARY_ACK = "Understood, I'll keep that earlier context in mind."


class HistorySource(Protocol):
    """The chat platform's durable thread history."""

    async def fetch_history(
        self, channel: str, thread_ref: str, limit: int,
    ) -> list[HistoryMessage]: ...


def extract_topics(messages: list[Message]) -> list[str]:
    """Vocabulary words mentioned in requester-authored messages."""
    words: set[str] = set()
    for message in messages:
        if message.role != "user":
            continue
        lowered = message.content.lower()
        for token in lowered.replace("?", " ").replace(",", " ").split():
            words.add(token.strip(".!'\"()"))
    return [topic for topic in TOPIC_VOCABULARY if topic in words]


def build_summary(topics: list[str], evicted_count: int) -> str:
    """One-line summary of the evicted prefix. Never empty."""
    if topics:
        return (
            f"Earlier in this thread ({evicted_count} earlier messages) "
            f"the user asked about: {', '.join(topics)}."
        )
    return (
        f"Earlier in this thread there were {evicted_count} earlier messages "
        "on general questions."
    )


class ContextStore:
    def __init__(
        self,
        store: KeyedStore[ThreadContext],
        max_messages: int | None = None,
        ttl_seconds: float | None = None,
        history: HistorySource | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.max_messages = max_messages or settings.thread_max_messages
        self.ttl_seconds = ttl_seconds or settings.thread_ttl_seconds
        self._history = history
        self._clock = clock

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    async def get_context(self, thread_id: str) -> ThreadContext | None:
        """The stored ThreadContext, or None if absent or expired."""
        now = self._clock()

        def _expire(current: ThreadContext | None):
            if current is None:
                return None, None
            if now - current.last_updated > self.ttl_seconds:
                return None, None
            return current, current

        return await self._store.update(thread_id, _expire)

    async def read(self, thread_id: str) -> list[dict[str, str]]:
        """Prompt-ready history, summary pair first when one exists."""
        context = await self.get_context(thread_id)
        if context is None:
            return []
        return self._surface(context)

    async def read_with_fallback(
        self,
        thread_id: str,
        channel: str,
        latest: str | None = None,
    ) -> list[dict[str, str]]:
        """
        read(), falling back to the chat platform's history when local
        memory for this thread is empty.

        `latest` is the ts of the message being answered: it and anything
        after it are excluded from the recovered history.
        """
        local = await self.read(thread_id)
        if local or self._history is None:
            return local

        try:
            recovered = await self._recover(thread_id, channel, latest)
        except Exception as e:
            # Answer without history rather than fail the request.
            logger.warning("History recovery failed for thread %s: %s", thread_id, e)
            return []
        if not recovered:
            return []
        return self._surface(recovered)

    def _surface(self, context: ThreadContext) -> list[dict[str, str]]:
        messages = [m.as_prompt_message() for m in context.messages]
        if context.summary:
            return [
                {"role": "user", "content": f"Context from earlier: {context.summary}"},
                {"role": "assistant", "content": SUMMARY_ACK},
                *messages,
            ]
        return messages

    async def _recover(
        self,
        thread_id: str,
        channel: str,
        latest: str | None,
    ) -> ThreadContext | None:
        # One extra slot: the message being answered is usually the newest.
        limit = self.max_messages + (1 if latest is not None else 0)
        history = await self._history.fetch_history(channel, thread_id, limit)
        if latest is not None:
            cutoff = float(latest)
            history = [item for item in history if item.timestamp < cutoff]

        messages = [
            Message(
                role="assistant" if item.role == "assistant" else "user",
                content=item.content,
                timestamp=item.timestamp,
            )
            for item in history
            if item.content
        ][-self.max_messages:]

        if not messages:
            return None

        now = self._clock()
        context = ThreadContext(
            thread_id=thread_id,
            messages=messages,
            last_updated=now,
        )

        def _rehydrate(current: ThreadContext | None):
            # A concurrent append may have landed while we were fetching.
            if current is not None and current.messages:
                return current, current
            return context, context

        stored = await self._store.update(thread_id, _rehydrate)
        logger.info(
            "Recovered %d message(s) for thread %s from chat history",
            len(stored.messages), thread_id,
        )
        return stored

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    async def append(self, thread_id: str, role: Role, content: str) -> ThreadContext:
        return await self.append_many(thread_id, [(role, content)])

    async def append_many(
        self,
        thread_id: str,
        turns: list[tuple[Role, str]],
    ) -> ThreadContext:
        """Append several messages in one update, so they stay adjacent."""
        now = self._clock()
        max_messages = self.max_messages
        ttl = self.ttl_seconds

        def _append(current: ThreadContext | None):
            if current is None or now - current.last_updated > ttl:
                current = ThreadContext(thread_id=thread_id, last_updated=now)

            messages = [
                *current.messages,
                *(
                    Message(role=role, content=content, timestamp=now)
                    for role, content in turns
                ),
            ]
            update: dict = {"messages": messages, "last_updated": now}

            overflow = len(messages) - max_messages
            if overflow > 0:
                evicted = messages[:overflow]
                topics = list(current.summary_topics)
                for topic in extract_topics(evicted):
                    if topic not in topics:
                        topics.append(topic)
                topics.sort(key=TOPIC_VOCABULARY.index)
                evicted_count = current.evicted_count + overflow
                update.update(
                    messages=messages[overflow:],
                    summary_topics=topics,
                    evicted_count=evicted_count,
                    summary=build_summary(topics, evicted_count),
                )

            updated = current.model_copy(update=update)
            return updated, updated

        return await self._store.update(thread_id, _append)

    async def sweep_expired(self) -> int:
        now = self._clock()
        cleaned = 0
        for key, context in await self._store.items():
            if now - context.last_updated > self.ttl_seconds:
                await self._store.delete(key)
                cleaned += 1
        if cleaned:
            logger.info("Cleared %d expired thread(s)", cleaned)
        return cleaned
