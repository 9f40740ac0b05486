# =============================================================================
# Response Cache — TTL-Classed Answers for Fresh Questions
# =============================================================================
#
# Stores generated answers keyed by the normalised question plus a hash of
# the grounding data they were generated from, so a data change naturally
# misses the cache.
#
# POLICY:
#   - not cacheable: fewer than `min_length` chars (greetings), or contains
#     an immediacy marker ("right now", "this second", "just now")
#   - TTL class by keyword, first match wins:
#       short   (30s)  price / current / now / live
#       long    (30m)  what is / explain / how does / tell me about
#       default (5m)   everything else
#   - at most `max_entries`; on overflow the single oldest entry (by
#     creation time) is evicted
#   - an expired entry is removed when read
#
# The orchestrator only consults the cache for the first message of a
# thread. Follow-ups depend on thread history, which is not in the key.
#
# Keys carry no requester identity: a cached answer is shared by everyone
# who asks the same question against the same data.
# =============================================================================

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable

from fundbot.config import settings
from fundbot.models.state import CacheEntry, TTLClass
from fundbot.services.state import KeyedStore

logger = logging.getLogger(__name__)

IMMEDIACY_MARKERS = ("just now", "this second", "right now")
SHORT_TTL_KEYWORDS = ("price", "current", "now", "live")
LONG_TTL_KEYWORDS = ("what is", "explain", "how does", "tell me about")

_WHITESPACE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    return _WHITESPACE.sub(" ", query.lower().strip())


def cache_key(query: str, context_hash: str | None = None) -> str:
    normalized = normalize_query(query)
    return f"{normalized}:{context_hash}" if context_hash else normalized


def classify_ttl(query: str) -> TTLClass:
    lowered = query.lower()
    if any(keyword in lowered for keyword in SHORT_TTL_KEYWORDS):
        return "short"
    if any(keyword in lowered for keyword in LONG_TTL_KEYWORDS):
        return "long"
    return "default"


def is_cacheable(query: str, min_length: int | None = None) -> bool:
    min_length = settings.cache_min_query_length if min_length is None else min_length
    lowered = query.lower()
    if any(marker in lowered for marker in IMMEDIACY_MARKERS):
        return False
    return len(query) >= min_length


class ResponseCache:
    def __init__(
        self,
        store: KeyedStore[CacheEntry],
        max_entries: int | None = None,
        ttls: dict[str, float] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.max_entries = max_entries or settings.cache_max_entries
        self.ttls: dict[str, float] = ttls or {
            "short": settings.cache_short_ttl_seconds,
            "default": settings.cache_default_ttl_seconds,
            "long": settings.cache_long_ttl_seconds,
        }
        self._clock = clock

    def ttl_for(self, ttl_class: str) -> float:
        return self.ttls[ttl_class]

    async def lookup(self, query: str, context_hash: str | None = None) -> str | None:
        """Cached answer if present and younger than its TTL, else None."""
        if not is_cacheable(query):
            return None

        now = self._clock()

        def _hit(current: CacheEntry | None):
            if current is None:
                return None, None
            if now - current.created_at >= self.ttl_for(current.ttl_class):
                return None, "expired"
            updated = current.model_copy(update={"hit_count": current.hit_count + 1})
            return updated, updated

        result = await self._store.update(cache_key(query, context_hash), _hit)
        if result == "expired":
            logger.info("Expired cache entry for: %s", query[:50])
            return None
        if result is None:
            return None

        logger.info("Cache hit (%dx) for: %s", result.hit_count, query[:50])
        return result.value

    async def store(
        self,
        query: str,
        text: str,
        context_hash: str | None = None,
    ) -> bool:
        """Cache an answer. Returns False when the query is not cacheable."""
        if not is_cacheable(query):
            return False

        key = cache_key(query, context_hash)
        if await self._store.get(key) is None and (
            await self._store.size() >= self.max_entries
        ):
            await self._evict_oldest()

        entry = CacheEntry(
            key=key,
            value=text,
            created_at=self._clock(),
            ttl_class=classify_ttl(query),
        )
        await self._store.update(key, lambda _current: (entry, None))
        logger.info("Cached response (%s TTL) for: %s", entry.ttl_class, query[:50])
        return True

    async def _evict_oldest(self) -> None:
        entries = await self._store.items()
        if not entries:
            return
        oldest_key, _ = min(entries, key=lambda item: item[1].created_at)
        await self._store.delete(oldest_key)
        logger.info("Evicted oldest cache entry to make room")

    async def clear(self) -> None:
        await self._store.clear()
        logger.info("Cleared all cached responses")

    async def sweep_expired(self) -> int:
        """Remove every entry older than its own TTL."""
        now = self._clock()
        cleaned = 0
        for key, entry in await self._store.items():
            if now - entry.created_at >= self.ttl_for(entry.ttl_class):
                await self._store.delete(key)
                cleaned += 1
        if cleaned:
            logger.info("Cleaned up %d expired cache entries", cleaned)
        return cleaned

    async def stats(self) -> dict:
        """Size, total hits, and the 10 most-hit entries."""
        now = self._clock()
        entries = await self._store.items()
        rows = sorted(
            (
                {
                    "query": key[:50],
                    "hit_count": entry.hit_count,
                    "age_seconds": int(now - entry.created_at),
                }
                for key, entry in entries
            ),
            key=lambda row: row["hit_count"],
            reverse=True,
        )
        return {
            "size": len(entries),
            "total_hits": sum(entry.hit_count for _, entry in entries),
            "entries": rows[:10],
        }
