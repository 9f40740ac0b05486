# =============================================================================
# Grounding Data — Concurrent Snapshot Fetch Under One Shared Timeout
# =============================================================================
#
# The assistant's answers are grounded in a handful of read-only numeric
# snapshots (portfolio, market data, ...). Sources are fetched concurrently
# and awaited as ONE batch with ONE timeout:
#
#   - all sources succeed in time → {name: snapshot} plus its context hash
#   - timeout, or any source fails → GroundingUnavailable; nothing partial
#     is returned or cached
#
# On timeout the in-flight fetches are not cancelled. They are abandoned:
# their eventual result is discarded (and any exception is retrieved and
# logged at debug level so the loop does not warn about it).
#
# The fetcher remembers the hash of the last complete batch. The response
# cache is consulted BEFORE fetching, with that hash, so a cache hit costs
# no external calls.
# =============================================================================

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from typing import Any, Protocol

import httpx

from fundbot.config import settings
from fundbot.services.errors import GroundingUnavailable

logger = logging.getLogger(__name__)


class GroundingSource(Protocol):
    name: str

    async def fetch(self) -> Any: ...


class HttpJsonSource:
    """A read-only JSON endpoint, bounded by its own per-call timeout."""

    def __init__(
        self,
        name: str,
        url: str,
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.name = name
        self.url = url
        self._timeout = timeout or settings.grounding_call_timeout_seconds
        self._headers = headers or {}

    async def fetch(self) -> Any:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.get(self.url, headers=self._headers)
            response.raise_for_status()
            return response.json()


def hash_context(data: Any) -> str:
    """Short stable digest of a grounding batch."""
    encoded = json.dumps(data, sort_keys=True, default=str).encode()
    return hashlib.sha256(encoded).hexdigest()[:16]


def _discard(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Abandoned grounding fetch finished with %r", exc)


class GroundingFetcher:
    def __init__(
        self,
        sources: list[GroundingSource],
        batch_timeout: float | None = None,
    ) -> None:
        self.sources = list(sources)
        self.batch_timeout = batch_timeout or settings.grounding_batch_timeout_seconds
        self.last_hash: str | None = None

    async def fetch_all(self) -> tuple[dict[str, Any], str | None]:
        """
        Fetch every source concurrently.

        Returns:
            (snapshots by source name, context hash). With no sources
            configured: ({}, None).

        Raises:
            GroundingUnavailable: on timeout or any source failure.
        """
        if not self.sources:
            return {}, None

        batch = asyncio.ensure_future(
            asyncio.gather(*(source.fetch() for source in self.sources))
        )
        done, _ = await asyncio.wait({batch}, timeout=self.batch_timeout)

        if not done:
            batch.add_done_callback(_discard)
            logger.warning(
                "Grounding batch timed out after %.1fs (%d sources)",
                self.batch_timeout, len(self.sources),
            )
            raise GroundingUnavailable(
                f"grounding batch timed out after {self.batch_timeout}s",
            )

        try:
            results = batch.result()
        except Exception as e:
            logger.warning("Grounding fetch failed: %s", e)
            raise GroundingUnavailable(f"grounding fetch failed: {e}") from e

        snapshots = {
            source.name: result
            for source, result in zip(self.sources, results, strict=True)
        }
        self.last_hash = hash_context(snapshots)
        return snapshots, self.last_hash


def sources_from_settings() -> list[GroundingSource]:
    return [
        HttpJsonSource(name, url)
        for name, url in settings.grounding_sources.items()
    ]
