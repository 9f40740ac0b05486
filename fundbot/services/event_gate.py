# =============================================================================
# Event Gate — Inbound Event Deduplication
# =============================================================================
#
# Slack redelivers an event when it does not see a fast 200, and sends the
# same channel message as both `message` and `app_mention`. The gate admits
# each (channel, ts, event_ts) identity once.
#
# SWEEP SEMANTICS: the admitted-key set is cleared as a whole once the sweep
# interval has elapsed since the previous sweep. There is no per-entry
# expiry, so a redelivery that straddles a sweep boundary is admitted again.
# The sweep is checked lazily on admit, so it also works on hosts with no
# background loop.
# =============================================================================

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from enum import Enum

from fundbot.models.events import InboundEvent
from fundbot.models.state import DedupMark
from fundbot.services.state import KeyedStore

logger = logging.getLogger(__name__)


class GateResult(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"


class EventGate:
    def __init__(
        self,
        store: KeyedStore[DedupMark],
        sweep_interval: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._last_sweep = clock()

    async def admit(self, event: InboundEvent) -> GateResult:
        """Record the event's identity; DUPLICATE if it was already admitted."""
        now = self._clock()
        if now - self._last_sweep >= self._sweep_interval:
            await self.sweep()

        def _mark(current: DedupMark | None):
            if current is not None:
                return current, GateResult.DUPLICATE
            return DedupMark(admitted_at=now), GateResult.ACCEPTED

        result = await self._store.update(event.dedup_key, _mark)
        if result is GateResult.DUPLICATE:
            logger.info("Dropping duplicate event %s", event.dedup_key)
        return result

    async def sweep(self) -> None:
        """Forget every admitted key at once."""
        count = await self._store.size()
        await self._store.clear()
        self._last_sweep = self._clock()
        if count:
            logger.info("Dedup sweep cleared %d event key(s)", count)
