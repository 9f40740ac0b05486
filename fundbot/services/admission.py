# =============================================================================
# Admission Controller — Per-Requester Rate Limit & Daily Cost Budget
# =============================================================================
#
# Two independent gates, both keyed by requester (Slack user ID):
#
# RATE LIMIT — fixed window. The first request after the previous window's
# end opens a new window of `window_seconds`. Every request increments the
# counter (rejected ones too); a request is allowed iff count <= max. Once
# count reaches `warning_fraction * max` (and is still below max) the
# decision carries a soft warning for the requester.
#
# DAILY BUDGET — rolling 24h ledger of tokens and blended cost.
#   check_budget(): before generation, with a worst-case token projection.
#   track_cost():   after generation, with actual token counts.
# Once the ledger's cost reaches the cap, every check fails until the
# window rolls over. There is no override path.
#
# Both ledgers are best-effort: on the memory backend they reset on cold
# start, which is accepted for abuse/cost mitigation.
# =============================================================================

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from fundbot.config import settings
from fundbot.models.state import BudgetLedger, RequesterWindow
from fundbot.services.pricing import estimate_cost
from fundbot.services.state import KeyedStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class RateDecision:
    allowed: bool
    remaining: int
    reset_at: float
    warning: str | None = None


@dataclass
class BudgetDecision:
    allowed: bool
    remaining: float  # USD left in the current window


@dataclass
class CostRecord:
    estimated_cost: float  # cumulative for the window
    remaining_budget: float
    request_cost: float


# ---------------------------------------------------------------------------
# Admission Controller
# ---------------------------------------------------------------------------


class AdmissionController:
    def __init__(
        self,
        rate_store: KeyedStore[RequesterWindow],
        budget_store: KeyedStore[BudgetLedger],
        max_requests: int | None = None,
        window_seconds: float | None = None,
        warning_fraction: float | None = None,
        daily_budget: float | None = None,
        budget_window_seconds: float | None = None,
        rate_per_million: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._rates = rate_store
        self._budgets = budget_store
        self.max_requests = max_requests or settings.rate_limit_max_requests
        self.window_seconds = window_seconds or settings.rate_limit_window_seconds
        fraction = (
            settings.rate_limit_warning_fraction
            if warning_fraction is None else warning_fraction
        )
        self.warning_threshold = math.ceil(self.max_requests * fraction)
        self.daily_budget = (
            settings.daily_budget_usd if daily_budget is None else daily_budget
        )
        self.budget_window_seconds = (
            budget_window_seconds or settings.budget_window_seconds
        )
        self.rate_per_million = (
            settings.cost_per_million_tokens
            if rate_per_million is None else rate_per_million
        )
        self._clock = clock

    # -----------------------------------------------------------------------
    # Rate limit
    # -----------------------------------------------------------------------

    async def check_rate(self, requester_id: str) -> RateDecision:
        """Count this request against the requester's window."""
        now = self._clock()

        def _increment(current: RequesterWindow | None):
            if current is None or now >= current.window_end:
                current = RequesterWindow(
                    requester_id=requester_id,
                    window_start=now,
                    window_end=now + self.window_seconds,
                )
            updated = current.model_copy(update={"count": current.count + 1})
            return updated, updated

        window: RequesterWindow = await self._rates.update(
            requester_id, _increment,
        )

        remaining = max(0, self.max_requests - window.count)
        allowed = window.count <= self.max_requests

        warning = None
        if self.warning_threshold <= window.count < self.max_requests:
            warning = rate_warning_message(remaining, self.window_seconds)

        if not allowed:
            logger.info(
                "Rate limit hit for %s (%d/%d, resets in %.0fs)",
                requester_id, window.count, self.max_requests,
                window.window_end - now,
            )

        return RateDecision(
            allowed=allowed,
            remaining=remaining,
            reset_at=window.window_end,
            warning=warning,
        )

    # -----------------------------------------------------------------------
    # Daily budget
    # -----------------------------------------------------------------------

    def _fresh_ledger(self, requester_id: str, now: float) -> BudgetLedger:
        return BudgetLedger(
            requester_id=requester_id,
            window_end=now + self.budget_window_seconds,
        )

    async def _current_ledger(self, requester_id: str) -> BudgetLedger | None:
        ledger = await self._budgets.get(requester_id)
        if ledger is None or self._clock() >= ledger.window_end:
            return None
        return ledger

    async def check_budget(
        self,
        requester_id: str,
        projected_tokens: int = 0,
    ) -> BudgetDecision:
        """
        Would a request costing up to `projected_tokens` stay within budget?

        Read-only: nothing is charged until track_cost().
        """
        ledger = await self._current_ledger(requester_id)
        spent = ledger.estimated_cost if ledger else 0.0
        remaining = max(0.0, self.daily_budget - spent)

        if spent >= self.daily_budget:
            return BudgetDecision(allowed=False, remaining=0.0)

        projected = estimate_cost(projected_tokens, 0, self.rate_per_million)
        allowed = spent + projected <= self.daily_budget
        if not allowed:
            logger.info(
                "Budget check failed for %s: spent=$%.4f projected=$%.4f cap=$%.2f",
                requester_id, spent, projected, self.daily_budget,
            )
        return BudgetDecision(allowed=allowed, remaining=remaining)

    async def track_cost(
        self,
        requester_id: str,
        input_tokens: int,
        output_tokens: int,
    ) -> CostRecord:
        """Charge a completed generation to the requester's ledger."""
        now = self._clock()
        request_cost = estimate_cost(
            input_tokens, output_tokens, self.rate_per_million,
        )

        def _charge(current: BudgetLedger | None):
            if current is None or now >= current.window_end:
                current = self._fresh_ledger(requester_id, now)
            updated = current.model_copy(update={
                "tokens_used": current.tokens_used + input_tokens + output_tokens,
                "estimated_cost": current.estimated_cost + request_cost,
                "request_count": current.request_count + 1,
            })
            return updated, updated

        ledger: BudgetLedger = await self._budgets.update(requester_id, _charge)
        remaining = max(0.0, self.daily_budget - ledger.estimated_cost)

        logger.info(
            "Cost for %s: +$%.4f (total $%.4f, remaining $%.4f)",
            requester_id, request_cost, ledger.estimated_cost, remaining,
        )
        return CostRecord(
            estimated_cost=ledger.estimated_cost,
            remaining_budget=remaining,
            request_cost=request_cost,
        )

    # -----------------------------------------------------------------------
    # Stats & maintenance
    # -----------------------------------------------------------------------

    async def rate_stats(self, requester_id: str) -> dict:
        now = self._clock()
        window = await self._rates.get(requester_id)
        if window is None or now >= window.window_end:
            return {
                "request_count": 0,
                "remaining": self.max_requests,
                "reset_at": now + self.window_seconds,
            }
        return {
            "request_count": window.count,
            "remaining": max(0, self.max_requests - window.count),
            "reset_at": window.window_end,
        }

    async def cost_stats(self, requester_id: str) -> dict:
        now = self._clock()
        ledger = await self._current_ledger(requester_id)
        if ledger is None:
            return {
                "tokens_used": 0,
                "estimated_cost": 0.0,
                "request_count": 0,
                "budget_remaining": self.daily_budget,
                "reset_at": now + self.budget_window_seconds,
            }
        return {
            "tokens_used": ledger.tokens_used,
            "estimated_cost": ledger.estimated_cost,
            "request_count": ledger.request_count,
            "budget_remaining": max(0.0, self.daily_budget - ledger.estimated_cost),
            "reset_at": ledger.window_end,
        }

    async def sweep_expired(self) -> int:
        """Drop windows and ledgers whose window has ended."""
        now = self._clock()
        cleaned = 0
        for store in (self._rates, self._budgets):
            for key, entry in await store.items():
                if now >= entry.window_end:
                    await store.update(key, _drop_if_expired(now))
                    cleaned += 1
        if cleaned:
            logger.info("Cleaned up %d expired admission entries", cleaned)
        return cleaned


def _drop_if_expired(now: float):
    def _drop(current):
        if current is not None and now >= current.window_end:
            return None, None
        return current, None
    return _drop


# ---------------------------------------------------------------------------
# Requester-Facing Messages
# ---------------------------------------------------------------------------


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def rate_limited_message(reset_at: float, now: float | None = None) -> str:
    now = time.time() if now is None else now
    minutes = max(1, math.ceil((reset_at - now) / 60))
    return (
        ":double_vertical_bar: You've reached your rate limit. "
        f"Please try again in {_plural(minutes, 'minute')}."
    )


def rate_warning_message(remaining: int, window_seconds: float) -> str:
    return (
        f":warning: You're approaching your rate limit "
        f"({_plural(remaining, 'request')} remaining in this "
        f"{int(window_seconds // 60)} min window)."
    )


def budget_message(budget_remaining: float, low_threshold: float | None = None) -> str:
    """Exhaustion message at zero, warning under the threshold, else ''."""
    threshold = settings.low_budget_warning_usd if low_threshold is None else low_threshold
    if budget_remaining <= 0:
        return (
            ":moneybag: Daily budget limit reached. Your requests will "
            "resume tomorrow. This helps control costs."
        )
    if budget_remaining < threshold:
        return (
            ":moneybag: You're approaching your daily budget limit "
            f"(${budget_remaining:.2f} remaining)."
        )
    return ""
