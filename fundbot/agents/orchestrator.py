# =============================================================================
# LangGraph Orchestrator — One Pipeline Run per Inbound Event
# =============================================================================
#
# Wires the pipeline stages into a LangGraph StateGraph. Each node handles
# one stage and returns a partial state update; conditional edges route
# terminal outcomes straight to `respond`.
#
# GRAPH TOPOLOGY:
#
#   START ─▶ gate ─┬─▶ validate ─┬─▶ admit ─┬─▶ cache ─┬─▶ ground ─┬─▶ context ─▶ generate ─┐
#                  │             │          │          │           │                        │
#                  ▼             ▼          ▼          ▼           ▼                        ▼
#                 END         respond ◀─────┴──────────┴───────────┴────────────────────── respond ─▶ END
#
# STATES (PipelineState["status"]):
#   RECEIVED → DROPPED_DUPLICATE | ADMITTED
#   ADMITTED → VALIDATION_FAILED | HELP | RATE_LIMITED | BUDGET_EXCEEDED
#              | CACHE_HIT | GENERATING
#   HELP, CACHE_HIT → SUCCESS
#   GENERATING → SUCCESS | FAILED | BUDGET_EXCEEDED
#
# BUDGET is checked twice: at admission against the role prompt and message,
# and again before generation against the full prompt (grounding + history).
#
# Only GENERATING reaches the provider. Retries happen inside the invoker;
# this layer never re-enters GENERATING.
#
# SIDE EFFECTS are all driven from here: progress markers (scheduled as
# tasks, collected at the end of the run), the reply, and the writes to the
# response cache and context store. Any exception escaping the graph is
# caught in handle_event() and turned into the generic failure reply.
#
# The graph is compiled once per orchestrator. No checkpointer is
# configured, so non-serialisable values (InboundEvent) in state are fine.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from fundbot.agents.prompts import (
    GREETING,
    ROLE_PROMPT,
    build_system_prompt,
    help_message,
)
from fundbot.config import settings
from fundbot.models.events import HistoryMessage, InboundEvent
from fundbot.services import sanitizer
from fundbot.services.admission import (
    AdmissionController,
    budget_message,
    rate_limited_message,
)
from fundbot.services.cache import ResponseCache
from fundbot.services.context_store import ContextStore
from fundbot.services.errors import FundBotError, GenerationFailed, GroundingUnavailable
from fundbot.services.event_gate import EventGate, GateResult
from fundbot.services.grounding import GroundingFetcher
from fundbot.services.invoker import ResilientInvoker
from fundbot.services.pricing import count_tokens, projected_tokens

logger = logging.getLogger(__name__)


class Status(str, Enum):
    RECEIVED = "RECEIVED"
    DROPPED_DUPLICATE = "DROPPED_DUPLICATE"
    ADMITTED = "ADMITTED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    HELP = "HELP"
    RATE_LIMITED = "RATE_LIMITED"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    CACHE_HIT = "CACHE_HIT"
    GENERATING = "GENERATING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


_REJECTIONS = {Status.VALIDATION_FAILED, Status.RATE_LIMITED, Status.BUDGET_EXCEEDED}


class Marker(str, Enum):
    """Reaction names used as progress markers on the original message."""

    WORKING = "thinking_face"
    DONE = "white_check_mark"
    FAILED = "x"
    REJECTED = "no_entry_sign"


class ChatPlatform(Protocol):
    async def post_message(
        self, channel: str, text: str, thread_ts: str | None = None,
    ) -> Any: ...

    async def add_reaction(self, channel: str, timestamp: str, name: str) -> bool: ...

    async def fetch_history(
        self, channel: str, thread_ref: str, limit: int,
    ) -> list[HistoryMessage]: ...


# ---------------------------------------------------------------------------
# Pipeline State Schema
# ---------------------------------------------------------------------------


class PipelineState(TypedDict, total=False):
    """
    State that flows through the graph.

    total=False so nodes only return the keys they update.
    """

    # --- Input ---
    event: InboundEvent
    correlation_id: str

    # --- Progress ---
    status: Status
    trail: list[Status]  # every status visited, in order

    # --- Intermediate ---
    text: str
    warnings: list[str]
    grounding: dict[str, Any]
    context_hash: str | None
    history: list[dict[str, str]]

    # --- Output ---
    reply: str
    error_kind: str | None
    input_tokens: int
    output_tokens: int
    attempts: int
    request_cost: float


def _advance(state: PipelineState, status: Status, **updates) -> dict:
    return {
        "status": status,
        "trail": [*state.get("trail", []), status],
        **updates,
    }


def failure_reply(message: str, correlation_id: str) -> str:
    return f"{message} (ref: {correlation_id})"


def is_addressed(event: InboundEvent, listen_channels: list[str] | None = None) -> bool:
    """
    Should the bot answer this event at all?

    Bot-authored messages never; otherwise @-mentions, DMs, and any message
    in a listen-all channel.
    """
    if event.bot_marker:
        return False
    listen = settings.listen_all_channels if listen_channels is None else listen_channels
    return (
        event.kind == "app_mention"
        or event.channel_kind == "im"
        or event.channel in listen
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class ConversationOrchestrator:
    def __init__(
        self,
        gate: EventGate,
        admission: AdmissionController,
        cache: ResponseCache,
        context: ContextStore,
        invoker: ResilientInvoker,
        grounding: GroundingFetcher,
        chat: ChatPlatform,
        token_counter: Callable[[str], int] = count_tokens,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.gate = gate
        self.admission = admission
        self.cache = cache
        self.context = context
        self.invoker = invoker
        self.grounding = grounding
        self.chat = chat
        self._count_tokens = token_counter
        self._clock = clock
        self._markers: dict[str, list[asyncio.Task]] = {}
        self.graph = self._build_graph()

    def _build_graph(self):
        builder = StateGraph(PipelineState)
        builder.add_node("gate", self.gate_node)
        builder.add_node("validate", self.validate_node)
        builder.add_node("admit", self.admit_node)
        builder.add_node("cache", self.cache_node)
        builder.add_node("ground", self.ground_node)
        builder.add_node("context", self.context_node)
        builder.add_node("generate", self.generate_node)
        builder.add_node("respond", self.respond_node)

        builder.add_edge(START, "gate")
        builder.add_conditional_edges(
            "gate", _route(Status.ADMITTED, "validate", END),
            {"validate": "validate", END: END},
        )
        builder.add_conditional_edges(
            "validate", _route(Status.ADMITTED, "admit", "respond"),
            {"admit": "admit", "respond": "respond"},
        )
        builder.add_conditional_edges(
            "admit", _route(Status.ADMITTED, "cache", "respond"),
            {"cache": "cache", "respond": "respond"},
        )
        builder.add_conditional_edges(
            "cache", _route(Status.GENERATING, "ground", "respond"),
            {"ground": "ground", "respond": "respond"},
        )
        builder.add_conditional_edges(
            "ground", _route(Status.GENERATING, "context", "respond"),
            {"context": "context", "respond": "respond"},
        )
        builder.add_edge("context", "generate")
        builder.add_edge("generate", "respond")
        builder.add_edge("respond", END)
        return builder.compile()

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def handle_event(self, event: InboundEvent) -> PipelineState:
        """
        Run one event through the pipeline. Never raises.

        Returns the final state; `status` is DROPPED_DUPLICATE, SUCCESS or
        FAILED, or one of the rejection statuses.
        """
        correlation_id = uuid.uuid4().hex[:8]
        initial: PipelineState = {
            "event": event,
            "correlation_id": correlation_id,
            "status": Status.RECEIVED,
            "trail": [Status.RECEIVED],
            "warnings": [],
        }
        logger.info(
            "[%s] Event from %s in %s (thread=%s)",
            correlation_id, event.originator, event.channel, event.thread_id,
        )

        try:
            result = await self.graph.ainvoke(initial)
        except Exception as e:
            logger.exception("[%s] Pipeline failed: %s", correlation_id, e)
            result = {
                **initial,
                **_advance(initial, Status.FAILED),
                "reply": failure_reply(FundBotError.user_message, correlation_id),
                "error_kind": "unknown",
            }
            await self._reply_safely(event, result["reply"], correlation_id)
            self._mark(correlation_id, event, Marker.FAILED)
        finally:
            await self._collect_markers(correlation_id)

        logger.info(
            "[%s] Finished: %s",
            correlation_id, " → ".join(s.value for s in result["trail"]),
        )
        return result

    async def sweep_expired(self) -> None:
        """Periodic maintenance across the shared stores."""
        await self.admission.sweep_expired()
        await self.cache.sweep_expired()
        await self.context.sweep_expired()

    # -----------------------------------------------------------------------
    # Node Functions
    # -----------------------------------------------------------------------

    async def gate_node(self, state: PipelineState) -> dict:
        event = state["event"]
        if await self.gate.admit(event) is GateResult.DUPLICATE:
            return _advance(state, Status.DROPPED_DUPLICATE)
        self._mark(state["correlation_id"], event, Marker.WORKING)
        return _advance(state, Status.ADMITTED)

    async def validate_node(self, state: PipelineState) -> dict:
        cleaned = sanitizer.clean_message_text(state["event"].text)
        if state["event"].text.strip() and not cleaned.strip():
            return _advance(state, Status.HELP, reply=GREETING)

        result = sanitizer.validate(cleaned)
        if not result.valid:
            logger.info(
                "[%s] Validation failed: %s",
                state["correlation_id"], result.reason.value,
            )
            return _advance(state, Status.VALIDATION_FAILED, reply=result.message)

        if sanitizer.is_help_request(result.sanitized_text):
            return _advance(state, Status.HELP, reply=help_message())

        return {"text": result.sanitized_text}

    async def admit_node(self, state: PipelineState) -> dict:
        requester = state["event"].originator
        text = state["text"]

        rate = await self.admission.check_rate(requester)
        if not rate.allowed:
            return _advance(
                state, Status.RATE_LIMITED,
                reply=rate_limited_message(rate.reset_at, self._clock()),
            )

        projected = projected_tokens(
            ROLE_PROMPT, text, counter=self._count_tokens,
        )
        budget = await self.admission.check_budget(requester, projected)
        if not budget.allowed:
            return _advance(
                state, Status.BUDGET_EXCEEDED, reply=budget_message(0.0),
            )

        warnings = list(state.get("warnings", []))
        if rate.warning:
            warnings.append(rate.warning)
        return {"warnings": warnings}

    async def cache_node(self, state: PipelineState) -> dict:
        event = state["event"]
        if event.is_fresh_thread:
            cached = await self.cache.lookup(state["text"], self.grounding.last_hash)
            if cached is not None:
                return _advance(state, Status.CACHE_HIT, reply=cached)
        return _advance(state, Status.GENERATING)

    async def ground_node(self, state: PipelineState) -> dict:
        try:
            snapshots, context_hash = await self.grounding.fetch_all()
        except GroundingUnavailable as e:
            logger.warning("[%s] %s", state["correlation_id"], e)
            return _advance(
                state, Status.FAILED,
                reply=e.user_message, error_kind="grounding",
            )
        return {"grounding": snapshots, "context_hash": context_hash}

    async def context_node(self, state: PipelineState) -> dict:
        event = state["event"]
        if event.is_fresh_thread:
            return {"history": []}
        history = await self.context.read_with_fallback(
            event.thread_id, event.channel, latest=event.primary_timestamp,
        )
        return {"history": history}

    async def generate_node(self, state: PipelineState) -> dict:
        event = state["event"]
        correlation_id = state["correlation_id"]
        text = state["text"]
        system_prompt = build_system_prompt(state.get("grounding", {}))
        history = state.get("history", [])

        # Full worst case, now that grounding and history are known.
        projected = projected_tokens(
            system_prompt, text, history, counter=self._count_tokens,
        )
        budget = await self.admission.check_budget(event.originator, projected)
        if not budget.allowed:
            return _advance(
                state, Status.BUDGET_EXCEEDED, reply=budget_message(0.0),
            )

        try:
            result = await self.invoker.generate(
                system_prompt,
                text,
                history,
                correlation_id=correlation_id,
            )
        except GenerationFailed as e:
            return _advance(
                state, Status.FAILED,
                reply=e.user_message,
                error_kind=e.kind.value,
                attempts=e.attempts,
            )

        cost = await self.admission.track_cost(
            event.originator, result.input_tokens, result.output_tokens,
        )
        if event.is_fresh_thread:
            await self.cache.store(text, result.text, state.get("context_hash"))

        warnings = list(state.get("warnings", []))
        low_budget = budget_message(cost.remaining_budget)
        if low_budget:
            warnings.append(low_budget)

        return _advance(
            state, Status.SUCCESS,
            reply=result.text,
            warnings=warnings,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            attempts=result.attempts,
            request_cost=cost.request_cost,
        )

    async def respond_node(self, state: PipelineState) -> dict:
        event = state["event"]
        correlation_id = state["correlation_id"]
        arrived_as = state["status"]
        status = arrived_as
        update: dict = {}

        if arrived_as in (Status.HELP, Status.CACHE_HIT):
            update = _advance(state, Status.SUCCESS)
            status = Status.SUCCESS

        reply = state.get("reply", "")
        if status is Status.FAILED:
            reply = failure_reply(reply, correlation_id)
            update["reply"] = reply
            logger.error(
                "[%s] Request failed (%s)",
                correlation_id, state.get("error_kind"),
            )
        elif status is Status.SUCCESS and state.get("warnings"):
            reply = "\n\n".join([reply, *state["warnings"]])

        # Answered turns (generated or cached) become thread context; help
        # replies and rejections do not.
        if arrived_as in (Status.SUCCESS, Status.CACHE_HIT):
            await self.context.append_many(
                event.thread_id,
                [("user", state["text"]), ("assistant", state["reply"])],
            )

        await self.chat.post_message(event.channel, reply, thread_ts=event.thread_id)

        if status is Status.SUCCESS:
            self._mark(correlation_id, event, Marker.DONE)
        elif status in _REJECTIONS:
            self._mark(correlation_id, event, Marker.REJECTED)
        else:
            self._mark(correlation_id, event, Marker.FAILED)
        return update

    # -----------------------------------------------------------------------
    # Side-Effect Helpers
    # -----------------------------------------------------------------------

    def _mark(self, correlation_id: str, event: InboundEvent, marker: Marker) -> None:
        """Schedule a best-effort reaction without waiting for it."""
        task = asyncio.create_task(
            self.chat.add_reaction(event.channel, event.primary_timestamp, marker.value)
        )
        self._markers.setdefault(correlation_id, []).append(task)

    async def _collect_markers(self, correlation_id: str) -> None:
        tasks = self._markers.pop(correlation_id, [])
        for outcome in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(outcome, Exception):
                logger.warning(
                    "[%s] Progress marker failed: %s", correlation_id, outcome,
                )

    async def _reply_safely(
        self, event: InboundEvent, text: str, correlation_id: str,
    ) -> None:
        try:
            await self.chat.post_message(event.channel, text, thread_ts=event.thread_id)
        except Exception as e:
            logger.error("[%s] Could not post failure reply: %s", correlation_id, e)


def _route(proceed_status: Status, proceed: str, otherwise: str):
    """Conditional-edge function: continue while status == proceed_status."""
    def _next(state: PipelineState) -> str:
        return proceed if state["status"] is proceed_status else otherwise
    return _next


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_orchestrator(
    chat: ChatPlatform | None = None,
    backend: str | None = None,
) -> ConversationOrchestrator:
    """
    Assemble the pipeline from settings.

    Every store is created through create_store(), so a single
    STATE_BACKEND switch moves all shared state to Redis.

    Raises:
        ValueError: if the configured LLM provider has no API key.
    """
    from fundbot.models.state import (
        BudgetLedger,
        CacheEntry,
        DedupMark,
        RequesterWindow,
        ThreadContext,
    )
    from fundbot.services.grounding import sources_from_settings
    from fundbot.services.llm import get_llm_provider
    from fundbot.services.slack import SlackClient
    from fundbot.services.state import create_store

    chat = chat or SlackClient()
    gate = EventGate(
        create_store(
            "dedup", DedupMark,
            expire_seconds=settings.dedup_sweep_interval_seconds, backend=backend,
        ),
        sweep_interval=settings.dedup_sweep_interval_seconds,
    )
    admission = AdmissionController(
        create_store(
            "rate", RequesterWindow,
            expire_seconds=settings.rate_limit_window_seconds, backend=backend,
        ),
        create_store(
            "budget", BudgetLedger,
            expire_seconds=settings.budget_window_seconds, backend=backend,
        ),
    )
    cache = ResponseCache(
        create_store(
            "cache", CacheEntry,
            expire_seconds=settings.cache_long_ttl_seconds, backend=backend,
        ),
    )
    context = ContextStore(
        create_store(
            "threads", ThreadContext,
            expire_seconds=settings.thread_ttl_seconds, backend=backend,
        ),
        history=chat,
    )
    return ConversationOrchestrator(
        gate=gate,
        admission=admission,
        cache=cache,
        context=context,
        invoker=ResilientInvoker(get_llm_provider()),
        grounding=GroundingFetcher(sources_from_settings()),
        chat=chat,
    )
