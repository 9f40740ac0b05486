# =============================================================================
# Resilient Invoker — Bounded Retries with Backoff & Error Classification
# =============================================================================
#
# Wraps a single-attempt LLMProvider.generate() call:
#
#   classify_error(exc)          → ErrorKind           (pure)
#   retry_decision(attempt, exc) → RetryDecision       (pure, jitter injected)
#   ResilientInvoker.generate()  → GenerationResult    (tenacity runs the waits)
#
# POLICY:
#   retryable   — 429 throttling, 5xx, network reset / timeout / unknown host
#   terminal    — authentication, context too large, other 4xx, unknown
#   attempts    — 1 + max_retries (default 3 retries)
#   delay       — min(base * 2^attempt + jitter, max_delay), attempt 0-based
#
# Whatever happens, the requester sees one of the fixed messages in
# USER_MESSAGES. Provider error text is logged, never returned.
#
# The backoff sleep blocks only the calling unit of work; no shared lock
# is held while waiting.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import random
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from fundbot.config import settings
from fundbot.services.errors import ErrorKind, GenerationFailed, ProviderError
from fundbot.services.llm import LLMProvider

logger = logging.getLogger(__name__)

_NETWORK_CODES = {"ECONNRESET", "ETIMEDOUT", "ENOTFOUND"}
_CONTEXT_MARKERS = ("context_length_exceeded", "prompt is too long", "too many tokens")

USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.RATE_LIMITED: (
        "I'm receiving too many requests right now. "
        "Please try again in a moment."
    ),
    ErrorKind.AUTHENTICATION: (
        "There's an authentication issue with my AI service. "
        "Please contact the team."
    ),
    ErrorKind.SERVER_ERROR: (
        "My AI service is experiencing issues. "
        "Please try again in a few moments."
    ),
    ErrorKind.NETWORK: (
        "The request timed out. Please try asking your question again."
    ),
    ErrorKind.CONTEXT_TOO_LARGE: (
        "Your question is too complex or the conversation is too long. "
        "Try starting a new thread or asking a simpler question."
    ),
    ErrorKind.BAD_REQUEST: (
        "I couldn't process that request. Please rephrase your question."
    ),
    ErrorKind.UNKNOWN: (
        "Something went wrong while I was working on that. "
        "Please try again or rephrase your question."
    ),
}


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class GenerationResult:
    text: str
    input_tokens: int
    output_tokens: int
    attempts: int
    model: str = ""


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float  # seconds; 0 when retry is False
    kind: ErrorKind


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 1.0

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_retries=settings.llm_max_retries,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            jitter=settings.retry_jitter_seconds,
        )


# ---------------------------------------------------------------------------
# Pure Policy Functions
# ---------------------------------------------------------------------------


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception raised by a generation attempt to an ErrorKind."""
    if isinstance(exc, ProviderError):
        if exc.status is not None:
            return _classify_status(exc.status, str(exc))
        if exc.code in _NETWORK_CODES:
            return ErrorKind.NETWORK
        return ErrorKind.UNKNOWN

    if isinstance(
        exc,
        (
            asyncio.TimeoutError,
            ConnectionError,
            socket.gaierror,
            httpx.TimeoutException,
            httpx.NetworkError,
        ),
    ):
        return ErrorKind.NETWORK

    return ErrorKind.UNKNOWN


def _classify_status(status: int, message: str) -> ErrorKind:
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status >= 500:
        return ErrorKind.SERVER_ERROR
    if status in (401, 403):
        return ErrorKind.AUTHENTICATION
    lowered = message.lower()
    if status in (400, 413) and any(m in lowered for m in _CONTEXT_MARKERS):
        return ErrorKind.CONTEXT_TOO_LARGE
    return ErrorKind.BAD_REQUEST


def backoff_delay(
    attempt: int,
    policy: RetryPolicy,
    rng: Callable[[], float] = random.random,
) -> float:
    """min(base * 2^attempt + U[0, jitter), max_delay)."""
    delay = policy.base_delay * (2 ** attempt) + rng() * policy.jitter
    return min(delay, policy.max_delay)


def retry_decision(
    attempt: int,
    exc: BaseException,
    policy: RetryPolicy | None = None,
    rng: Callable[[], float] = random.random,
) -> RetryDecision:
    """
    Decide what to do after attempt number `attempt` (0-based) failed.

    Retries only retryable kinds and only while attempts remain.
    """
    policy = policy or RetryPolicy.from_settings()
    kind = classify_error(exc)
    if not kind.retryable or attempt >= policy.max_retries:
        return RetryDecision(retry=False, delay=0.0, kind=kind)
    return RetryDecision(
        retry=True,
        delay=backoff_delay(attempt, policy, rng),
        kind=kind,
    )


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class ResilientInvoker:
    """
    Drives provider attempts through tenacity.AsyncRetrying.

    The stop, wait and retry hooks all defer to the pure policy above, and
    `sleep` is injectable so retry sequences run instantly in tests.
    """

    def __init__(
        self,
        provider: LLMProvider,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._provider = provider
        self.policy = policy or RetryPolicy.from_settings()
        self._sleep = sleep
        self._rng = rng

    def _wait(self, retry_state: RetryCallState) -> float:
        decision = retry_decision(
            retry_state.attempt_number - 1,
            retry_state.outcome.exception(),
            self.policy,
            self._rng,
        )
        return decision.delay

    def _retrying(self, correlation_id: str) -> AsyncRetrying:
        def _log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception()
            logger.warning(
                "[%s] Attempt %d failed (%s): %s; retrying in %.2fs",
                correlation_id,
                retry_state.attempt_number,
                classify_error(exc).value,
                exc,
                retry_state.next_action.sleep,
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(lambda e: classify_error(e).retryable),
            sleep=self._sleep,
            before_sleep=_log_retry,
            reraise=True,
        )

    async def generate(
        self,
        system_prompt: str,
        message: str,
        history: list[dict[str, str]] | None = None,
        correlation_id: str = "-",
    ) -> GenerationResult:
        """
        Call the provider until it succeeds or the policy says stop.

        Raises:
            GenerationFailed: with the requester-facing message for the
                last error's kind and the number of attempts made.
        """
        attempts = 0
        try:
            async for attempt in self._retrying(correlation_id):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    logger.info(
                        "[%s] Generation attempt %d/%d",
                        correlation_id, attempts, self.policy.max_retries + 1,
                    )
                    response = await self._provider.generate(
                        system_prompt, message, history,
                    )
        except Exception as e:
            kind = classify_error(e)
            logger.error(
                "[%s] Giving up after %d attempt(s) (%s): %s",
                correlation_id, attempts, kind.value, e,
            )
            raise GenerationFailed(
                kind, USER_MESSAGES[kind], attempts=attempts,
            ) from e

        logger.info(
            "[%s] Generation succeeded: input_tokens=%d output_tokens=%d",
            correlation_id, response.input_tokens, response.output_tokens,
        )
        return GenerationResult(
            text=response.content,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            attempts=attempts,
            model=response.model,
        )
