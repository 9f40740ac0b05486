# =============================================================================
# Error Taxonomy — Pipeline Failure Kinds
# =============================================================================
#
# Every failure a pipeline stage can produce, each mapping to exactly one
# user-facing message. Provider error text, stack traces and status codes
# stay in the logs; only `user_message` reaches the requester.
#
#   Outcome              Origin               Retried   Surfaces as
#   duplicate event      event gate           no        DROPPED_DUPLICATE, silent
#   validation failure   input sanitizer      no        VALIDATION_FAILED + reason
#   rate limited         admission            no        RATE_LIMITED + reset ETA
#   budget exceeded      admission            no        BUDGET_EXCEEDED, hard stop
#   bad signature        webhook boundary     no        HTTP 401 + log
#   GenerationFailed     resilient invoker    internal  FAILED + kind message
#   GroundingUnavailable grounding fetch      no        FAILED + generic message
#   anything else        orchestrator         no        FAILED + FundBotError message
#
# Rejections are ordinary pipeline outcomes and are returned as statuses,
# not raised. Only failures that unwind a stage are exceptions.
# =============================================================================

from __future__ import annotations

from enum import Enum


class FundBotError(Exception):
    """Base class for pipeline errors with a requester-safe message."""

    user_message: str = (
        "Something went wrong while I was working on that. "
        "Please try again or rephrase your question."
    )

    def __init__(self, detail: str = "", user_message: str | None = None):
        super().__init__(detail or self.__class__.__name__)
        if user_message is not None:
            self.user_message = user_message


class GroundingUnavailable(FundBotError):
    user_message = (
        "Portfolio data is temporarily unavailable. "
        "Please try again in a few minutes."
    )


class ErrorKind(str, Enum):
    """Classification of a generation-provider failure."""

    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    CONTEXT_TOO_LARGE = "context_too_large"
    BAD_REQUEST = "bad_request"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE


_RETRYABLE = {ErrorKind.RATE_LIMITED, ErrorKind.SERVER_ERROR, ErrorKind.NETWORK}


class ProviderError(Exception):
    """
    Normalised error raised by an LLM provider adapter.

    `status` is the HTTP status when there was a response; `code` carries a
    network error code ("ECONNRESET", "ETIMEDOUT", "ENOTFOUND") otherwise.
    Used purely for retry classification.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.code = code


class GenerationFailed(FundBotError):
    """Raised by the invoker once retries are exhausted or not allowed."""

    def __init__(self, kind: ErrorKind, user_message: str, attempts: int):
        super().__init__(
            f"generation failed: kind={kind.value} attempts={attempts}",
            user_message=user_message,
        )
        self.kind = kind
        self.attempts = attempts
