# =============================================================================
# Multi-Provider LLM Abstraction — Pluggable Generation Backend
# =============================================================================
#
# Provides a common `generate(system_prompt, message, history)` interface
# with concrete implementations for Anthropic (Claude) and OpenAI-compatible
# APIs (OpenAI, DeepSeek, Qwen, ...).
#
# Each provider makes exactly ONE attempt: SDK-level retries are switched
# off (max_retries=0) and SDK exceptions are translated into ProviderError
# carrying an HTTP status or a network error code. Retry policy lives in
# the resilient invoker, which only looks at that status/code.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — system prompt as top-level kwarg
#   ├── OpenAICompatibleProvider — system prompt as first message
#   └── get_llm_provider()       — singleton factory, reads from config
# =============================================================================

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass
from typing import Protocol

import anthropic
import openai

from fundbot.config import settings
from fundbot.services.errors import ProviderError

logger = logging.getLogger(__name__)

FALLBACK_TEXT = "Sorry, I could not generate a response."


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """Standardised response from any LLM provider."""

    content: str           # The generated text
    model: str             # Model identifier
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """Anything with a single-attempt `generate()` coroutine."""

    async def generate(
        self,
        system_prompt: str,
        message: str,
        history: list[dict[str, str]] | None = None,
    ) -> LLMResponse:
        """
        Generate one reply.

        Args:
            system_prompt: Instructions plus grounding data.
            message: The requester's sanitized question.
            history: Prior thread turns as {"role", "content"} dicts,
                oldest first. Roles: "user", "assistant".

        Raises:
            ProviderError: on any provider or transport failure.
        """
        ...


def _build_messages(
    message: str,
    history: list[dict[str, str]] | None,
) -> list[dict[str, str]]:
    return [*(history or []), {"role": "user", "content": message}]


def _network_code(exc: BaseException) -> str:
    """Map a connection-level failure to a classic network error code."""
    cause = exc.__cause__ or exc.__context__
    while cause is not None:
        if isinstance(cause, socket.gaierror):
            return "ENOTFOUND"
        cause = cause.__cause__ or cause.__context__
    return "ECONNRESET"


def _translate(exc: Exception) -> ProviderError:
    """Normalise an anthropic/openai SDK exception."""
    if isinstance(exc, (anthropic.APITimeoutError, openai.APITimeoutError)):
        return ProviderError(str(exc), code="ETIMEDOUT")
    if isinstance(exc, (anthropic.APIConnectionError, openai.APIConnectionError)):
        return ProviderError(str(exc), code=_network_code(exc))
    status = getattr(exc, "status_code", None)
    return ProviderError(str(exc), status=status)


_SDK_ERRORS = (anthropic.APIError, openai.APIError)


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native async SDK.

    Anthropic takes the system prompt as a top-level `system=` kwarg, NOT as
    a message with role "system".
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
    ) -> None:
        resolved_key = api_key or settings.llm_api_key or settings.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = anthropic.AsyncAnthropic(
            api_key=resolved_key,
            max_retries=0,
            timeout=settings.llm_timeout_seconds,
        )
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    async def generate(
        self,
        system_prompt: str,
        message: str,
        history: list[dict[str, str]] | None = None,
    ) -> LLMResponse:
        try:
            response = await self._client.messages.create(
                model=self._model,
                system=system_prompt,
                messages=_build_messages(message, history),
                max_tokens=self._max_tokens,
                temperature=self._temperature,
            )
        except _SDK_ERRORS as e:
            raise _translate(e) from e

        content = FALLBACK_TEXT
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens or 0,
            output_tokens=response.usage.output_tokens or 0,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Provider for any API that follows the OpenAI chat completions spec.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        resolved_key = api_key or settings.llm_api_key or settings.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {
            "api_key": resolved_key,
            "max_retries": 0,
            "timeout": settings.llm_timeout_seconds,
        }
        resolved_base_url = base_url or settings.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = openai.AsyncOpenAI(**client_kwargs)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    async def generate(
        self,
        system_prompt: str,
        message: str,
        history: list[dict[str, str]] | None = None,
    ) -> LLMResponse:
        messages = [
            {"role": "system", "content": system_prompt},
            *_build_messages(message, history),
        ]
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                max_tokens=self._max_tokens,
                temperature=self._temperature,
            )
        except _SDK_ERRORS as e:
            raise _translate(e) from e

        content = response.choices[0].message.content or FALLBACK_TEXT

        usage = response.usage
        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_provider: AnthropicProvider | OpenAICompatibleProvider | None = None


def get_llm_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Return the configured provider (lazy singleton).

    - "anthropic" → AnthropicProvider
    - "openai_compatible" → OpenAICompatibleProvider
    """
    global _provider
    if _provider is None:
        if settings.llm_provider == "openai_compatible":
            _provider = OpenAICompatibleProvider()
        else:
            _provider = AnthropicProvider()
    return _provider
