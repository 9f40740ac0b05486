# =============================================================================
# Slack Web API Client — Replies, Reactions, Thread History
# =============================================================================
#
# Thin async wrapper over three Web API methods:
#   chat.postMessage       — reply to the requester (errors propagate)
#   reactions.add          — progress markers (best-effort, never raises)
#   conversations.replies  — thread history for context recovery
#
# Slack answers HTTP 200 with {"ok": false, "error": "..."} for most API
# failures, so both the status and the `ok` flag are checked.
# =============================================================================

from __future__ import annotations

import logging

import httpx

from fundbot.config import settings
from fundbot.models.events import HistoryMessage
from fundbot.services.sanitizer import clean_message_text, truncate_text

logger = logging.getLogger(__name__)

# chat.postMessage rejects text longer than this
MAX_MESSAGE_CHARS = 40_000


class SlackApiError(Exception):
    def __init__(self, method: str, error: str):
        super().__init__(f"Slack {method} failed: {error}")
        self.method = method
        self.error = error


class SlackClient:
    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._token = token if token is not None else settings.slack_bot_token
        self._base_url = (base_url or settings.slack_api_base_url).rstrip("/")
        self._http = http or httpx.AsyncClient(
            timeout=timeout or settings.slack_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _call(self, method: str, payload: dict, http_method: str = "POST") -> dict:
        headers = {"Authorization": f"Bearer {self._token}"}
        url = f"{self._base_url}/{method}"
        if http_method == "GET":
            response = await self._http.get(url, params=payload, headers=headers)
        else:
            response = await self._http.post(url, json=payload, headers=headers)
        response.raise_for_status()
        body = response.json()
        if not body.get("ok"):
            raise SlackApiError(method, body.get("error", "unknown_error"))
        return body

    async def post_message(
        self,
        channel: str,
        text: str,
        thread_ts: str | None = None,
    ) -> dict:
        payload: dict = {"channel": channel, "text": truncate_text(text, MAX_MESSAGE_CHARS)}
        if thread_ts:
            payload["thread_ts"] = thread_ts
        try:
            return await self._call("chat.postMessage", payload)
        except (httpx.HTTPError, SlackApiError) as e:
            logger.error("Error posting message to Slack: %s", e)
            raise

    async def add_reaction(self, channel: str, timestamp: str, name: str) -> bool:
        """Attach a reaction. Failures are logged and reported as False."""
        try:
            await self._call(
                "reactions.add",
                {"channel": channel, "timestamp": timestamp, "name": name},
            )
            return True
        except (httpx.HTTPError, SlackApiError) as e:
            logger.warning("Error adding reaction %s: %s", name, e)
            return False

    async def fetch_history(
        self,
        channel: str,
        thread_ref: str,
        limit: int,
    ) -> list[HistoryMessage]:
        """
        The last `limit` messages of a thread, oldest first.

        Messages posted by a bot are mapped to the assistant role; all
        others to the user role, with mentions stripped.
        """
        body = await self._call(
            "conversations.replies",
            {
                "channel": channel,
                "ts": thread_ref,
                "limit": settings.history_fetch_page_size,
            },
            http_method="GET",
        )
        history = []
        for raw in body.get("messages", []):
            text = clean_message_text(raw.get("text", ""))
            if not text:
                continue
            history.append(HistoryMessage(
                role="assistant" if raw.get("bot_id") else "user",
                content=text,
                timestamp=float(raw.get("ts", 0)),
            ))
        return history[-limit:]
