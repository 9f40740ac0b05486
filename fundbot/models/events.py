# =============================================================================
# Inbound Event Models — Slack Events API Payloads
# =============================================================================
#
# Wire shapes for POST /slack/events and the normalised InboundEvent the
# orchestrator consumes. Field names on the wire models follow Slack's
# payload keys; InboundEvent uses the pipeline's own vocabulary.
#
# Unknown fields are ignored: Slack adds keys to these payloads over time.
# =============================================================================

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class SlackEvent(BaseModel):
    """The inner `event` object of an event_callback envelope."""

    type: str
    user: str | None = None
    text: str = ""
    channel: str = ""
    ts: str = ""
    thread_ts: str | None = None
    event_ts: str | None = None
    channel_type: str | None = None
    bot_id: str | None = None
    subtype: str | None = None

    model_config = ConfigDict(extra="ignore")


class SlackEnvelope(BaseModel):
    """Outer webhook body: url_verification or event_callback."""

    type: str
    challenge: str | None = None
    event_id: str | None = None
    event: SlackEvent | None = None

    model_config = ConfigDict(extra="ignore")


class InboundEvent(BaseModel):
    """
    One chat message to be handled by the pipeline.

    Identity for deduplication is (channel, primary_timestamp,
    secondary_timestamp). `kind` is deliberately not part of it: Slack
    delivers the same message as both `message` and `app_mention`.
    """

    channel: str
    originator: str
    text: str
    primary_timestamp: str
    thread_timestamp: str | None = None
    secondary_timestamp: str | None = None
    kind: str = "message"
    channel_kind: str | None = None
    bot_marker: str | None = None

    @property
    def dedup_key(self) -> str:
        return (
            f"{self.channel}:{self.primary_timestamp}:"
            f"{self.secondary_timestamp or ''}"
        )

    @property
    def thread_id(self) -> str:
        """Replies go into the existing thread, or start one on this message."""
        return self.thread_timestamp or self.primary_timestamp

    @property
    def is_fresh_thread(self) -> bool:
        """True for the first message of a conversation (not a thread reply)."""
        return (
            self.thread_timestamp is None
            or self.thread_timestamp == self.primary_timestamp
        )

    @classmethod
    def from_slack(cls, event: SlackEvent) -> InboundEvent:
        return cls(
            channel=event.channel,
            originator=event.user or "",
            text=event.text or "",
            primary_timestamp=event.ts,
            thread_timestamp=event.thread_ts,
            secondary_timestamp=event.event_ts,
            kind=event.type,
            channel_kind=event.channel_type,
            bot_marker=event.bot_id,
        )


class HistoryMessage(BaseModel):
    """A prior thread message recovered from the chat platform."""

    role: str
    content: str
    timestamp: float = Field(description="Slack ts as epoch seconds")
