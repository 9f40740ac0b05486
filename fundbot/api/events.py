# =============================================================================
# Slack Events API — Webhook Endpoint
# =============================================================================
#
# POST /slack/events receives every subscribed Slack event.
#
# FLOW:
#   1. Verify the request signature over the raw body (401 on failure)
#   2. Parse the envelope (400 on malformed JSON)
#   3. url_verification → echo the challenge
#   4. event_callback   → relevance filter, then schedule the pipeline as a
#      background task and acknowledge immediately
#
# Slack expects a 200 within 3 seconds and redelivers otherwise, so the
# pipeline never runs inside the request. Redeliveries that still arrive are
# dropped by the event gate.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import ValidationError

from fundbot.agents.orchestrator import is_addressed
from fundbot.api.deps import get_orchestrator, verified_body
from fundbot.models.events import InboundEvent, SlackEnvelope
from fundbot.models.responses import AckResponse, ChallengeResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Slack Events"])

_HANDLED_EVENT_TYPES = {"message", "app_mention"}


def to_inbound_event(envelope: SlackEnvelope) -> InboundEvent | None:
    """
    The pipeline input for an event_callback, or None when the bot should
    stay silent (bot chatter, edits and other subtypes, unaddressed messages).
    """
    event = envelope.event
    if event is None or event.type not in _HANDLED_EVENT_TYPES:
        return None
    if event.subtype or not event.user or not event.ts:
        return None

    inbound = InboundEvent.from_slack(event)
    if not is_addressed(inbound):
        return None
    return inbound


# ---------------------------------------------------------------------------
# POST /slack/events
# ---------------------------------------------------------------------------


@router.post(
    "/slack/events",
    response_model=AckResponse | ChallengeResponse,
    summary="Slack Events API webhook",
    description=(
        "Receives Slack event callbacks. Requests must carry a valid Slack "
        "signature. Events are acknowledged immediately and processed in "
        "the background."
    ),
)
async def slack_events(
    background_tasks: BackgroundTasks,
    body: str = Depends(verified_body),
) -> AckResponse | ChallengeResponse:
    try:
        envelope = SlackEnvelope.model_validate_json(body)
    except ValidationError as e:
        logger.warning("Malformed Slack payload: %s", e.errors()[:1])
        raise HTTPException(status_code=400, detail="Malformed event payload.") from e

    if envelope.type == "url_verification":
        return ChallengeResponse(challenge=envelope.challenge or "")

    if envelope.type != "event_callback":
        logger.debug("Ignoring envelope type %s", envelope.type)
        return AckResponse()

    inbound = to_inbound_event(envelope)
    if inbound is None:
        return AckResponse()

    # Not a Depends: url_verification must pass before the LLM provider
    # is configured.
    orchestrator = get_orchestrator()
    background_tasks.add_task(orchestrator.handle_event, inbound)
    return AckResponse()
