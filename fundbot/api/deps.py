# =============================================================================
# API Dependencies — Signature Verification, Admin Auth, Orchestrator
# =============================================================================
#
# FastAPI dependencies shared by the route modules:
#
# 1. verified_body()     — read the raw body and verify the Slack signature
# 2. require_admin()     — Bearer token check for the /admin endpoints
# 3. get_orchestrator()  — the process-wide pipeline (lazy singleton)
#
# DESIGN DECISION: the signature is computed over the exact raw bytes, so
# verified_body() reads request.body() itself and hands the decoded text to
# the route. Parsing JSON before verifying would let a re-serialised body
# slip through.
#
# Admin endpoints are disabled (404) when no ADMIN_TOKEN is configured.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from fundbot.agents.orchestrator import ConversationOrchestrator, build_orchestrator
from fundbot.config import settings
from fundbot.services.signature import tokens_match, verify_signature

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

_orchestrator: ConversationOrchestrator | None = None


async def verified_body(request: Request) -> str:
    """
    Return the request body once its Slack signature checks out.

    Raises:
        HTTPException 401: missing, stale or mismatched signature
    """
    raw = await request.body()
    body = raw.decode("utf-8", errors="replace")
    valid = verify_signature(
        settings.slack_signing_secret,
        request.headers.get("X-Slack-Signature"),
        request.headers.get("X-Slack-Request-Timestamp"),
        body,
        replay_window=settings.slack_replay_window_seconds,
    )
    if not valid:
        logger.warning(
            "Rejected request with invalid Slack signature from %s",
            request.client.host if request.client else "unknown",
        )
        raise HTTPException(status_code=401, detail="Invalid request signature.")
    return body


async def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """
    Raises:
        HTTPException 404: admin endpoints disabled (no token configured)
        HTTPException 401: missing or wrong token
    """
    if not settings.admin_token:
        raise HTTPException(status_code=404, detail="Not found.")
    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail="Missing admin token. Provide "
            "'Authorization: Bearer <token>' header.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not tokens_match(credentials.credentials, settings.admin_token):
        raise HTTPException(
            status_code=401,
            detail="Invalid admin token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_orchestrator() -> ConversationOrchestrator:
    """
    The shared orchestrator, built on first use.

    Raises:
        HTTPException 503: the LLM provider is not configured
    """
    global _orchestrator
    if _orchestrator is None:
        try:
            _orchestrator = build_orchestrator()
        except ValueError as e:
            logger.error("Configuration error: %s", e)
            raise HTTPException(
                status_code=503,
                detail=f"Service configuration error: {e}",
            ) from e
    return _orchestrator


def current_orchestrator() -> ConversationOrchestrator | None:
    """The orchestrator if one has been built, without building it."""
    return _orchestrator
