# =============================================================================
# Admin API — Cache & Requester Statistics
# =============================================================================
#
# Read-only operational views over the shared state. All endpoints require
# the admin Bearer token (see deps.require_admin).
#
#   GET  /admin/stats/cache                  — cache size, hits, top entries
#   GET  /admin/stats/requesters/{id}        — rate window + budget ledger
#   POST /admin/cache/clear                  — drop every cached response
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from fundbot.agents.orchestrator import ConversationOrchestrator
from fundbot.api.deps import get_orchestrator, require_admin
from fundbot.models.responses import (
    AckResponse,
    CacheEntryStats,
    CacheStatsResponse,
    CostStats,
    RateStats,
    RequesterStatsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Admin"], dependencies=[Depends(require_admin)])


@router.get(
    "/admin/stats/cache",
    response_model=CacheStatsResponse,
    summary="Response cache statistics",
)
async def cache_stats(
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
) -> CacheStatsResponse:
    stats = await orchestrator.cache.stats()
    return CacheStatsResponse(
        size=stats["size"],
        total_hits=stats["total_hits"],
        entries=[CacheEntryStats(**row) for row in stats["entries"]],
    )


@router.get(
    "/admin/stats/requesters/{requester_id}",
    response_model=RequesterStatsResponse,
    summary="Rate-limit and budget usage for one requester",
)
async def requester_stats(
    requester_id: str,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
) -> RequesterStatsResponse:
    rate = await orchestrator.admission.rate_stats(requester_id)
    cost = await orchestrator.admission.cost_stats(requester_id)
    return RequesterStatsResponse(
        requester_id=requester_id,
        rate=RateStats(**rate),
        cost=CostStats(**cost),
    )


@router.post(
    "/admin/cache/clear",
    response_model=AckResponse,
    summary="Clear the response cache",
)
async def clear_cache(
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
) -> AckResponse:
    await orchestrator.cache.clear()
    logger.info("Response cache cleared via admin API")
    return AckResponse()
