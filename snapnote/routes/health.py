"""
SnapNote — Health Check Route
==============================

What:  GET /health for container probes and monitoring.
How:   Reports the local model lifecycle state and the remote provider's
       status. Neither is critical: capture works without AI enhancement,
       so a missing provider only degrades the status.

Status levels:
    healthy   Gemini reachable (or a local model ready)
    degraded  no AI provider usable; notes fall back to heuristics
"""

import logging
import time

from fastapi import APIRouter, Depends

from snapnote import __version__
from snapnote.pipeline import Pipeline, get_pipeline
from snapnote.schemas.note import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get("/health", response_model=HealthResponse, summary="Service health check")
async def health_check(pipeline: Pipeline = Depends(get_pipeline)) -> HealthResponse:
    gemini_status = pipeline.gemini.status()
    if gemini_status == "available" and not await pipeline.gemini.health_check():
        gemini_status = "unavailable"

    local_ready = pipeline.model_manager.is_ready()
    overall = "healthy" if gemini_status == "available" or local_ready else "degraded"
    if overall == "degraded":
        logger.warning("Health check: no AI provider available (gemini=%s)", gemini_status)

    return HealthResponse(
        status=overall,
        version=__version__,
        gemini=gemini_status,
        local_model=pipeline.model_manager.state,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
