from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends

from api.orchestrators.query_orchestrator import PipelineContext, get_pipeline_context

logger = structlog.get_logger(__name__)
router = APIRouter()


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/v1/performance", tags=["Performance"])
async def get_performance(context: PipelineContext = Depends(get_pipeline_context)) -> Dict[str, Any]:
    """Get pipeline performance statistics.

    Returns:
        ``{status, data, timestamp}``; data is null when monitoring is disabled

    Example:
        ```bash
        curl http://localhost:8000/api/v1/performance
        ```
    """
    return {
        "status": "success",
        "data": context.monitor.get_stats(),
        "timestamp": _timestamp(),
    }


@router.post("/v1/performance/reset", tags=["Performance"])
async def reset_performance(context: PipelineContext = Depends(get_pipeline_context)) -> Dict[str, Any]:
    """Reset all performance counters."""
    context.monitor.reset()
    logger.info("Performance metrics reset")
    return {
        "status": "success",
        "message": "Performance metrics reset",
        "timestamp": _timestamp(),
    }


@router.get("/v1/performance/caches", tags=["Performance"])
async def get_cache_summary(context: PipelineContext = Depends(get_pipeline_context)) -> Dict[str, Any]:
    """Size, bounds and hit rate of each stage cache."""
    caches = (context.sqg_cache, context.cross_encoder_cache, context.llm_rerank_cache)
    return {
        "status": "success",
        "data": {cache.name: cache.describe() for cache in caches},
        "timestamp": _timestamp(),
    }


@router.get("/health", tags=["Health"])
async def health(context: PipelineContext = Depends(get_pipeline_context)) -> Dict[str, Any]:
    """Health check with a performance summary (null when monitoring is disabled)."""
    stats = context.monitor.get_stats()
    performance = None
    if stats:
        performance = {
            "total_queries": stats["total_queries"],
            "average_latency": stats["average_latency"],
            "cache_hit_rates": stats["cache_hit_rates"],
        }
    return {"status": "UP", "timestamp": _timestamp(), "performance": performance}
