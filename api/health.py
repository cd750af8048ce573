"""Health and metrics endpoints."""

from __future__ import annotations

from fastapi import APIRouter

from config.settings import get_settings
from services.datastream import get_stream_registry
from services.metrics import get_metrics_collector
from services.workflow_runtime import get_workflow_runtime

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health() -> dict:
    settings = get_settings()
    return {
        "status": "healthy",
        "store": settings.store_type,
        "open_streams": get_stream_registry().open_count,
        "workflows_in_flight": get_workflow_runtime().in_flight,
    }


@router.get("/metrics")
async def metrics() -> dict:
    """Step, tool and streaming counters for this worker."""
    return get_metrics_collector().snapshot()
