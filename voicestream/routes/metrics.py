"""
Streaming metrics API routes

JSON views of the metrics aggregator for dashboards and health checks, plus
a Prometheus scrape endpoint.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST

from .. import config
from ..metrics import MetricsAggregator, render_prometheus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/metrics", tags=["metrics"])

# Health thresholds
ERROR_RATE_DEGRADED = 2.0
ERROR_RATE_UNHEALTHY = 5.0
LATENCY_DEGRADED_MS = 1000
LATENCY_UNHEALTHY_MS = 2000


def _timestamp() -> str:
    return datetime.now().isoformat()


def _metrics(request: Request) -> MetricsAggregator:
    return request.app.state.metrics


def _cache_available(request: Request) -> bool:
    speech_service = getattr(request.app.state, "speech_service", None)
    return speech_service is not None and speech_service.cache.available


def evaluate_health(snapshot: Dict[str, Any], cache_available: bool) -> Dict[str, Any]:
    """
    Grade a metrics snapshot.

    Error rate above 2% or first-token latency above 1000ms degrades; above
    5% or 2000ms is unhealthy. A missing audio cache degrades.
    """
    requests = snapshot["requests"]
    error_rate = requests["failed"] / requests["total"] * 100 if requests["total"] else 0.0
    avg_latency = snapshot["latency"]["firstToken"]["avg"]

    status = "healthy"
    issues: List[str] = []

    if error_rate > ERROR_RATE_UNHEALTHY:
        status = "unhealthy"
        issues.append(f"High error rate: {error_rate:.2f}%")
    elif error_rate > ERROR_RATE_DEGRADED:
        status = "degraded"
        issues.append(f"Elevated error rate: {error_rate:.2f}%")

    if avg_latency > LATENCY_UNHEALTHY_MS:
        status = "unhealthy"
        issues.append(f"High latency: {avg_latency}ms")
    elif avg_latency > LATENCY_DEGRADED_MS:
        if status == "healthy":
            status = "degraded"
        issues.append(f"Elevated latency: {avg_latency}ms")

    if not cache_available:
        if status == "healthy":
            status = "degraded"
        issues.append("Audio cache unavailable")

    def grade(value: float, warn: float, fail: float) -> str:
        if value <= warn:
            return "pass"
        return "warn" if value <= fail else "fail"

    return {
        "status": status,
        "checks": {
            "errorRate": {
                "status": grade(error_rate, ERROR_RATE_DEGRADED, ERROR_RATE_UNHEALTHY),
                "value": f"{error_rate:.2f}%",
                "threshold": f"<={ERROR_RATE_UNHEALTHY:g}%",
            },
            "latency": {
                "status": grade(avg_latency, LATENCY_DEGRADED_MS, LATENCY_UNHEALTHY_MS),
                "value": f"{avg_latency}ms",
                "threshold": f"<={LATENCY_DEGRADED_MS}ms",
            },
            "cache": {
                "status": "pass" if cache_available else "warn",
                "value": "connected" if cache_available else "disconnected",
            },
            "activeStreams": {"status": "pass", "value": requests["active"]},
        },
        "issues": issues,
    }


@router.get("/streaming", summary="Full streaming metrics")
async def streaming_metrics(request: Request):
    metrics = _metrics(request).snapshot()
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is not None:
        metrics["streaming"] = orchestrator.stats()

    return {"success": True, "timestamp": _timestamp(), "metrics": metrics}


@router.get("/streaming/summary", summary="Dashboard summary")
async def streaming_summary(request: Request):
    return {"success": True, "timestamp": _timestamp(), "summary": _metrics(request).summary()}


@router.get("/streaming/events", summary="Recent stream events")
async def streaming_events(request: Request, limit: int = Query(default=50, ge=1, le=config.RECENT_EVENTS_LIMIT)):
    events = _metrics(request).recent_events(limit)
    return {"success": True, "timestamp": _timestamp(), "events": events, "count": len(events)}


@router.post("/streaming/reset", summary="Reset streaming metrics")
async def reset_streaming_metrics(request: Request):
    if config.ENVIRONMENT == "production":
        raise HTTPException(status_code=403, detail="Reset not allowed in production")

    _metrics(request).reset()
    return {"success": True, "message": "Metrics reset successfully"}


@router.get("/health/streaming", summary="Streaming health check")
async def streaming_health(request: Request):
    result = evaluate_health(_metrics(request).snapshot(), _cache_available(request))
    status = result["status"]

    body = {
        "success": status != "unhealthy",
        "status": status,
        "timestamp": _timestamp(),
        "checks": result["checks"],
    }
    if result["issues"]:
        body["issues"] = result["issues"]

    return JSONResponse(status_code=503 if status == "unhealthy" else 200, content=body)


@router.get("", summary="Prometheus exposition")
async def prometheus_metrics(request: Request):
    try:
        payload = render_prometheus(_metrics(request))
    except Exception as e:
        logger.error(f"Error generating Prometheus metrics: {e}")
        raise HTTPException(status_code=500, detail="Failed to generate metrics")
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
