"""Health and readiness endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..pipeline import TelemetryPipeline
from .dependencies import get_pipeline

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    """Liveness: the process is up."""
    return {"status": "ok"}


@router.get("/ready")
def ready(pipeline: TelemetryPipeline = Depends(get_pipeline)):
    """Readiness: 503 until the pipeline can take writes."""
    check = pipeline.health_check()
    if not check["healthy"]:
        raise HTTPException(status_code=503, detail="not ready")
    return {"status": "ready", "circuit_breaker": check["circuit_breaker"]}


@router.get("/mqtt/stats")
def mqtt_stats(pipeline: TelemetryPipeline = Depends(get_pipeline)):
    return {
        "receiver": pipeline.receiver.stats,
        "ingest": pipeline.stats.to_dict(),
        "async_processor": pipeline.processor.metrics,
        "notifier": pipeline.notifier.metrics,
        "alerts": pipeline.evaluator.stats,
        "circuit_breaker": pipeline.guard.circuit_breaker.get_stats(),
        "dlq": pipeline.dlq.stats,
        "dlq_recent": pipeline.dlq.get_recent(10),
        "state": {"cached_machines": pipeline.store.cached_machines()},
    }


@router.get("/metrics")
def metrics():
    """Prometheus exposition of the ingest counters."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
