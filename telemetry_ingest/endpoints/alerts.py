"""Alert queries and operator actions."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..pipeline import TelemetryPipeline
from ..schemas import AlertList, AlertOut, AlertStatisticsOut, SummaryResult
from .dependencies import get_pipeline

router = APIRouter(prefix="/alerts", tags=["alerts"])


@router.get("", response_model=AlertList)
def list_unresolved(
    machine_id: Optional[int] = Query(None, ge=1),
    pipeline: TelemetryPipeline = Depends(get_pipeline),
):
    alerts = pipeline.evaluator.unresolved_alerts(machine_id)
    return AlertList(alerts=[AlertOut.from_alert(a) for a in alerts])


@router.get("/statistics", response_model=AlertStatisticsOut)
def alert_statistics(pipeline: TelemetryPipeline = Depends(get_pipeline)):
    return AlertStatisticsOut.from_statistics(pipeline.evaluator.statistics())


@router.post("/summary", response_model=SummaryResult)
def send_summary(pipeline: TelemetryPipeline = Depends(get_pipeline)):
    summary = pipeline.evaluator.send_summary()
    if summary is None:
        return SummaryResult(sent=False, total_unresolved=0)
    return SummaryResult(sent=True, total_unresolved=summary.statistics.total_unresolved)


@router.post("/{alert_id}/resolve", response_model=AlertOut)
def resolve_alert(alert_id: int, pipeline: TelemetryPipeline = Depends(get_pipeline)):
    """Operator resolution. 404 if the alert does not exist or is already resolved."""
    resolved = pipeline.evaluator.resolve_alert(alert_id)
    if resolved is None:
        raise HTTPException(status_code=404, detail=f"alert {alert_id} is not open")
    return AlertOut.from_alert(resolved)
