"""Read-only machine snapshot and usage queries."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from ..pipeline import TelemetryPipeline
from ..schemas import MachineStateOut, UsageEventOut
from .dependencies import get_pipeline

router = APIRouter(prefix="/machines", tags=["machines"])


@router.get("/{machine_id}", response_model=MachineStateOut)
def get_machine_state(machine_id: int, pipeline: TelemetryPipeline = Depends(get_pipeline)):
    state = pipeline.store.get_snapshot(machine_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"machine {machine_id} has no telemetry")
    return MachineStateOut.from_state(state)


@router.get("/{machine_id}/usage", response_model=List[UsageEventOut])
def list_usage(
    machine_id: int,
    limit: int = Query(100, ge=1, le=1000),
    pipeline: TelemetryPipeline = Depends(get_pipeline),
):
    events = pipeline.repository.list_usage(machine_id, limit)
    return [UsageEventOut.from_event(e) for e in events]
