from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .domain.models import (
    Alert,
    AlertStatistics,
    AlertType,
    BrewType,
    MachineStatus,
    MachineTelemetryState,
    Severity,
    UsageEvent,
)


class MachineStateOut(BaseModel):
    machine_id: int
    status: Optional[MachineStatus] = None
    temperature_c: Optional[float] = None
    water_level_pct: Optional[int] = None
    milk_level_pct: Optional[int] = None
    beans_level_pct: Optional[int] = None
    last_updated: datetime
    field_timestamps: Dict[str, datetime] = Field(default_factory=dict)

    @classmethod
    def from_state(cls, state: MachineTelemetryState) -> "MachineStateOut":
        return cls(
            machine_id=state.machine_id,
            status=state.status,
            temperature_c=state.temperature_c,
            water_level_pct=state.water_level_pct,
            milk_level_pct=state.milk_level_pct,
            beans_level_pct=state.beans_level_pct,
            last_updated=state.last_updated,
            field_timestamps={k.value: v for k, v in state.field_timestamps.items()},
        )


class UsageEventOut(BaseModel):
    id: Optional[int] = None
    machine_id: int
    brew_type: BrewType
    volume_ml: Optional[int] = None
    temp_at_brew_c: Optional[float] = None
    timestamp: datetime

    @classmethod
    def from_event(cls, event: UsageEvent) -> "UsageEventOut":
        return cls(
            id=event.id,
            machine_id=event.machine_id,
            brew_type=event.brew_type,
            volume_ml=event.volume_ml,
            temp_at_brew_c=event.temp_at_brew_c,
            timestamp=event.timestamp,
        )


class AlertOut(BaseModel):
    id: int
    machine_id: int
    type: AlertType
    severity: Severity
    message: str
    threshold_value: float
    resolved: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertOut":
        return cls(
            id=alert.id,
            machine_id=alert.machine_id,
            type=alert.type,
            severity=alert.severity,
            message=alert.message,
            threshold_value=alert.threshold_value,
            resolved=alert.resolved,
            created_at=alert.created_at,
            updated_at=alert.updated_at,
        )


class AlertStatisticsOut(BaseModel):
    total_unresolved: int
    by_severity: Dict[Severity, int]
    by_type: Dict[AlertType, int]

    @classmethod
    def from_statistics(cls, stats: AlertStatistics) -> "AlertStatisticsOut":
        return cls(
            total_unresolved=stats.total_unresolved,
            by_severity=dict(stats.by_severity),
            by_type=dict(stats.by_type),
        )


class SummaryResult(BaseModel):
    sent: bool
    total_unresolved: int


class AlertList(BaseModel):
    alerts: List[AlertOut] = Field(default_factory=list)
