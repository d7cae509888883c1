"""Domain model for coffee machine telemetry.

Flow of these types through the pipeline:
    InboundMessage → (MetricKind, ParsedValue) → MachineTelemetryState → Alert

MachineTelemetryState and Alert are frozen: every change produces a new
instance through ``dataclasses.replace``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Mapping, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MetricKind(str, Enum):
    """Last segment of ``coffeeMachine/{machineId}/{metric}``."""

    TEMPERATURE = "temperature"
    WATER_LEVEL = "waterLevel"
    MILK_LEVEL = "milkLevel"
    BEANS_LEVEL = "beansLevel"
    STATUS = "status"
    USAGE = "usage"

    @property
    def is_state_metric(self) -> bool:
        """True for metrics applied to the snapshot; usage goes to the event log."""
        return self is not MetricKind.USAGE


class MachineStatus(str, Enum):
    ON = "ON"
    OFF = "OFF"
    ERROR = "ERROR"


class BrewType(str, Enum):
    ESPRESSO = "ESPRESSO"
    DOUBLE_ESPRESSO = "DOUBLE_ESPRESSO"
    AMERICANO = "AMERICANO"
    CAPPUCCINO = "CAPPUCCINO"
    LATTE = "LATTE"
    MACCHIATO = "MACCHIATO"
    MOCHA = "MOCHA"
    FLAT_WHITE = "FLAT_WHITE"


class AlertType(str, Enum):
    LOW_WATER = "LOW_WATER"
    LOW_MILK = "LOW_MILK"
    LOW_BEANS = "LOW_BEANS"
    MALFUNCTION = "MALFUNCTION"


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class UsageReading:
    """Parsed brew payload, before it is bound to a machine and a timestamp."""

    brew_type: BrewType
    volume_ml: Optional[int] = None
    temp_at_brew_c: Optional[float] = None


MetricValue = Union[float, int, MachineStatus, UsageReading]


@dataclass(frozen=True)
class InboundMessage:
    """Raw MQTT message as handed over by the receiver."""

    topic: str
    payload: bytes
    received_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class MachineRecord:
    """Entry of the external machine registry."""

    machine_id: int
    name: Optional[str] = None
    active: bool = True


@dataclass(frozen=True)
class MachineTelemetryState:
    """Current telemetry snapshot of one machine.

    ``field_timestamps`` holds the source timestamp of the last accepted
    value per metric kind; it drives last-write-wins-by-timestamp.
    """

    machine_id: int
    status: Optional[MachineStatus] = None
    temperature_c: Optional[float] = None
    water_level_pct: Optional[int] = None
    milk_level_pct: Optional[int] = None
    beans_level_pct: Optional[int] = None
    last_updated: datetime = field(default_factory=utcnow)
    field_timestamps: Mapping[MetricKind, datetime] = field(default_factory=dict)

    def value_of(self, kind: MetricKind) -> Optional[MetricValue]:
        return getattr(self, _STATE_FIELDS[kind])

    def with_metric(
        self, kind: MetricKind, value: MetricValue, source_ts: datetime
    ) -> "MachineTelemetryState":
        """Return a copy with a single field replaced."""
        timestamps = dict(self.field_timestamps)
        timestamps[kind] = source_ts
        return replace(
            self,
            **{_STATE_FIELDS[kind]: value},
            last_updated=utcnow(),
            field_timestamps=timestamps,
        )


_STATE_FIELDS: dict[MetricKind, str] = {
    MetricKind.TEMPERATURE: "temperature_c",
    MetricKind.WATER_LEVEL: "water_level_pct",
    MetricKind.MILK_LEVEL: "milk_level_pct",
    MetricKind.BEANS_LEVEL: "beans_level_pct",
    MetricKind.STATUS: "status",
}


@dataclass(frozen=True)
class Alert:
    machine_id: int
    type: AlertType
    severity: Severity
    message: str
    threshold_value: float
    resolved: bool = False
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> tuple[int, AlertType]:
        return (self.machine_id, self.type)

    def as_resolved(self) -> "Alert":
        return replace(self, resolved=True, updated_at=utcnow())


@dataclass(frozen=True)
class UsageEvent:
    machine_id: int
    brew_type: BrewType
    volume_ml: Optional[int]
    temp_at_brew_c: Optional[float]
    timestamp: datetime
    id: Optional[int] = None


@dataclass(frozen=True)
class AlertStatistics:
    total_unresolved: int
    by_severity: Mapping[Severity, int]
    by_type: Mapping[AlertType, int]

    @classmethod
    def from_alerts(cls, alerts: list[Alert]) -> "AlertStatistics":
        open_alerts = [a for a in alerts if not a.resolved]
        return cls(
            total_unresolved=len(open_alerts),
            by_severity={s: sum(1 for a in open_alerts if a.severity is s) for s in Severity},
            by_type={t: sum(1 for a in open_alerts if a.type is t) for t in AlertType},
        )
