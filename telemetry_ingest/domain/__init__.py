from .errors import (
    DownstreamUnavailable,
    DropReason,
    IngestError,
    MalformedTopic,
    UnknownMachine,
    UnparseablePayload,
)
from .models import (
    Alert,
    AlertStatistics,
    AlertType,
    BrewType,
    InboundMessage,
    MachineRecord,
    MachineStatus,
    MachineTelemetryState,
    MetricKind,
    Severity,
    UsageEvent,
    UsageReading,
    utcnow,
)

__all__ = [
    "Alert",
    "AlertStatistics",
    "AlertType",
    "BrewType",
    "DownstreamUnavailable",
    "DropReason",
    "InboundMessage",
    "IngestError",
    "MachineRecord",
    "MachineStatus",
    "MachineTelemetryState",
    "MalformedTopic",
    "MetricKind",
    "Severity",
    "UnknownMachine",
    "UnparseablePayload",
    "UsageEvent",
    "UsageReading",
    "utcnow",
]
