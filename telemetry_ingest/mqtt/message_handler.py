"""Per-message ingest logic.

    topic  → route_topic      (MalformedTopic)
    bytes  → parse_payload    (UnparseablePayload)
    value  → state store      (UnknownMachine, DownstreamUnavailable)
           → alert evaluator  (DownstreamUnavailable)
    usage  → append_usage     (UnknownMachine, DownstreamUnavailable)

Every IngestError is caught here, at the message boundary: the message is
logged, counted, sent to the DLQ and dropped. Nothing propagates to the
worker for a bad message.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Callable, Optional

from ..alerts.evaluator import AlertEvaluator
from ..domain.errors import (
    DropReason,
    IngestError,
    MalformedTopic,
    UnknownMachine,
    UnparseablePayload,
)
from ..domain.models import Alert, InboundMessage, MetricKind, UsageEvent
from ..metrics import MESSAGES_DROPPED, MESSAGES_PROCESSED, PROCESSING_LATENCY
from ..resilience.dead_letter import DeadLetterQueue
from ..state.repository import StateRepository
from ..state.store import MachineStateStore, NotFound, Stale
from .receiver_stats import IngestStats
from .topics import DEFAULT_TOPIC_PREFIX, route_topic
from .validators import ParseResult, parse_payload

logger = logging.getLogger(__name__)

STATS_LOG_EVERY = 100
_PAYLOAD_LOG_CHARS = 200
DEFAULT_MAX_CLOCK_SKEW = timedelta(seconds=60)


class OutcomeStatus(str, Enum):
    APPLIED = "applied"
    RECORDED = "recorded"
    STALE = "stale"
    DROPPED = "dropped"


@dataclass(frozen=True)
class IngestOutcome:
    status: OutcomeStatus
    machine_id: Optional[int] = None
    metric_kind: Optional[MetricKind] = None
    alerts: tuple[Alert, ...] = ()
    usage_event: Optional[UsageEvent] = None
    reason: Optional[DropReason] = None
    detail: Optional[str] = None


class TelemetryHandler:

    def __init__(
        self,
        store: MachineStateStore,
        evaluator: AlertEvaluator,
        repository: StateRepository,
        dlq: Optional[DeadLetterQueue] = None,
        stats: Optional[IngestStats] = None,
        topic_prefix: str = DEFAULT_TOPIC_PREFIX,
        max_clock_skew: timedelta = DEFAULT_MAX_CLOCK_SKEW,
    ):
        self._store = store
        self._evaluator = evaluator
        self._repository = repository
        self._dlq = dlq or DeadLetterQueue()
        self._stats = stats or IngestStats()
        self._prefix = topic_prefix
        self._max_clock_skew = max_clock_skew

    @property
    def stats(self) -> IngestStats:
        return self._stats

    def handle(self, message: InboundMessage) -> IngestOutcome:
        received = self._stats.mark_received()
        with PROCESSING_LATENCY.time():
            try:
                outcome = self._handle(message)
            except IngestError as e:
                outcome = self._drop(message, e)
        MESSAGES_PROCESSED.labels(outcome=outcome.status.value).inc()

        if received % STATS_LOG_EVERY == 0:
            logger.info("[MQTT] %s", self._stats)
        return outcome

    def _handle(self, message: InboundMessage) -> IngestOutcome:
        routed = route_topic(message.topic, self._prefix)
        if not routed.valid:
            raise MalformedTopic(routed.error, machine_id=routed.machine_id)

        parsed = parse_payload(routed.metric_kind, message.payload)
        if not parsed.valid:
            raise UnparseablePayload(parsed.error, machine_id=routed.machine_id)

        # A future stamp would outrank every later receive-time reading.
        if parsed.source_ts is not None and parsed.source_ts > message.received_at + self._max_clock_skew:
            raise UnparseablePayload(
                f"timestamp {parsed.source_ts.isoformat()} is ahead of receive time "
                f"{message.received_at.isoformat()} by more than {self._max_clock_skew}",
                machine_id=routed.machine_id,
            )

        handler = _DISPATCH[routed.metric_kind]
        return handler(self, routed.machine_id, routed.metric_kind, parsed, message)

    def _apply_state(
        self,
        machine_id: int,
        metric_kind: MetricKind,
        parsed: ParseResult,
        message: InboundMessage,
    ) -> IngestOutcome:
        result = self._store.apply_metric(
            machine_id,
            metric_kind,
            parsed.value,
            source_ts=parsed.source_ts or message.received_at,
        )
        if isinstance(result, NotFound):
            raise UnknownMachine(f"machine {machine_id} is not registered", machine_id=machine_id)
        if isinstance(result, Stale):
            self._stats.mark_stale()
            return IngestOutcome(OutcomeStatus.STALE, machine_id, metric_kind)

        alerts = self._evaluator.evaluate(result)
        self._stats.mark_applied()
        logger.debug(
            "[MQTT] Applied machine=%s kind=%s alerts=%d", machine_id, metric_kind.value, len(alerts)
        )
        return IngestOutcome(OutcomeStatus.APPLIED, machine_id, metric_kind, alerts=tuple(alerts))

    def _record_usage(
        self,
        machine_id: int,
        metric_kind: MetricKind,
        parsed: ParseResult,
        message: InboundMessage,
    ) -> IngestOutcome:
        if not self._store.is_known(machine_id):
            raise UnknownMachine(f"machine {machine_id} is not registered", machine_id=machine_id)

        reading = parsed.value
        event = self._repository.append_usage(
            UsageEvent(
                machine_id=machine_id,
                brew_type=reading.brew_type,
                volume_ml=reading.volume_ml,
                temp_at_brew_c=reading.temp_at_brew_c,
                timestamp=parsed.source_ts or message.received_at,
            )
        )
        self._stats.mark_usage()
        logger.debug(
            "[MQTT] Usage recorded machine=%s brew=%s id=%s",
            machine_id, reading.brew_type.value, event.id,
        )
        return IngestOutcome(OutcomeStatus.RECORDED, machine_id, metric_kind, usage_event=event)

    def _drop(self, message: InboundMessage, error: IngestError) -> IngestOutcome:
        self._stats.mark_dropped(error.reason)
        MESSAGES_DROPPED.labels(reason=error.reason.value).inc()
        logger.warning(
            "[MQTT] Dropped reason=%s topic=%s machine=%s payload=%r: %s",
            error.reason.value,
            message.topic,
            error.machine_id,
            message.payload[:_PAYLOAD_LOG_CHARS],
            error.detail,
        )
        self._dlq.send(
            payload=message.payload,
            error=str(error),
            error_type=error.reason.value,
            source="mqtt",
            topic=message.topic,
            machine_id=error.machine_id,
        )
        return IngestOutcome(
            OutcomeStatus.DROPPED,
            machine_id=error.machine_id,
            reason=error.reason,
            detail=str(error),
        )


_Handler = Callable[[TelemetryHandler, int, MetricKind, ParseResult, InboundMessage], IngestOutcome]

_DISPATCH: dict[MetricKind, _Handler] = {
    MetricKind.TEMPERATURE: TelemetryHandler._apply_state,
    MetricKind.WATER_LEVEL: TelemetryHandler._apply_state,
    MetricKind.MILK_LEVEL: TelemetryHandler._apply_state,
    MetricKind.BEANS_LEVEL: TelemetryHandler._apply_state,
    MetricKind.STATUS: TelemetryHandler._apply_state,
    MetricKind.USAGE: TelemetryHandler._record_usage,
}

_unhandled = set(MetricKind) - _DISPATCH.keys()
if _unhandled:
    raise RuntimeError(f"no handler for metric kinds: {sorted(k.value for k in _unhandled)}")
del _unhandled
