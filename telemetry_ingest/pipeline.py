"""Wiring of the ingest pipeline.

``build_pipeline`` constructs every component once and injects it; there
are no module-level singletons. Start order is notifier → processor → MQTT,
stop order is the reverse: the MQTT loop stops first, the processor drains,
the notifier flushes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping, Optional, Sequence

from sqlalchemy.engine import Engine

from common.config import Settings, get_settings
from common.db import get_engine, ping

from .alerts.evaluator import AlertEvaluator
from .alerts.notification_service import AsyncNotifier, NotificationSink, create_notifier
from .alerts.thresholds import AlertThresholds
from .domain.models import InboundMessage
from .mqtt.async_processor import KeyedAsyncProcessor
from .mqtt.message_handler import IngestOutcome, TelemetryHandler
from .mqtt.receiver import TelemetryReceiver
from .mqtt.receiver_stats import IngestStats
from .resilience.circuit_breaker import CircuitBreaker
from .resilience.circuit_breaker_config import CircuitBreakerConfig
from .resilience.dead_letter import DeadLetterQueue, create_dead_letter_queue
from .resilience.guard import DownstreamGuard
from .state.guarded import GuardedStateRepository
from .state.memory_repository import InMemoryStateRepository
from .state.repository import StateRepository
from .state.sql_repository import SqlStateRepository, create_schema
from .state.store import MachineStateStore

logger = logging.getLogger(__name__)


@dataclass
class TelemetryPipeline:
    settings: Settings
    repository: GuardedStateRepository
    store: MachineStateStore
    evaluator: AlertEvaluator
    notifier: AsyncNotifier
    handler: TelemetryHandler
    processor: KeyedAsyncProcessor
    receiver: TelemetryReceiver
    dlq: DeadLetterQueue
    engine: Optional[Engine] = None
    started: bool = field(default=False, init=False)

    @property
    def stats(self) -> IngestStats:
        return self.handler.stats

    @property
    def guard(self) -> DownstreamGuard:
        return self.repository.guard

    def start(self, connect_mqtt: bool = True) -> bool:
        """Start workers; with ``connect_mqtt`` also the MQTT receiver.

        Returns False if the receiver could not connect. Workers keep
        running in that case so HTTP and ``ingest`` still work.
        """
        self.notifier.start()
        self.processor.start()
        self.started = True
        if not connect_mqtt:
            return True
        return self.receiver.start()

    def stop(self) -> None:
        self.receiver.stop()
        self.processor.stop(drain=True)
        self.notifier.stop(drain=True)
        self.guard.shutdown()
        self.started = False
        logger.info("[PIPELINE] Stopped. %s", self.stats)

    def ingest(self, topic: str, payload: bytes) -> IngestOutcome:
        """Process one message synchronously on the caller's thread."""
        return self.handler.handle(InboundMessage(topic=topic, payload=payload))

    def health_check(self) -> dict:
        cb = self.guard.circuit_breaker
        database_ok = ping(self.engine) if self.engine is not None else True
        return {
            "healthy": self.started and database_ok and cb.is_closed,
            "mqtt": self.receiver.health_check(),
            "database": {"configured": self.engine is not None, "reachable": database_ok},
            "circuit_breaker": cb.state.value,
            "dlq_enabled": self.dlq.enabled,
        }


def build_pipeline(
    settings: Optional[Settings] = None,
    repository: Optional[StateRepository] = None,
    thresholds: Optional[AlertThresholds] = None,
    overrides: Optional[Mapping[int, AlertThresholds]] = None,
    sinks: Optional[Sequence[NotificationSink]] = None,
    dlq: Optional[DeadLetterQueue] = None,
    circuit_breaker_config: Optional[CircuitBreakerConfig] = None,
) -> TelemetryPipeline:
    settings = settings or get_settings()

    engine: Optional[Engine] = None
    if repository is None:
        if settings.database_url:
            engine = get_engine(settings.database_url)
            create_schema(engine)
            repository = SqlStateRepository(engine)
        else:
            logger.info("[PIPELINE] DATABASE_URL not set, using in-memory state repository")
            repository = InMemoryStateRepository()
    elif isinstance(repository, SqlStateRepository):
        engine = repository.engine

    guard = DownstreamGuard(
        CircuitBreaker("state-repository", circuit_breaker_config or CircuitBreakerConfig.from_env()),
        timeout_seconds=settings.downstream_timeout_seconds,
    )
    guarded = GuardedStateRepository(repository, guard)

    if sinks is None:
        notifier = create_notifier(settings.notify_webhook_url, settings.notify_queue_size)
    else:
        notifier = AsyncNotifier(sinks, max_queue_size=settings.notify_queue_size)

    evaluator = AlertEvaluator(
        guarded,
        notifier,
        thresholds=thresholds or AlertThresholds.from_env(),
        overrides=overrides,
    )
    store = MachineStateStore(guarded, trust_transport_order=settings.trust_transport_order)
    dlq = dlq or create_dead_letter_queue(settings.redis_url)

    handler = TelemetryHandler(
        store=store,
        evaluator=evaluator,
        repository=guarded,
        dlq=dlq,
        stats=IngestStats(),
        topic_prefix=settings.mqtt.topic_prefix,
        max_clock_skew=timedelta(seconds=settings.max_clock_skew_seconds),
    )
    processor = KeyedAsyncProcessor(
        handle=handler.handle,
        max_queue_size=settings.queue_size,
        num_workers=settings.num_workers,
        topic_prefix=settings.mqtt.topic_prefix,
    )
    receiver = TelemetryReceiver(settings.mqtt, enqueue=processor.enqueue)

    logger.info(
        "[PIPELINE] Built repository=%s workers=%d trust_transport_order=%s",
        type(repository).__name__, settings.num_workers, settings.trust_transport_order,
    )
    return TelemetryPipeline(
        settings=settings,
        repository=guarded,
        store=store,
        evaluator=evaluator,
        notifier=notifier,
        handler=handler,
        processor=processor,
        receiver=receiver,
        dlq=dlq,
        engine=engine,
    )
