"""Shared fixtures: an in-memory pipeline with a recording notification sink."""

from __future__ import annotations

import threading
from typing import List

import pytest

from common.config import MQTTSettings, Settings
from telemetry_ingest.alerts.evaluator import AlertEvaluator
from telemetry_ingest.alerts.notification_service import AsyncNotifier
from telemetry_ingest.alerts.thresholds import AlertThresholds
from telemetry_ingest.mqtt.message_handler import TelemetryHandler
from telemetry_ingest.mqtt.receiver_stats import IngestStats
from telemetry_ingest.resilience.circuit_breaker_config import CircuitBreakerConfig
from telemetry_ingest.resilience.dead_letter import DeadLetterQueue
from telemetry_ingest.state.memory_repository import InMemoryStateRepository
from telemetry_ingest.state.store import MachineStateStore


KNOWN_MACHINE = 42
OTHER_MACHINE = 7
INACTIVE_MACHINE = 99


class RecordingSink:
    """Notification sink that keeps every event it receives."""

    name = "recording"

    def __init__(self):
        self.events: List[object] = []
        self._lock = threading.Lock()

    def send(self, event) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type) -> list:
        with self._lock:
            return [e for e in self.events if isinstance(e, event_type)]


@pytest.fixture
def repository() -> InMemoryStateRepository:
    repo = InMemoryStateRepository()
    repo.register_machine(KNOWN_MACHINE, name="Lobby")
    repo.register_machine(OTHER_MACHINE, name="Kitchen")
    repo.register_machine(INACTIVE_MACHINE, name="Retired", active=False)
    return repo


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def notifier(sink):
    n = AsyncNotifier([sink], max_queue_size=100)
    n.start()
    yield n
    n.stop(drain=True)


@pytest.fixture
def thresholds() -> AlertThresholds:
    return AlertThresholds()


@pytest.fixture
def store(repository) -> MachineStateStore:
    return MachineStateStore(repository)


@pytest.fixture
def evaluator(repository, notifier, thresholds) -> AlertEvaluator:
    return AlertEvaluator(repository, notifier, thresholds)


@pytest.fixture
def dlq() -> DeadLetterQueue:
    return DeadLetterQueue()


@pytest.fixture
def handler(store, evaluator, repository, dlq) -> TelemetryHandler:
    return TelemetryHandler(store, evaluator, repository, dlq=dlq, stats=IngestStats())


@pytest.fixture
def settings() -> Settings:
    return Settings(
        mqtt=MQTTSettings(
            broker_host="localhost",
            broker_port=1883,
            username=None,
            password=None,
            client_id="test-ingest",
            topic_prefix="coffeeMachine",
            qos=1,
            keepalive=60,
        ),
        database_url=None,
        redis_url=None,
        num_workers=2,
        queue_size=100,
        downstream_timeout_seconds=1.0,
        trust_transport_order=False,
        max_clock_skew_seconds=60.0,
        notify_webhook_url=None,
        notify_queue_size=100,
        log_level="DEBUG",
    )


@pytest.fixture
def cb_config() -> CircuitBreakerConfig:
    return CircuitBreakerConfig(failure_threshold=3, recovery_timeout_seconds=30.0, success_threshold=1)
