"""End-to-end handling of one MQTT message: route → parse → state → alerts."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from telemetry_ingest.domain.errors import DownstreamUnavailable, DropReason
from telemetry_ingest.domain.models import AlertType, BrewType, InboundMessage
from telemetry_ingest.mqtt.message_handler import OutcomeStatus, TelemetryHandler
from telemetry_ingest.mqtt.receiver_stats import IngestStats

from .conftest import INACTIVE_MACHINE, KNOWN_MACHINE


def msg(topic: str, payload) -> InboundMessage:
    if isinstance(payload, str):
        payload = payload.encode()
    return InboundMessage(topic=topic, payload=payload)


# =============================================================================
# STATE METRICS
# =============================================================================

class TestStateMetrics:

    def test_scalar_temperature_sets_exact_value(self, handler, store):
        outcome = handler.handle(msg("coffeeMachine/42/temperature", "92.5"))

        assert outcome.status is OutcomeStatus.APPLIED
        snap = store.get_snapshot(KNOWN_MACHINE)
        assert snap.temperature_c == 92.5
        assert snap.water_level_pct is None
        assert snap.status is None

    def test_low_water_alert_flows_through(self, handler):
        handler.handle(msg("coffeeMachine/42/waterLevel", '{"level": 25}'))
        outcome = handler.handle(msg("coffeeMachine/42/waterLevel", '{"level": 15}'))
        assert [a.type for a in outcome.alerts] == [AlertType.LOW_WATER]

    def test_stale_structured_message(self, handler, store):
        handler.handle(msg("coffeeMachine/42/milkLevel", '{"level": 70, "timestamp": "2024-05-01T10:00:05Z"}'))
        outcome = handler.handle(
            msg("coffeeMachine/42/milkLevel", '{"level": 10, "timestamp": "2024-05-01T10:00:00Z"}')
        )
        assert outcome.status is OutcomeStatus.STALE
        assert store.get_snapshot(KNOWN_MACHINE).milk_level_pct == 70
        assert handler.stats.stale == 1

    def test_future_timestamp_rejected_and_does_not_block_later_readings(self, handler, store, dlq):
        outcome = handler.handle(
            msg("coffeeMachine/42/waterLevel", '{"level": 10, "timestamp": "2099-01-01T00:00:00Z"}')
        )
        assert outcome.status is OutcomeStatus.DROPPED
        assert outcome.reason is DropReason.UNPARSEABLE_PAYLOAD
        assert dlq.stats["by_error_type"] == {"unparseable_payload": 1}

        assert handler.handle(msg("coffeeMachine/42/waterLevel", "80")).status is OutcomeStatus.APPLIED
        assert store.get_snapshot(KNOWN_MACHINE).water_level_pct == 80

    def test_timestamp_within_skew_accepted(self, handler):
        received = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        outcome = handler.handle(InboundMessage(
            "coffeeMachine/42/temperature",
            b'{"temperature": 91, "timestamp": "2024-05-01T10:00:30Z"}',
            received_at=received,
        ))
        assert outcome.status is OutcomeStatus.APPLIED


# =============================================================================
# USAGE
# =============================================================================

class TestUsage:

    def test_structured_usage_creates_one_event(self, handler, repository):
        outcome = handler.handle(
            msg("coffeeMachine/42/usage", '{"brewType":"ESPRESSO","volumeMl":30,"tempAtBrew":92.0}')
        )

        assert outcome.status is OutcomeStatus.RECORDED
        events = repository.list_usage(KNOWN_MACHINE)
        assert len(events) == 1
        event = events[0]
        assert event.brew_type is BrewType.ESPRESSO
        assert event.volume_ml == 30
        assert event.temp_at_brew_c == 92.0
        assert event.timestamp is not None

    def test_usage_does_not_touch_snapshot(self, handler, store):
        handler.handle(msg("coffeeMachine/42/usage", "LATTE:200:70"))
        assert store.get_snapshot(KNOWN_MACHINE) is None

    def test_usage_for_unknown_machine_dropped(self, handler, repository):
        outcome = handler.handle(msg("coffeeMachine/555/usage", "LATTE"))
        assert outcome.reason is DropReason.UNKNOWN_MACHINE
        assert repository.list_usage(555) == []


# =============================================================================
# DROPS
# =============================================================================

class TestDrops:

    @pytest.mark.parametrize(
        "topic,payload,reason",
        [
            ("coffeeMachine/abc/temperature", "92.5", DropReason.MALFORMED_TOPIC),
            ("coffeeMachine/42", "92.5", DropReason.MALFORMED_TOPIC),
            ("coffeeMachine/42/pressure", "3", DropReason.MALFORMED_TOPIC),
            ("coffeeMachine/42/temperature", "999", DropReason.UNPARSEABLE_PAYLOAD),
            ("coffeeMachine/42/waterLevel", "{bad", DropReason.UNPARSEABLE_PAYLOAD),
            ("coffeeMachine/42/waterLevel", '{"level": 1' + "0" * 5000 + "}", DropReason.UNPARSEABLE_PAYLOAD),
            ("coffeeMachine/12345/temperature", "92.5", DropReason.UNKNOWN_MACHINE),
            (f"coffeeMachine/{INACTIVE_MACHINE}/temperature", "92.5", DropReason.UNKNOWN_MACHINE),
        ],
    )
    def test_drop_reason(self, handler, topic, payload, reason):
        outcome = handler.handle(msg(topic, payload))
        assert outcome.status is OutcomeStatus.DROPPED
        assert outcome.reason is reason
        assert handler.stats.to_dict()["dropped"][reason.value] == 1

    def test_malformed_topic_mutates_nothing(self, handler, store, repository):
        handler.handle(msg("coffeeMachine/abc/temperature", "92.5"))
        assert store.cached_machines() == 0
        assert repository.list_unresolved() == []

    def test_drop_goes_to_dlq(self, store, evaluator, repository):
        dlq = MagicMock()
        h = TelemetryHandler(store, evaluator, repository, dlq=dlq, stats=IngestStats())
        h.handle(msg("coffeeMachine/42/temperature", "hot"))

        dlq.send.assert_called_once()
        kwargs = dlq.send.call_args.kwargs
        assert kwargs["error_type"] == "unparseable_payload"
        assert kwargs["topic"] == "coffeeMachine/42/temperature"
        assert kwargs["machine_id"] == KNOWN_MACHINE

    def test_downstream_failure_is_dropped_and_next_message_processed(self, store, evaluator, repository):
        original = repository.save_machine_state
        repository.save_machine_state = MagicMock(
            side_effect=DownstreamUnavailable("save_machine_state", "timed out", machine_id=KNOWN_MACHINE)
        )
        h = TelemetryHandler(store, evaluator, repository, stats=IngestStats())

        outcome = h.handle(msg("coffeeMachine/42/temperature", "90"))
        assert outcome.reason is DropReason.DOWNSTREAM_UNAVAILABLE

        repository.save_machine_state = original
        assert h.handle(msg("coffeeMachine/42/temperature", "91")).status is OutcomeStatus.APPLIED

    def test_stats_count_everything(self, handler):
        handler.handle(msg("coffeeMachine/42/temperature", "90"))
        handler.handle(msg("coffeeMachine/42/usage", "MOCHA"))
        handler.handle(msg("bad/topic", "x"))

        stats = handler.stats.to_dict()
        assert stats["received"] == 3
        assert stats["applied"] == 1
        assert stats["usage_recorded"] == 1
        assert stats["dropped_total"] == 1
