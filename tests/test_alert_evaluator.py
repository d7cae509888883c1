"""Alert evaluator: open / debounce / auto-resolve / operator resolve."""

import threading
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from telemetry_ingest.alerts.evaluator import AlertEvaluator
from telemetry_ingest.alerts.notification_service import (
    AlertOpened,
    AlertResolved,
    AlertSummary,
    AsyncNotifier,
)
from telemetry_ingest.alerts.thresholds import AlertThresholds, DebounceMode
from telemetry_ingest.domain.models import AlertType, MachineStatus, MetricKind, Severity

from .conftest import KNOWN_MACHINE, OTHER_MACHINE, RecordingSink

T0 = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def apply(store, evaluator):
    """Apply one metric through the store and evaluate it; returns touched alerts."""
    ticks = count()

    def _apply(kind, value, machine_id=KNOWN_MACHINE, ev=None):
        update = store.apply_metric(machine_id, kind, value, T0 + timedelta(seconds=next(ticks)))
        return (ev or evaluator).evaluate(update)

    return _apply


# =============================================================================
# SUPPLY LEVELS
# =============================================================================

class TestLowWater:

    def test_breach_debounce_and_auto_resolve(self, apply, evaluator, notifier, sink):
        assert apply(MetricKind.WATER_LEVEL, 25) == []

        created = apply(MetricKind.WATER_LEVEL, 15)
        assert len(created) == 1
        alert = created[0]
        assert alert.type is AlertType.LOW_WATER
        assert alert.severity is Severity.WARNING
        assert alert.message == "Water level is low: 15% (threshold: 20%)"
        assert alert.threshold_value == 20.0

        assert apply(MetricKind.WATER_LEVEL, 14) == []
        assert len(evaluator.unresolved_alerts(KNOWN_MACHINE)) == 1

        resolved = apply(MetricKind.WATER_LEVEL, 30)
        assert [a.id for a in resolved] == [alert.id]
        assert resolved[0].resolved is True
        assert evaluator.unresolved_alerts(KNOWN_MACHINE) == []

        notifier.flush()
        assert [type(e) for e in sink.events] == [AlertOpened, AlertResolved]
        assert sink.events[1].resolved_by == "auto"

    def test_level_at_threshold_is_not_low(self, apply, evaluator):
        assert apply(MetricKind.WATER_LEVEL, 20) == []
        assert evaluator.unresolved_alerts() == []

    def test_new_breach_after_resolve_opens_new_alert(self, apply):
        first = apply(MetricKind.MILK_LEVEL, 5)[0]
        apply(MetricKind.MILK_LEVEL, 50)
        second = apply(MetricKind.MILK_LEVEL, 5)[0]
        assert second.id != first.id
        assert second.type is AlertType.LOW_MILK

    def test_only_updated_metric_is_evaluated(self, apply, evaluator):
        apply(MetricKind.BEANS_LEVEL, 5)
        apply(MetricKind.WATER_LEVEL, 90)
        open_types = {a.type for a in evaluator.unresolved_alerts()}
        assert open_types == {AlertType.LOW_BEANS}

    def test_beans_message(self, apply):
        alert = apply(MetricKind.BEANS_LEVEL, 3)[0]
        assert alert.message == "Beans level is low: 3% (threshold: 20%)"


# =============================================================================
# MALFUNCTION
# =============================================================================

class TestTemperatureMalfunction:

    def test_out_of_band_opens_and_never_auto_resolves(self, apply, evaluator, notifier, sink):
        alert = apply(MetricKind.TEMPERATURE, 112.0)[0]
        assert alert.type is AlertType.MALFUNCTION
        assert alert.message == "Temperature too high: 112.0°C (max: 100.0°C)"
        assert alert.threshold_value == 100.0

        assert apply(MetricKind.TEMPERATURE, 90.0) == []
        assert [a.id for a in evaluator.unresolved_alerts()] == [alert.id]

        resolved = evaluator.resolve_alert(alert.id)
        assert resolved.resolved is True
        assert evaluator.unresolved_alerts() == []
        assert evaluator.stats["resolved"] == 1

        notifier.flush()
        assert sink.of_type(AlertResolved)[0].resolved_by == "operator"

    @pytest.mark.parametrize(
        "temperature,severity",
        [(105.0, Severity.WARNING), (110.0, Severity.WARNING), (110.5, Severity.CRITICAL), (80.0, Severity.WARNING)],
    )
    def test_severity_escalates_beyond_margin(self, apply, temperature, severity):
        assert apply(MetricKind.TEMPERATURE, temperature)[0].severity is severity

    def test_too_low_message(self, apply):
        alert = apply(MetricKind.TEMPERATURE, 70.0)[0]
        assert alert.message == "Temperature too low: 70.0°C (min: 85.0°C)"
        assert alert.threshold_value == 85.0
        assert alert.severity is Severity.CRITICAL


class TestStatusMalfunction:

    def test_error_status_is_critical(self, apply):
        apply(MetricKind.STATUS, MachineStatus.ON)
        alert = apply(MetricKind.STATUS, MachineStatus.ERROR)[0]
        assert alert.severity is Severity.CRITICAL
        assert alert.message == "Machine is in ERROR state (was: ON)"
        assert alert.threshold_value == 0.0

    def test_first_status_error_has_unknown_previous(self, apply):
        alert = apply(MetricKind.STATUS, MachineStatus.ERROR)[0]
        assert alert.message == "Machine is in ERROR state (was: UNKNOWN)"

    def test_recovery_does_not_resolve(self, apply, evaluator):
        apply(MetricKind.STATUS, MachineStatus.ERROR)
        assert apply(MetricKind.STATUS, MachineStatus.ON) == []
        assert len(evaluator.unresolved_alerts()) == 1

    def test_temperature_and_status_share_malfunction_slot(self, apply, evaluator):
        apply(MetricKind.TEMPERATURE, 120.0)
        assert apply(MetricKind.STATUS, MachineStatus.ERROR) == []
        assert len(evaluator.unresolved_alerts()) == 1


# =============================================================================
# OPERATOR OPERATIONS
# =============================================================================

class TestOperatorOperations:

    def test_resolve_unknown_or_resolved_is_noop(self, apply, evaluator, notifier, sink):
        assert evaluator.resolve_alert(999) is None
        alert = apply(MetricKind.TEMPERATURE, 120.0)[0]
        evaluator.resolve_alert(alert.id)
        assert evaluator.resolve_alert(alert.id) is None

        notifier.flush()
        assert len(sink.of_type(AlertResolved)) == 1

    def test_statistics(self, apply, evaluator):
        apply(MetricKind.WATER_LEVEL, 5)
        apply(MetricKind.STATUS, MachineStatus.ERROR)
        apply(MetricKind.MILK_LEVEL, 5, machine_id=OTHER_MACHINE)

        stats = evaluator.statistics()
        assert stats.total_unresolved == 3
        assert stats.by_severity[Severity.WARNING] == 2
        assert stats.by_severity[Severity.CRITICAL] == 1
        assert stats.by_type[AlertType.LOW_BEANS] == 0

    def test_summary_only_with_open_alerts(self, apply, evaluator, notifier, sink):
        assert evaluator.send_summary() is None

        apply(MetricKind.WATER_LEVEL, 5)
        summary = evaluator.send_summary()
        assert summary.statistics.total_unresolved == 1

        notifier.flush()
        assert len(sink.of_type(AlertSummary)) == 1


# =============================================================================
# CONFIGURATION
# =============================================================================

class TestConfiguration:

    def test_refresh_mode_updates_open_alert(self, store, repository, notifier, sink, apply):
        ev = AlertEvaluator(repository, notifier, AlertThresholds(debounce_mode=DebounceMode.REFRESH))
        first = apply(MetricKind.WATER_LEVEL, 15, ev=ev)[0]
        assert apply(MetricKind.WATER_LEVEL, 5, ev=ev) == []

        current = repository.get_alert(first.id)
        assert current.message == "Water level is low: 5% (threshold: 20%)"
        assert current.updated_at >= first.updated_at
        assert ev.stats["refreshed"] == 1

        notifier.flush()
        assert len(sink.of_type(AlertOpened)) == 1

    def test_per_machine_override(self, repository, notifier, apply):
        ev = AlertEvaluator(
            repository, notifier, AlertThresholds(), overrides={OTHER_MACHINE: AlertThresholds(low_water=50)}
        )
        assert apply(MetricKind.WATER_LEVEL, 40, ev=ev) == []
        assert len(apply(MetricKind.WATER_LEVEL, 40, machine_id=OTHER_MACHINE, ev=ev)) == 1

    def test_invalid_band_rejected(self):
        with pytest.raises(ValueError):
            AlertThresholds(min_temperature=100, max_temperature=85)


# =============================================================================
# INVARIANT: ONE OPEN ALERT PER (MACHINE, TYPE)
# =============================================================================

class TestSingleOpenAlert:

    def _hammer(self, evaluators, update, n_threads=16):
        barrier = threading.Barrier(n_threads)

        def worker(i):
            barrier.wait()
            evaluators[i % len(evaluators)].evaluate(update)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(n_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    def test_concurrent_breaches_open_one_alert(self, store, evaluator, repository):
        update = store.apply_metric(KNOWN_MACHINE, MetricKind.WATER_LEVEL, 5, T0)
        self._hammer([evaluator], update)
        assert len(repository.list_unresolved(KNOWN_MACHINE)) == 1
        assert evaluator.stats["opened"] == 1

    def test_repository_rule_holds_across_evaluators(self, store, repository, notifier):
        # Separate evaluators do not share locks; the repository still refuses duplicates.
        evaluators = [AlertEvaluator(repository, notifier) for _ in range(4)]
        update = store.apply_metric(KNOWN_MACHINE, MetricKind.TEMPERATURE, 130.0, T0)
        self._hammer(evaluators, update)
        assert len(repository.list_unresolved(KNOWN_MACHINE)) == 1


class TestNotifierIsolation:

    def test_failing_sink_does_not_affect_outcome(self, repository, store):
        class Exploding:
            name = "exploding"

            def send(self, event):
                raise RuntimeError("boom")

        recording = RecordingSink()
        notifier = AsyncNotifier([Exploding(), recording])
        notifier.start()
        try:
            ev = AlertEvaluator(repository, notifier)
            update = store.apply_metric(KNOWN_MACHINE, MetricKind.WATER_LEVEL, 5, T0)
            assert len(ev.evaluate(update)) == 1
            notifier.flush()
        finally:
            notifier.stop()

        assert len(recording.events) == 1
        assert notifier.metrics["sink_errors"] == 1
