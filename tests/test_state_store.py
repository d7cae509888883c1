"""Machine state store: single-field updates, lazy creation, ordering."""

import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from telemetry_ingest.domain.errors import DownstreamUnavailable
from telemetry_ingest.domain.models import MachineStatus, MetricKind
from telemetry_ingest.resilience.circuit_breaker import CircuitBreaker
from telemetry_ingest.resilience.guard import DownstreamGuard
from telemetry_ingest.state.guarded import GuardedStateRepository
from telemetry_ingest.state.store import MachineStateStore, NotFound, Stale, UpdatedSnapshot

from .conftest import INACTIVE_MACHINE, KNOWN_MACHINE, OTHER_MACHINE

T0 = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


class TestApplyMetric:

    def test_temperature_touches_only_temperature(self, store):
        result = store.apply_metric(KNOWN_MACHINE, MetricKind.TEMPERATURE, 92.5, T0)

        assert isinstance(result, UpdatedSnapshot)
        snap = result.snapshot
        assert snap.temperature_c == 92.5
        assert snap.status is None
        assert snap.water_level_pct is None
        assert snap.milk_level_pct is None
        assert snap.beans_level_pct is None
        assert snap.field_timestamps == {MetricKind.TEMPERATURE: T0}

    def test_snapshot_accumulates_fields(self, store):
        store.apply_metric(KNOWN_MACHINE, MetricKind.WATER_LEVEL, 80, T0)
        result = store.apply_metric(KNOWN_MACHINE, MetricKind.MILK_LEVEL, 60, T0)
        assert result.snapshot.water_level_pct == 80
        assert result.snapshot.milk_level_pct == 60

    def test_snapshot_is_persisted(self, store, repository):
        store.apply_metric(KNOWN_MACHINE, MetricKind.BEANS_LEVEL, 33, T0)
        assert repository.load_machine_state(KNOWN_MACHINE).beans_level_pct == 33

    def test_status_change_reports_previous(self, store):
        store.apply_metric(KNOWN_MACHINE, MetricKind.STATUS, MachineStatus.ON, T0)
        result = store.apply_metric(
            KNOWN_MACHINE, MetricKind.STATUS, MachineStatus.ERROR, T0 + timedelta(seconds=1)
        )
        assert result.previous_status is MachineStatus.ON
        assert result.status_changed is True

    def test_first_status_has_no_previous(self, store):
        result = store.apply_metric(KNOWN_MACHINE, MetricKind.STATUS, MachineStatus.ERROR, T0)
        assert result.previous_status is None

    def test_usage_is_not_a_state_metric(self, store):
        with pytest.raises(ValueError):
            store.apply_metric(KNOWN_MACHINE, MetricKind.USAGE, None, T0)


class TestUnknownMachines:

    def test_unregistered_machine_not_found(self, store, repository):
        assert store.apply_metric(12345, MetricKind.TEMPERATURE, 90.0, T0) == NotFound(12345)
        assert repository.load_machine_state(12345) is None

    def test_inactive_machine_not_found(self, store):
        assert isinstance(store.apply_metric(INACTIVE_MACHINE, MetricKind.TEMPERATURE, 90.0, T0), NotFound)

    def test_is_known(self, store):
        assert store.is_known(KNOWN_MACHINE)
        assert not store.is_known(INACTIVE_MACHINE)
        assert not store.is_known(12345)


class TestOrdering:

    def test_older_update_is_stale(self, store):
        store.apply_metric(KNOWN_MACHINE, MetricKind.WATER_LEVEL, 50, T0)
        result = store.apply_metric(KNOWN_MACHINE, MetricKind.WATER_LEVEL, 10, T0 - timedelta(seconds=5))

        assert isinstance(result, Stale)
        assert store.get_snapshot(KNOWN_MACHINE).water_level_pct == 50

    def test_timestamps_are_per_field(self, store):
        store.apply_metric(KNOWN_MACHINE, MetricKind.WATER_LEVEL, 50, T0)
        result = store.apply_metric(KNOWN_MACHINE, MetricKind.MILK_LEVEL, 40, T0 - timedelta(minutes=1))
        assert isinstance(result, UpdatedSnapshot)

    def test_same_timestamp_is_idempotent(self, store):
        first = store.apply_metric(KNOWN_MACHINE, MetricKind.TEMPERATURE, 92.0, T0)
        again = store.apply_metric(KNOWN_MACHINE, MetricKind.TEMPERATURE, 92.0, T0)
        assert isinstance(again, UpdatedSnapshot)
        assert again.snapshot.temperature_c == first.snapshot.temperature_c
        assert again.snapshot.field_timestamps == first.snapshot.field_timestamps

    def test_trust_transport_order_takes_last_received(self, repository):
        store = MachineStateStore(repository, trust_transport_order=True)
        store.apply_metric(KNOWN_MACHINE, MetricKind.WATER_LEVEL, 50, T0)
        result = store.apply_metric(KNOWN_MACHINE, MetricKind.WATER_LEVEL, 10, T0 - timedelta(seconds=5))
        assert isinstance(result, UpdatedSnapshot)
        assert result.snapshot.water_level_pct == 10

    def test_state_reloaded_from_repository(self, repository):
        MachineStateStore(repository).apply_metric(KNOWN_MACHINE, MetricKind.WATER_LEVEL, 50, T0)

        fresh = MachineStateStore(repository)
        result = fresh.apply_metric(KNOWN_MACHINE, MetricKind.WATER_LEVEL, 10, T0 - timedelta(seconds=1))
        assert isinstance(result, Stale)


class TestPersistFailure:

    def test_failed_save_keeps_last_persisted_snapshot(self, repository):
        store = MachineStateStore(repository)
        store.apply_metric(KNOWN_MACHINE, MetricKind.TEMPERATURE, 90.0, T0)

        repository.save_machine_state = MagicMock(
            side_effect=DownstreamUnavailable("save_machine_state", "timed out")
        )
        with pytest.raises(DownstreamUnavailable):
            store.apply_metric(KNOWN_MACHINE, MetricKind.TEMPERATURE, 120.0, T0 + timedelta(seconds=1))

        assert store.get_snapshot(KNOWN_MACHINE).temperature_c == 90.0
        assert store.cached_machines() == 0

    def test_timed_out_save_cannot_overwrite_newer_state(self, repository, cb_config):
        release = threading.Event()
        finished = threading.Event()
        real_save = repository.save_machine_state

        def slow_first_save(machine_id, state):
            if not finished.is_set():
                release.wait(timeout=2.0)
                real_save(machine_id, state)
                finished.set()
                return
            real_save(machine_id, state)

        repository.save_machine_state = slow_first_save
        guard = DownstreamGuard(CircuitBreaker("state", cb_config), timeout_seconds=0.05)
        store = MachineStateStore(GuardedStateRepository(repository, guard))
        try:
            with pytest.raises(DownstreamUnavailable, match="timed out"):
                store.apply_metric(KNOWN_MACHINE, MetricKind.WATER_LEVEL, 10, T0)
            with pytest.raises(DownstreamUnavailable, match="still running"):
                store.apply_metric(KNOWN_MACHINE, MetricKind.WATER_LEVEL, 80, T0 + timedelta(seconds=1))

            release.set()
            assert finished.wait(timeout=2.0)
            time.sleep(0.05)

            result = store.apply_metric(KNOWN_MACHINE, MetricKind.WATER_LEVEL, 80, T0 + timedelta(seconds=2))
        finally:
            guard.shutdown()

        assert isinstance(result, UpdatedSnapshot)
        assert store.get_snapshot(KNOWN_MACHINE).water_level_pct == 80
        assert repository.load_machine_state(KNOWN_MACHINE).water_level_pct == 80


class TestConcurrency:

    def test_parallel_updates_on_different_fields_all_land(self, store):
        kinds = [MetricKind.WATER_LEVEL, MetricKind.MILK_LEVEL, MetricKind.BEANS_LEVEL]
        barrier = threading.Barrier(len(kinds) * 2)

        def worker(machine_id, kind, value):
            barrier.wait()
            store.apply_metric(machine_id, kind, value, T0)

        threads = [
            threading.Thread(target=worker, args=(m, k, 10 + i))
            for m in (KNOWN_MACHINE, OTHER_MACHINE)
            for i, k in enumerate(kinds)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for machine_id in (KNOWN_MACHINE, OTHER_MACHINE):
            snap = store.get_snapshot(machine_id)
            assert (snap.water_level_pct, snap.milk_level_pct, snap.beans_level_pct) == (10, 11, 12)
