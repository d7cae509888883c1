"""Machine State Store.

Owns the per-machine telemetry snapshot. Every change is a single-field
update applied under the machine's lock:

    1. resolve the snapshot (cache → repository → new, if the registry knows the id)
    2. drop the update if its source timestamp is older than the stored one
    3. persist the new snapshot, then publish it to the cache

A failed persist drops the cached snapshot, so the next message for the
same machine reloads whatever the repository actually holds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from ..domain.errors import DownstreamUnavailable
from ..domain.models import (
    MachineStatus,
    MachineTelemetryState,
    MetricKind,
    MetricValue,
    utcnow,
)
from .locks import KeyedLock
from .repository import StateRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpdatedSnapshot:
    """Full snapshot after the update; what the alert evaluator consumes."""

    snapshot: MachineTelemetryState
    metric_kind: MetricKind
    previous_status: Optional[MachineStatus] = None

    @property
    def machine_id(self) -> int:
        return self.snapshot.machine_id

    @property
    def status_changed(self) -> bool:
        return (
            self.metric_kind is MetricKind.STATUS
            and self.snapshot.status is not self.previous_status
        )


@dataclass(frozen=True)
class NotFound:
    machine_id: int


@dataclass(frozen=True)
class Stale:
    machine_id: int
    metric_kind: MetricKind
    stored_ts: datetime
    source_ts: datetime


ApplyResult = Union[UpdatedSnapshot, NotFound, Stale]


class MachineStateStore:

    def __init__(self, repository: StateRepository, trust_transport_order: bool = False):
        self._repository = repository
        self._trust_transport_order = trust_transport_order
        self._locks = KeyedLock()
        self._snapshots: dict[int, MachineTelemetryState] = {}

    def apply_metric(
        self,
        machine_id: int,
        metric_kind: MetricKind,
        value: MetricValue,
        source_ts: Optional[datetime] = None,
    ) -> ApplyResult:
        """Apply one metric to the machine's snapshot.

        Raises:
            ValueError: for ``MetricKind.USAGE``, which is not part of the snapshot.
            DownstreamUnavailable: when the repository cannot be reached
                (only with a GuardedStateRepository).
        """
        if not metric_kind.is_state_metric:
            raise ValueError(f"{metric_kind.value} is not a state metric")

        ts = source_ts or utcnow()

        with self._locks.hold(machine_id):
            current = self._resolve(machine_id)
            if current is None:
                logger.warning("[STATE] Unknown machine machine=%s kind=%s", machine_id, metric_kind.value)
                return NotFound(machine_id)

            stored_ts = current.field_timestamps.get(metric_kind)
            if not self._trust_transport_order and stored_ts is not None and ts < stored_ts:
                logger.info(
                    "[STATE] Stale update ignored machine=%s kind=%s source_ts=%s stored_ts=%s",
                    machine_id, metric_kind.value, ts.isoformat(), stored_ts.isoformat(),
                )
                return Stale(machine_id, metric_kind, stored_ts, ts)

            updated = current.with_metric(metric_kind, value, ts)
            try:
                self._repository.save_machine_state(machine_id, updated)
            except DownstreamUnavailable:
                # A timed-out save may still land; reload on the next message.
                self._snapshots.pop(machine_id, None)
                raise
            self._snapshots[machine_id] = updated

        logger.debug(
            "[STATE] Applied machine=%s kind=%s value=%s", machine_id, metric_kind.value, value
        )
        return UpdatedSnapshot(
            snapshot=updated,
            metric_kind=metric_kind,
            previous_status=current.status if metric_kind is MetricKind.STATUS else None,
        )

    def is_known(self, machine_id: int) -> bool:
        if machine_id in self._snapshots:
            return True
        machine = self._repository.get_machine(machine_id)
        return machine is not None and machine.active

    def get_snapshot(self, machine_id: int) -> Optional[MachineTelemetryState]:
        cached = self._snapshots.get(machine_id)
        if cached is not None:
            return cached
        return self._repository.load_machine_state(machine_id)

    def cached_machines(self) -> int:
        return len(self._snapshots)

    def _resolve(self, machine_id: int) -> Optional[MachineTelemetryState]:
        # Caller holds the machine lock.
        cached = self._snapshots.get(machine_id)
        if cached is not None:
            return cached

        machine = self._repository.get_machine(machine_id)
        if machine is None or not machine.active:
            return None

        loaded = self._repository.load_machine_state(machine_id)
        if loaded is None:
            loaded = MachineTelemetryState(machine_id=machine_id)
            logger.info("[STATE] First telemetry for machine=%s", machine_id)
        self._snapshots[machine_id] = loaded
        return loaded
