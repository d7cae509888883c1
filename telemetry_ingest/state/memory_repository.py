"""In-memory StateRepository.

All mutations happen under one lock, so ``open_alert`` behaves like the
SQL partial unique index: a second unresolved alert for the same
(machine_id, type) is never inserted.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from typing import Optional

from ..domain.models import (
    Alert,
    AlertType,
    MachineRecord,
    MachineTelemetryState,
    Severity,
    UsageEvent,
    utcnow,
)
from .repository import StateRepository


class InMemoryStateRepository(StateRepository):

    def __init__(self, machines: Optional[list[MachineRecord]] = None):
        self._lock = threading.Lock()
        self._machines: dict[int, MachineRecord] = {m.machine_id: m for m in machines or []}
        self._states: dict[int, MachineTelemetryState] = {}
        self._usage: list[UsageEvent] = []
        self._alerts: dict[int, Alert] = {}
        self._alert_ids = itertools.count(1)
        self._usage_ids = itertools.count(1)

    def register_machine(self, machine_id: int, name: Optional[str] = None, active: bool = True) -> MachineRecord:
        record = MachineRecord(machine_id=machine_id, name=name, active=active)
        with self._lock:
            self._machines[machine_id] = record
        return record

    def get_machine(self, machine_id: int) -> Optional[MachineRecord]:
        with self._lock:
            return self._machines.get(machine_id)

    def load_machine_state(self, machine_id: int) -> Optional[MachineTelemetryState]:
        with self._lock:
            return self._states.get(machine_id)

    def save_machine_state(self, machine_id: int, state: MachineTelemetryState) -> None:
        with self._lock:
            self._states[machine_id] = state

    def append_usage(self, event: UsageEvent) -> UsageEvent:
        with self._lock:
            stored = replace(event, id=next(self._usage_ids))
            self._usage.append(stored)
            return stored

    def list_usage(self, machine_id: int, limit: int = 100) -> list[UsageEvent]:
        with self._lock:
            events = [e for e in self._usage if e.machine_id == machine_id]
        return events[-limit:][::-1]

    def open_alert(self, alert: Alert) -> Optional[Alert]:
        with self._lock:
            if self._unresolved(alert.machine_id, alert.type):
                return None
            stored = replace(alert, id=next(self._alert_ids), resolved=False)
            self._alerts[stored.id] = stored
            return stored

    def find_unresolved(self, machine_id: int, alert_type: AlertType) -> Optional[Alert]:
        with self._lock:
            found = self._unresolved(machine_id, alert_type)
        return found[-1] if found else None

    def refresh_alert(
        self,
        alert_id: int,
        severity: Severity,
        message: str,
        threshold_value: float,
    ) -> Optional[Alert]:
        with self._lock:
            current = self._alerts.get(alert_id)
            if current is None or current.resolved:
                return None
            updated = replace(
                current,
                severity=severity,
                message=message,
                threshold_value=threshold_value,
                updated_at=utcnow(),
            )
            self._alerts[alert_id] = updated
            return updated

    def resolve_alerts(self, machine_id: int, alert_type: AlertType) -> list[Alert]:
        with self._lock:
            resolved = [a.as_resolved() for a in self._unresolved(machine_id, alert_type)]
            for alert in resolved:
                self._alerts[alert.id] = alert
        return resolved

    def resolve_alert(self, alert_id: int) -> Optional[Alert]:
        with self._lock:
            current = self._alerts.get(alert_id)
            if current is None or current.resolved:
                return None
            resolved = current.as_resolved()
            self._alerts[alert_id] = resolved
            return resolved

    def get_alert(self, alert_id: int) -> Optional[Alert]:
        with self._lock:
            return self._alerts.get(alert_id)

    def list_unresolved(self, machine_id: Optional[int] = None) -> list[Alert]:
        with self._lock:
            return [
                a
                for a in self._alerts.values()
                if not a.resolved and (machine_id is None or a.machine_id == machine_id)
            ]

    def _unresolved(self, machine_id: int, alert_type: AlertType) -> list[Alert]:
        # Caller holds self._lock.
        return [
            a
            for a in self._alerts.values()
            if a.machine_id == machine_id and a.type is alert_type and not a.resolved
        ]
