"""StateRepository decorator that routes every call through a DownstreamGuard."""

from __future__ import annotations

from typing import Optional

from ..domain.models import (
    Alert,
    AlertType,
    MachineRecord,
    MachineTelemetryState,
    Severity,
    UsageEvent,
)
from ..resilience.guard import DownstreamGuard
from .repository import StateRepository


class GuardedStateRepository(StateRepository):
    """Any failure, timeout or open circuit surfaces as DownstreamUnavailable."""

    def __init__(self, inner: StateRepository, guard: DownstreamGuard):
        self._inner = inner
        self._guard = guard

    @property
    def inner(self) -> StateRepository:
        return self._inner

    @property
    def guard(self) -> DownstreamGuard:
        return self._guard

    def get_machine(self, machine_id: int) -> Optional[MachineRecord]:
        return self._guard.call(
            "get_machine", lambda: self._inner.get_machine(machine_id), machine_id
        )

    def load_machine_state(self, machine_id: int) -> Optional[MachineTelemetryState]:
        return self._guard.call(
            "load_machine_state", lambda: self._inner.load_machine_state(machine_id), machine_id
        )

    def save_machine_state(self, machine_id: int, state: MachineTelemetryState) -> None:
        self._guard.call(
            "save_machine_state",
            lambda: self._inner.save_machine_state(machine_id, state),
            machine_id,
        )

    def append_usage(self, event: UsageEvent) -> UsageEvent:
        return self._guard.call(
            "append_usage", lambda: self._inner.append_usage(event), event.machine_id
        )

    def list_usage(self, machine_id: int, limit: int = 100) -> list[UsageEvent]:
        return self._guard.call(
            "list_usage", lambda: self._inner.list_usage(machine_id, limit), machine_id
        )

    def open_alert(self, alert: Alert) -> Optional[Alert]:
        return self._guard.call(
            "open_alert", lambda: self._inner.open_alert(alert), alert.machine_id
        )

    def find_unresolved(self, machine_id: int, alert_type: AlertType) -> Optional[Alert]:
        return self._guard.call(
            "find_unresolved",
            lambda: self._inner.find_unresolved(machine_id, alert_type),
            machine_id,
        )

    def refresh_alert(
        self,
        alert_id: int,
        severity: Severity,
        message: str,
        threshold_value: float,
    ) -> Optional[Alert]:
        return self._guard.call(
            "refresh_alert",
            lambda: self._inner.refresh_alert(alert_id, severity, message, threshold_value),
        )

    def resolve_alerts(self, machine_id: int, alert_type: AlertType) -> list[Alert]:
        return self._guard.call(
            "resolve_alerts",
            lambda: self._inner.resolve_alerts(machine_id, alert_type),
            machine_id,
        )

    def resolve_alert(self, alert_id: int) -> Optional[Alert]:
        return self._guard.call("resolve_alert", lambda: self._inner.resolve_alert(alert_id))

    def get_alert(self, alert_id: int) -> Optional[Alert]:
        return self._guard.call("get_alert", lambda: self._inner.get_alert(alert_id))

    def list_unresolved(self, machine_id: Optional[int] = None) -> list[Alert]:
        return self._guard.call(
            "list_unresolved", lambda: self._inner.list_unresolved(machine_id), machine_id
        )
