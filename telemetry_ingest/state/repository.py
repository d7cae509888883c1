"""State interface between the ingest pipeline and the persistence layer.

The pipeline never touches tables directly. Machine state, usage events
and alert records all go through a StateRepository:

    InMemoryStateRepository   tests and single-process deployments
    SqlStateRepository        SQLAlchemy (PostgreSQL / SQLite)
    GuardedStateRepository    wraps either one with timeout + circuit breaker
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from ..domain.models import (
    Alert,
    AlertType,
    MachineRecord,
    MachineTelemetryState,
    Severity,
    UsageEvent,
)


class StateRepository(ABC):

    # -- machine registry / snapshot ---------------------------------------

    @abstractmethod
    def get_machine(self, machine_id: int) -> Optional[MachineRecord]:
        """Registry lookup; None if the machine is unknown."""

    @abstractmethod
    def load_machine_state(self, machine_id: int) -> Optional[MachineTelemetryState]:
        """Last saved snapshot, or None if the machine never reported."""

    @abstractmethod
    def save_machine_state(self, machine_id: int, state: MachineTelemetryState) -> None:
        ...

    # -- usage ---------------------------------------------------------------

    @abstractmethod
    def append_usage(self, event: UsageEvent) -> UsageEvent:
        """Append a brew event; returns it with its id assigned."""

    @abstractmethod
    def list_usage(self, machine_id: int, limit: int = 100) -> list[UsageEvent]:
        ...

    # -- alerts --------------------------------------------------------------

    @abstractmethod
    def open_alert(self, alert: Alert) -> Optional[Alert]:
        """Insert an unresolved alert.

        Returns None, without inserting, when an unresolved alert with the
        same (machine_id, type) already exists.
        """

    @abstractmethod
    def find_unresolved(self, machine_id: int, alert_type: AlertType) -> Optional[Alert]:
        ...

    @abstractmethod
    def refresh_alert(
        self,
        alert_id: int,
        severity: Severity,
        message: str,
        threshold_value: float,
    ) -> Optional[Alert]:
        """Update an unresolved alert in place; None if it is gone or resolved."""

    @abstractmethod
    def resolve_alerts(self, machine_id: int, alert_type: AlertType) -> list[Alert]:
        """Resolve every unresolved alert of (machine_id, type); returns them."""

    @abstractmethod
    def resolve_alert(self, alert_id: int) -> Optional[Alert]:
        """Resolve one alert by id; None if unknown or already resolved."""

    @abstractmethod
    def get_alert(self, alert_id: int) -> Optional[Alert]:
        ...

    @abstractmethod
    def list_unresolved(self, machine_id: Optional[int] = None) -> list[Alert]:
        ...
