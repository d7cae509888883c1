"""Alert Evaluator.

Per (machine_id, type) the lifecycle is OPEN → RESOLVED, and RESOLVED is
terminal: a later breach opens a new alert instead of reopening the old one.

Debounce: the check for an existing unresolved alert and the insert run
under a per-(machine_id, type) lock. The repository's own uniqueness rule
(partial unique index in SQL) backs that up across processes; a rejected
insert is treated as "already open".
"""

from __future__ import annotations

import logging
import threading
from typing import Mapping, Optional

from ..domain.models import Alert, AlertStatistics, AlertType
from ..metrics import ALERT_EVENTS
from ..state.locks import KeyedLock
from ..state.repository import StateRepository
from ..state.store import UpdatedSnapshot
from .alert_rules import NoChange, OpenAlert, ResolveAlerts, decide
from .notification_service import AlertOpened, AlertResolved, AlertSummary, AsyncNotifier
from .thresholds import AlertThresholds, DebounceMode

logger = logging.getLogger(__name__)


class AlertEvaluator:

    def __init__(
        self,
        repository: StateRepository,
        notifier: AsyncNotifier,
        thresholds: Optional[AlertThresholds] = None,
        overrides: Optional[Mapping[int, AlertThresholds]] = None,
    ):
        self._repository = repository
        self._notifier = notifier
        self._thresholds = thresholds or AlertThresholds()
        self._overrides = dict(overrides or {})
        self._locks = KeyedLock()

        self._stats_lock = threading.Lock()
        self._stats = {"opened": 0, "suppressed": 0, "refreshed": 0, "resolved": 0}

    @property
    def stats(self) -> dict:
        with self._stats_lock:
            return dict(self._stats)

    def _count(self, name: str, alert_type: AlertType) -> None:
        ALERT_EVENTS.labels(event=name, type=alert_type.value).inc()
        with self._stats_lock:
            self._stats[name] += 1

    def thresholds_for(self, machine_id: int) -> AlertThresholds:
        return self._overrides.get(machine_id, self._thresholds)

    def evaluate(self, update: UpdatedSnapshot) -> list[Alert]:
        """Apply the rule for the updated metric.

        Returns the alerts created or resolved by this update (empty when
        nothing changed). Repository errors propagate to the caller.
        """
        thresholds = self.thresholds_for(update.machine_id)
        decision = decide(update, thresholds)

        if isinstance(decision, NoChange):
            return []
        if isinstance(decision, OpenAlert):
            created = self._open(update.machine_id, decision, thresholds.debounce_mode)
            return [created] if created is not None else []
        if isinstance(decision, ResolveAlerts):
            return self._resolve(update.machine_id, decision.alert_type)
        raise TypeError(f"unknown alert decision: {decision!r}")

    def _open(self, machine_id: int, decision: OpenAlert, mode: DebounceMode) -> Optional[Alert]:
        with self._locks.hold((machine_id, decision.alert_type)):
            existing = self._repository.find_unresolved(machine_id, decision.alert_type)
            if existing is None:
                created = self._repository.open_alert(
                    Alert(
                        machine_id=machine_id,
                        type=decision.alert_type,
                        severity=decision.severity,
                        message=decision.message,
                        threshold_value=decision.threshold_value,
                    )
                )
                if created is not None:
                    self._count("opened", created.type)
                    logger.warning(
                        "[ALERT] Created id=%s machine=%s type=%s severity=%s: %s",
                        created.id, machine_id, created.type.value, created.severity.value, created.message,
                    )
                    self._notifier.notify(AlertOpened(created))
                    return created
                # Lost the insert race to another writer of the same store.
                existing = self._repository.find_unresolved(machine_id, decision.alert_type)

            if existing is not None and mode is DebounceMode.REFRESH:
                self._repository.refresh_alert(
                    existing.id, decision.severity, decision.message, decision.threshold_value
                )
                self._count("refreshed", decision.alert_type)
                logger.debug("[ALERT] Refreshed id=%s machine=%s", existing.id, machine_id)
            else:
                self._count("suppressed", decision.alert_type)
                logger.debug(
                    "[ALERT] Suppressed machine=%s type=%s (already open)",
                    machine_id, decision.alert_type.value,
                )
        return None

    def _resolve(self, machine_id: int, alert_type: AlertType) -> list[Alert]:
        with self._locks.hold((machine_id, alert_type)):
            resolved = self._repository.resolve_alerts(machine_id, alert_type)
        for alert in resolved:
            self._count("resolved", alert.type)
            logger.info(
                "[ALERT] Auto-resolved id=%s machine=%s type=%s", alert.id, machine_id, alert_type.value
            )
            self._notifier.notify(AlertResolved(alert, resolved_by="auto"))
        return resolved

    # -- operator operations ------------------------------------------------

    def resolve_alert(self, alert_id: int) -> Optional[Alert]:
        """Operator resolution; None for unknown or already resolved ids."""
        current = self._repository.get_alert(alert_id)
        if current is None or current.resolved:
            return None

        with self._locks.hold(current.key):
            resolved = self._repository.resolve_alert(alert_id)
        if resolved is None:
            return None

        self._count("resolved", resolved.type)
        logger.info(
            "[ALERT] Resolved by operator id=%s machine=%s type=%s",
            alert_id, resolved.machine_id, resolved.type.value,
        )
        self._notifier.notify(AlertResolved(resolved, resolved_by="operator"))
        return resolved

    def unresolved_alerts(self, machine_id: Optional[int] = None) -> list[Alert]:
        return self._repository.list_unresolved(machine_id)

    def statistics(self) -> AlertStatistics:
        return AlertStatistics.from_alerts(self._repository.list_unresolved())

    def send_summary(self) -> Optional[AlertSummary]:
        """Enqueue a summary of the open alerts; nothing when there are none."""
        open_alerts = self._repository.list_unresolved()
        if not open_alerts:
            logger.info("[ALERT] No unresolved alerts, summary skipped")
            return None
        summary = AlertSummary(
            statistics=AlertStatistics.from_alerts(open_alerts),
            alerts=tuple(open_alerts),
        )
        self._notifier.notify(summary)
        return summary
