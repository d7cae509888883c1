"""Alert notifications.

Best-effort side channel: the evaluator enqueues an event and returns; a
single worker thread hands each event to every sink in enqueue order, so
"opened" always reaches a sink before "resolved" for the same alert.
Nothing here ever raises back into the ingest path.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol, Sequence, Union

import requests

from ..domain.models import Alert, AlertStatistics, Severity, utcnow

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 500
WEBHOOK_TIMEOUT_SECONDS = 5


def _alert_dict(alert: Alert) -> dict[str, Any]:
    return {
        "id": alert.id,
        "machineId": alert.machine_id,
        "type": alert.type.value,
        "severity": alert.severity.value,
        "message": alert.message,
        "thresholdValue": alert.threshold_value,
        "resolved": alert.resolved,
        "createdAt": alert.created_at.isoformat(),
        "updatedAt": alert.updated_at.isoformat(),
    }


@dataclass(frozen=True)
class AlertOpened:
    alert: Alert
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {"event": "alert_opened", "occurredAt": self.occurred_at.isoformat(), "alert": _alert_dict(self.alert)}


@dataclass(frozen=True)
class AlertResolved:
    alert: Alert
    resolved_by: str = "auto"
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": "alert_resolved",
            "occurredAt": self.occurred_at.isoformat(),
            "resolvedBy": self.resolved_by,
            "alert": _alert_dict(self.alert),
        }


@dataclass(frozen=True)
class AlertSummary:
    statistics: AlertStatistics
    alerts: tuple[Alert, ...] = ()
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        stats = self.statistics
        return {
            "event": "alert_summary",
            "occurredAt": self.occurred_at.isoformat(),
            "totalUnresolved": stats.total_unresolved,
            "bySeverity": {k.value: v for k, v in stats.by_severity.items()},
            "byType": {k.value: v for k, v in stats.by_type.items()},
            "alerts": [_alert_dict(a) for a in self.alerts],
        }


NotificationEvent = Union[AlertOpened, AlertResolved, AlertSummary]


class NotificationSink(Protocol):
    name: str

    def send(self, event: NotificationEvent) -> None:
        ...


class LoggingSink:
    name = "log"

    _LEVELS = {
        Severity.CRITICAL: logging.ERROR,
        Severity.WARNING: logging.WARNING,
        Severity.INFO: logging.INFO,
    }

    def send(self, event: NotificationEvent) -> None:
        if isinstance(event, AlertOpened):
            alert = event.alert
            logger.log(
                self._LEVELS[alert.severity],
                "[NOTIFY] Alert opened id=%s machine=%s type=%s severity=%s: %s",
                alert.id, alert.machine_id, alert.type.value, alert.severity.value, alert.message,
            )
        elif isinstance(event, AlertResolved):
            alert = event.alert
            logger.info(
                "[NOTIFY] Alert resolved id=%s machine=%s type=%s by=%s",
                alert.id, alert.machine_id, alert.type.value, event.resolved_by,
            )
        else:
            stats = event.statistics
            logger.info(
                "[NOTIFY] Alert summary unresolved=%d by_severity=%s",
                stats.total_unresolved,
                {k.value: v for k, v in stats.by_severity.items() if v},
            )


class WebhookSink:
    """POSTs each event as JSON. Non-2xx responses raise like network errors."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        timeout: float = WEBHOOK_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self._url = url
        self._timeout = timeout
        self._session = session or requests.Session()

    def send(self, event: NotificationEvent) -> None:
        response = self._session.post(
            self._url,
            json=event.to_dict(),
            headers={"Content-Type": "application/json"},
            timeout=self._timeout,
        )
        response.raise_for_status()
        logger.debug("[NOTIFY] Webhook delivered status=%s", response.status_code)


class AsyncNotifier:
    """Bounded queue + one worker thread."""

    def __init__(self, sinks: Sequence[NotificationSink], max_queue_size: int = DEFAULT_QUEUE_SIZE):
        self._sinks = list(sinks)
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None

        self._lock = threading.Lock()
        self._enqueued = 0
        self._dropped = 0
        self._delivered = 0
        self._sink_errors = 0
        self._suppressed_resolves = 0
        # Alert ids whose AlertOpened never made it into the queue.
        self._unannounced: set[int] = set()

    @property
    def sinks(self) -> list[NotificationSink]:
        return list(self._sinks)

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop_event.clear()
        self._worker = threading.Thread(target=self._worker_loop, daemon=True, name="alert-notifier")
        self._worker.start()
        logger.info(
            "[NOTIFY] Started sinks=%s queue_max=%d",
            [s.name for s in self._sinks], self._queue.maxsize,
        )

    def stop(self, drain: bool = True, timeout: float = 5.0) -> None:
        if drain and self._worker is not None:
            self.flush()
        self._stop_event.set()
        if self._worker is not None:
            self._worker.join(timeout=timeout)
            self._worker = None
        logger.info("[NOTIFY] Stopped. %s", self.metrics)

    def flush(self) -> None:
        """Block until every enqueued event went through the sinks."""
        self._queue.join()

    def notify(self, event: NotificationEvent) -> bool:
        """Enqueue ``event``; False if it was dropped.

        A resolve for an alert whose open event was dropped is dropped too,
        so sinks never see a resolution for an alert they were not told about.
        """
        if isinstance(event, AlertResolved) and self._forget_unannounced(event.alert.id):
            with self._lock:
                self._suppressed_resolves += 1
            logger.warning(
                "[NOTIFY] Dropped resolve of alert id=%s: its open event was dropped",
                event.alert.id,
            )
            return False

        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self._lock:
                self._dropped += 1
                if isinstance(event, AlertOpened) and event.alert.id is not None:
                    self._unannounced.add(event.alert.id)
            logger.warning("[NOTIFY] Queue full, dropped event=%s", type(event).__name__)
            return False
        with self._lock:
            self._enqueued += 1
        return True

    def _forget_unannounced(self, alert_id: Optional[int]) -> bool:
        with self._lock:
            if alert_id in self._unannounced:
                self._unannounced.discard(alert_id)
                return True
            return False

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                event = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self._deliver(event)
            finally:
                self._queue.task_done()

    def _deliver(self, event: NotificationEvent) -> None:
        for sink in self._sinks:
            try:
                sink.send(event)
            except Exception as e:
                with self._lock:
                    self._sink_errors += 1
                logger.error(
                    "[NOTIFY] Sink %s failed event=%s err=%s", sink.name, type(event).__name__, e,
                )
        with self._lock:
            self._delivered += 1

    @property
    def metrics(self) -> dict:
        with self._lock:
            return {
                "queue_depth": self._queue.qsize(),
                "queue_max": self._queue.maxsize,
                "enqueued": self._enqueued,
                "dropped": self._dropped,
                "delivered": self._delivered,
                "sink_errors": self._sink_errors,
                "suppressed_resolves": self._suppressed_resolves,
            }


def create_notifier(webhook_url: Optional[str], max_queue_size: int = DEFAULT_QUEUE_SIZE) -> AsyncNotifier:
    sinks: list[NotificationSink] = [LoggingSink()]
    if webhook_url:
        sinks.append(WebhookSink(webhook_url))
    else:
        logger.info("[NOTIFY] NOTIFY_WEBHOOK_URL not set, notifications are only logged")
    return AsyncNotifier(sinks, max_queue_size=max_queue_size)
