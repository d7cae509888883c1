"""Counters for the ingest path. Updated from worker threads, read by /mqtt/stats."""

from __future__ import annotations

import threading
import time

from ..domain.errors import DropReason


class IngestStats:

    def __init__(self):
        self._lock = threading.Lock()
        self.received = 0
        self.applied = 0
        self.usage_recorded = 0
        self.stale = 0
        self.dropped = {reason: 0 for reason in DropReason}
        self.last_message_at: float = 0

    def mark_received(self) -> int:
        with self._lock:
            self.received += 1
            self.last_message_at = time.time()
            return self.received

    def mark_applied(self) -> None:
        with self._lock:
            self.applied += 1

    def mark_usage(self) -> None:
        with self._lock:
            self.usage_recorded += 1

    def mark_stale(self) -> None:
        with self._lock:
            self.stale += 1

    def mark_dropped(self, reason: DropReason) -> None:
        with self._lock:
            self.dropped[reason] += 1

    def __str__(self) -> str:
        d = self.to_dict()
        return (
            f"Stats: received={d['received']} applied={d['applied']} usage={d['usage_recorded']} "
            f"stale={d['stale']} dropped={d['dropped_total']}"
        )

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "received": self.received,
                "applied": self.applied,
                "usage_recorded": self.usage_recorded,
                "stale": self.stale,
                "dropped": {reason.value: n for reason, n in self.dropped.items()},
                "dropped_total": sum(self.dropped.values()),
                "last_message_at": self.last_message_at,
            }
