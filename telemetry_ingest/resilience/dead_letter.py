"""Dead Letter Queue for dropped telemetry.

Every dropped message (malformed topic, unparseable payload, unknown
machine, downstream unavailable) ends up here with its drop reason. With a
Redis client the entry is appended to the ``dlq:telemetry`` stream, capped
with ``XADD MAXLEN ~``; without one the DLQ only logs. A DLQ failure is
logged and counted, never raised into the worker.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)

_PAYLOAD_MAX_CHARS = 5000
_ERROR_MAX_CHARS = 1000


@dataclass(frozen=True)
class DeadLetter:
    payload: str
    error: str
    error_type: str
    source: str
    topic: Optional[str] = None
    machine_id: Optional[int] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_fields(self) -> dict[str, str]:
        """Flat string fields for a Redis stream entry; unknown parts are omitted."""
        fields = {
            "payload": self.payload[:_PAYLOAD_MAX_CHARS],
            "error": self.error[:_ERROR_MAX_CHARS],
            "error_type": self.error_type,
            "source": self.source,
            "created_at": self.created_at.isoformat(),
        }
        if self.topic is not None:
            fields["topic"] = self.topic
        if self.machine_id is not None:
            fields["machine_id"] = str(self.machine_id)
        return fields


class DeadLetterQueue:

    STREAM_NAME = "dlq:telemetry"
    DEFAULT_MAX_LEN = 10000

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        stream_name: str = STREAM_NAME,
        max_len: int = DEFAULT_MAX_LEN,
    ):
        self._redis = redis_client
        self._stream = stream_name
        self._max_len = max_len

        self._lock = threading.Lock()
        self._sent = 0
        self._send_errors = 0
        self._by_type: Counter[str] = Counter()

    @property
    def enabled(self) -> bool:
        return self._redis is not None

    @property
    def stats(self) -> dict:
        with self._lock:
            return {
                "enabled": self.enabled,
                "stream_name": self._stream,
                "total_sent": self._sent,
                "send_errors": self._send_errors,
                "by_error_type": dict(self._by_type),
            }

    def send(
        self,
        payload: Any,
        error: str,
        error_type: str,
        source: str,
        topic: Optional[str] = None,
        machine_id: Optional[int] = None,
    ) -> bool:
        """Record a dropped message. True only if the entry reached Redis.

        ``error_type`` is a DropReason value; ``source`` is where the message
        came from ("mqtt", "http").
        """
        letter = DeadLetter(
            payload=_payload_text(payload),
            error=str(error),
            error_type=error_type,
            source=source,
            topic=topic,
            machine_id=machine_id,
        )
        with self._lock:
            self._by_type[error_type] += 1

        if not self.enabled:
            logger.debug(
                "[DLQ] disabled error_type=%s topic=%s payload=%s",
                error_type, topic, letter.payload[:200],
            )
            return False

        try:
            self._redis.xadd(self._stream, letter.to_fields(), maxlen=self._max_len, approximate=True)
        except Exception as e:
            with self._lock:
                self._send_errors += 1
            logger.error("[DLQ] send failed err=%s topic=%s", e, topic)
            return False

        with self._lock:
            self._sent += 1
        logger.debug("[DLQ] sent error_type=%s topic=%s", error_type, topic)
        return True

    def get_recent(self, count: int = 10) -> list[dict]:
        """Most recent entries first."""
        if not self.enabled:
            return []

        try:
            entries = self._redis.xrevrange(self._stream, count=count)
        except Exception as e:
            logger.error("[DLQ] read failed err=%s", e)
            return []

        return [
            {"id": _text(entry_id), **{_text(k): _text(v) for k, v in data.items()}}
            for entry_id, data in entries
        ]


def create_dead_letter_queue(redis_url: Optional[str]) -> DeadLetterQueue:
    """Build the DLQ. Without REDIS_URL, or if Redis is unreachable, it only logs."""
    if not redis_url:
        logger.info("[DLQ] REDIS_URL not set, dropped messages are only logged")
        return DeadLetterQueue()

    client = redis.Redis.from_url(
        redis_url,
        decode_responses=False,
        socket_timeout=5.0,
        socket_connect_timeout=5.0,
    )
    try:
        client.ping()
    except Exception as e:
        logger.warning("[DLQ] Redis unreachable, logging only: %s", e)
        return DeadLetterQueue()

    logger.info("[DLQ] Connected: %s", redis_url.split("@")[-1])
    return DeadLetterQueue(redis_client=client)


def _payload_text(payload: Any) -> str:
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload).decode("utf-8", errors="replace")
    if isinstance(payload, dict):
        return json.dumps(payload, default=str)
    return str(payload)


def _text(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else value
