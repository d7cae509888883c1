"""Topic routing: ``coffeeMachine/{machineId}/{metric}`` → (machine_id, MetricKind)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..domain.models import MetricKind

logger = logging.getLogger(__name__)

DEFAULT_TOPIC_PREFIX = "coffeeMachine"

_METRIC_KINDS = {kind.value: kind for kind in MetricKind}


@dataclass(frozen=True)
class RoutedTopic:
    """Result of routing a topic string."""

    valid: bool
    machine_id: Optional[int] = None
    metric_kind: Optional[MetricKind] = None
    error: Optional[str] = None


def route_topic(topic: str, prefix: str = DEFAULT_TOPIC_PREFIX) -> RoutedTopic:
    """Decode a channel identifier.

    Returns a RoutedTopic with ``valid=False`` and an ``error`` for any
    malformed identifier: wrong segment count, wrong prefix, non-numeric
    or non-positive machine id, unknown metric kind.
    """
    if not topic:
        return RoutedTopic(valid=False, error="empty topic")

    parts = topic.split("/")
    if len(parts) != 3:
        return RoutedTopic(valid=False, error=f"expected 3 segments, got {len(parts)}")

    root, raw_id, raw_metric = parts
    if root != prefix:
        return RoutedTopic(valid=False, error=f"unexpected topic root {root!r}")

    # int() accepts "+5" and " 5"; machine ids are plain digits only.
    if not (raw_id.isascii() and raw_id.isdigit()):
        return RoutedTopic(valid=False, error=f"machineId must be numeric, got {raw_id!r}")
    machine_id = int(raw_id)
    if machine_id <= 0:
        return RoutedTopic(valid=False, error=f"machineId must be positive, got {machine_id}")

    metric_kind = _METRIC_KINDS.get(raw_metric)
    if metric_kind is None:
        return RoutedTopic(
            valid=False,
            machine_id=machine_id,
            error=f"unknown metric kind {raw_metric!r}",
        )

    return RoutedTopic(valid=True, machine_id=machine_id, metric_kind=metric_kind)


def subscription_topics(prefix: str = DEFAULT_TOPIC_PREFIX) -> list[str]:
    """One wildcard subscription per metric kind."""
    return [f"{prefix}/+/{kind.value}" for kind in MetricKind]


def shard_key(topic: str, prefix: str = DEFAULT_TOPIC_PREFIX) -> str:
    """Key used to pin messages of one machine to one worker."""
    routed = route_topic(topic, prefix)
    if routed.machine_id is not None:
        return str(routed.machine_id)
    return topic
