"""Prometheus metrics for the ingest pipeline, exposed on ``GET /metrics``."""

from prometheus_client import Counter, Gauge, Histogram

MESSAGES_PROCESSED = Counter(
    "coffee_ingest_messages_total",
    "Telemetry messages by outcome",
    ["outcome"],  # applied, recorded, stale, dropped
)
MESSAGES_DROPPED = Counter(
    "coffee_ingest_messages_dropped_total",
    "Dropped telemetry messages by reason",
    ["reason"],
)
PROCESSING_LATENCY = Histogram(
    "coffee_ingest_processing_seconds",
    "Time to handle one telemetry message",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)
ALERT_EVENTS = Counter(
    "coffee_ingest_alert_events_total",
    "Alert lifecycle events",
    ["event", "type"],  # opened, refreshed, resolved
)
RECEIVER_CONNECTED = Gauge(
    "coffee_ingest_receiver_connected",
    "MQTT receiver connection status",
)
