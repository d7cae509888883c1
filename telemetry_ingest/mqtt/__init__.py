from .async_processor import KeyedAsyncProcessor
from .message_handler import IngestOutcome, OutcomeStatus, TelemetryHandler
from .receiver import TelemetryReceiver
from .receiver_stats import IngestStats
from .topics import RoutedTopic, route_topic, subscription_topics
from .validators import ParseResult, parse_payload

__all__ = [
    "IngestOutcome",
    "IngestStats",
    "KeyedAsyncProcessor",
    "OutcomeStatus",
    "ParseResult",
    "RoutedTopic",
    "TelemetryHandler",
    "TelemetryReceiver",
    "parse_payload",
    "route_topic",
    "subscription_topics",
]
