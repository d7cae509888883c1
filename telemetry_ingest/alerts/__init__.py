from .alert_rules import AlertDecision, NoChange, OpenAlert, ResolveAlerts, decide
from .evaluator import AlertEvaluator
from .notification_service import (
    AlertOpened,
    AlertResolved,
    AlertSummary,
    AsyncNotifier,
    LoggingSink,
    WebhookSink,
    create_notifier,
)
from .thresholds import AlertThresholds, DebounceMode

__all__ = [
    "AlertDecision",
    "AlertEvaluator",
    "AlertOpened",
    "AlertResolved",
    "AlertSummary",
    "AlertThresholds",
    "AsyncNotifier",
    "DebounceMode",
    "LoggingSink",
    "NoChange",
    "OpenAlert",
    "ResolveAlerts",
    "WebhookSink",
    "create_notifier",
    "decide",
]
