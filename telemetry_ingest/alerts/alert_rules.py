"""Alert rules.

Pure functions: snapshot + thresholds in, one decision out. Only the rule
for the metric that was just updated runs; a water update never looks at
milk or temperature.

    waterLevel / milkLevel / beansLevel → LOW_* (WARNING), auto-resolves
    temperature                         → MALFUNCTION (WARNING or CRITICAL)
    status == ERROR                     → MALFUNCTION (CRITICAL)

MALFUNCTION never auto-resolves; an operator closes it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Union

from ..domain.models import AlertType, MachineStatus, MetricKind, Severity
from ..state.store import UpdatedSnapshot
from .thresholds import AlertThresholds


@dataclass(frozen=True)
class OpenAlert:
    alert_type: AlertType
    severity: Severity
    message: str
    threshold_value: float


@dataclass(frozen=True)
class ResolveAlerts:
    alert_type: AlertType


@dataclass(frozen=True)
class NoChange:
    pass


AlertDecision = Union[OpenAlert, ResolveAlerts, NoChange]

NO_CHANGE = NoChange()


@dataclass(frozen=True)
class _SupplyRule:
    alert_type: AlertType
    label: str
    threshold_attr: str


_SUPPLY_RULES: dict[MetricKind, _SupplyRule] = {
    MetricKind.WATER_LEVEL: _SupplyRule(AlertType.LOW_WATER, "Water", "low_water"),
    MetricKind.MILK_LEVEL: _SupplyRule(AlertType.LOW_MILK, "Milk", "low_milk"),
    MetricKind.BEANS_LEVEL: _SupplyRule(AlertType.LOW_BEANS, "Beans", "low_beans"),
}


def evaluate_supply_level(update: UpdatedSnapshot, thresholds: AlertThresholds) -> AlertDecision:
    rule = _SUPPLY_RULES[update.metric_kind]
    level = update.snapshot.value_of(update.metric_kind)
    if level is None:
        return NO_CHANGE

    threshold = getattr(thresholds, rule.threshold_attr)
    if level < threshold:
        return OpenAlert(
            alert_type=rule.alert_type,
            severity=Severity.WARNING,
            message=f"{rule.label} level is low: {level}% (threshold: {threshold}%)",
            threshold_value=float(threshold),
        )
    return ResolveAlerts(rule.alert_type)


def evaluate_temperature(update: UpdatedSnapshot, thresholds: AlertThresholds) -> AlertDecision:
    temperature = update.snapshot.temperature_c
    if temperature is None:
        return NO_CHANGE

    if temperature < thresholds.min_temperature:
        bound = thresholds.min_temperature
        message = f"Temperature too low: {temperature:.1f}°C (min: {bound:.1f}°C)"
    elif temperature > thresholds.max_temperature:
        bound = thresholds.max_temperature
        message = f"Temperature too high: {temperature:.1f}°C (max: {bound:.1f}°C)"
    else:
        # Back in band: the open MALFUNCTION stays until an operator resolves it.
        return NO_CHANGE

    deviation = abs(temperature - bound)
    severity = Severity.CRITICAL if deviation > thresholds.critical_margin else Severity.WARNING
    return OpenAlert(AlertType.MALFUNCTION, severity, message, float(bound))


def evaluate_status(update: UpdatedSnapshot, thresholds: AlertThresholds) -> AlertDecision:
    if update.snapshot.status is not MachineStatus.ERROR:
        return NO_CHANGE

    previous = update.previous_status.value if update.previous_status else "UNKNOWN"
    return OpenAlert(
        alert_type=AlertType.MALFUNCTION,
        severity=Severity.CRITICAL,
        message=f"Machine is in ERROR state (was: {previous})",
        threshold_value=0.0,
    )


RULES: dict[MetricKind, Callable[[UpdatedSnapshot, AlertThresholds], AlertDecision]] = {
    MetricKind.TEMPERATURE: evaluate_temperature,
    MetricKind.WATER_LEVEL: evaluate_supply_level,
    MetricKind.MILK_LEVEL: evaluate_supply_level,
    MetricKind.BEANS_LEVEL: evaluate_supply_level,
    MetricKind.STATUS: evaluate_status,
}

_missing = {k for k in MetricKind if k.is_state_metric} - RULES.keys()
if _missing:
    raise RuntimeError(f"no alert rule for metric kinds: {sorted(k.value for k in _missing)}")
del _missing


def decide(update: UpdatedSnapshot, thresholds: AlertThresholds) -> AlertDecision:
    return RULES[update.metric_kind](update, thresholds)
