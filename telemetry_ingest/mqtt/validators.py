"""Payload parsing and validation for coffee machine telemetry.

Every metric accepts two shapes:

    structured   {"temperature": 92.5}   {"level": 85}   {"status": "ON"}
                 {"brewType": "ESPRESSO", "volumeMl": 30, "tempAtBrew": 92.0}
    scalar       92.5   85   ON   ESPRESSO:30:92.0

Out-of-range values are rejected, never clamped, so a faulty sensor cannot
pass for a valid reading. Structured and scalar paths share the same
range checks (``check_temperature``, ``check_level`` ...).

``parse_payload`` never raises: failures come back as
``ParseResult(valid=False, error=...)``.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..domain.models import BrewType, MachineStatus, MetricKind, MetricValue, UsageReading


MIN_TEMPERATURE_C = 0.0
MAX_TEMPERATURE_C = 150.0
MIN_LEVEL_PCT = 0
MAX_LEVEL_PCT = 100

_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


# ---------------------------------------------------------------------------
# Shared range checks (structured and scalar paths)
# ---------------------------------------------------------------------------

def _to_number(raw: Any) -> float:
    # bool is an int subclass; "true" is not a reading.
    if isinstance(raw, bool):
        raise ValueError("boolean is not a number")
    if isinstance(raw, (int, float)):
        try:
            value = float(raw)
        except OverflowError:
            raise ValueError("number too large") from None
    elif isinstance(raw, str) and _NUMBER_RE.match(raw.strip()):
        value = float(raw.strip())
    else:
        raise ValueError(f"not a number: {raw!r}")
    if math.isnan(value):
        raise ValueError("value is NaN")
    if math.isinf(value):
        raise ValueError("value is infinite")
    return value


def check_temperature(raw: Any) -> float:
    value = _to_number(raw)
    if not (MIN_TEMPERATURE_C <= value <= MAX_TEMPERATURE_C):
        raise ValueError(
            f"temperature {value} out of range [{MIN_TEMPERATURE_C:g}, {MAX_TEMPERATURE_C:g}]"
        )
    return value


def check_level(raw: Any) -> int:
    value = _to_number(raw)
    if not value.is_integer():
        raise ValueError(f"level must be integral, got {value}")
    if not (MIN_LEVEL_PCT <= value <= MAX_LEVEL_PCT):
        raise ValueError(f"level {value:g} out of range [{MIN_LEVEL_PCT}, {MAX_LEVEL_PCT}]")
    return int(value)


def check_volume(raw: Any) -> int:
    value = _to_number(raw)
    if not value.is_integer() or value <= 0:
        raise ValueError(f"volumeMl must be a positive integer, got {raw!r}")
    return int(value)


def check_status(raw: Any) -> MachineStatus:
    if not isinstance(raw, str):
        raise ValueError(f"status must be a string, got {raw!r}")
    try:
        return MachineStatus(raw.strip().upper())
    except ValueError:
        raise ValueError(f"unknown machine status {raw!r}") from None


def check_brew_type(raw: Any) -> BrewType:
    if not isinstance(raw, str):
        raise ValueError(f"brewType must be a string, got {raw!r}")
    try:
        return BrewType(raw.strip().upper())
    except ValueError:
        raise ValueError(f"unknown brew type {raw!r}") from None


def _as_utc(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Structured payload schemas
# ---------------------------------------------------------------------------

class _TelemetryPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    timestamp: Optional[datetime] = None

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, v):
        return _as_utc(v)


class TemperaturePayload(_TelemetryPayload):
    temperature: float

    @field_validator("temperature", mode="before")
    @classmethod
    def _temperature(cls, v):
        return check_temperature(v)


class LevelPayload(_TelemetryPayload):
    level: int

    @field_validator("level", mode="before")
    @classmethod
    def _level(cls, v):
        return check_level(v)


class StatusPayload(_TelemetryPayload):
    status: MachineStatus

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v):
        return check_status(v)


class UsagePayload(_TelemetryPayload):
    brew_type: BrewType = Field(validation_alias=AliasChoices("brewType", "brew_type"))
    # "volume"/"temperature" are the keys older firmware sends.
    volume_ml: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("volumeMl", "volume_ml", "volume")
    )
    temp_at_brew_c: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("tempAtBrew", "temp_at_brew", "temperature")
    )

    @field_validator("brew_type", mode="before")
    @classmethod
    def _brew_type(cls, v):
        return check_brew_type(v)

    @field_validator("volume_ml", mode="before")
    @classmethod
    def _volume(cls, v):
        return None if v is None else check_volume(v)

    @field_validator("temp_at_brew_c", mode="before")
    @classmethod
    def _temp_at_brew(cls, v):
        return None if v is None else check_temperature(v)

    def to_reading(self) -> UsageReading:
        return UsageReading(
            brew_type=self.brew_type,
            volume_ml=self.volume_ml,
            temp_at_brew_c=self.temp_at_brew_c,
        )


# Key that must be present for the structured path, per metric kind.
_STRUCTURED: dict[MetricKind, tuple[str, type[_TelemetryPayload]]] = {
    MetricKind.TEMPERATURE: ("temperature", TemperaturePayload),
    MetricKind.WATER_LEVEL: ("level", LevelPayload),
    MetricKind.MILK_LEVEL: ("level", LevelPayload),
    MetricKind.BEANS_LEVEL: ("level", LevelPayload),
    MetricKind.STATUS: ("status", StatusPayload),
    MetricKind.USAGE: ("brewType", UsagePayload),
}


# ---------------------------------------------------------------------------
# Scalar payloads
# ---------------------------------------------------------------------------

def _parse_usage_scalar(text: str) -> UsageReading:
    parts = [p.strip() for p in text.split(":")]
    if len(parts) > 3:
        raise ValueError(f"expected brewType[:volumeMl[:temperature]], got {text!r}")
    brew_type = check_brew_type(parts[0])
    volume = check_volume(parts[1]) if len(parts) > 1 and parts[1] else None
    temp = check_temperature(parts[2]) if len(parts) > 2 and parts[2] else None
    return UsageReading(brew_type=brew_type, volume_ml=volume, temp_at_brew_c=temp)


_SCALAR: dict[MetricKind, Callable[[str], MetricValue]] = {
    MetricKind.TEMPERATURE: check_temperature,
    MetricKind.WATER_LEVEL: check_level,
    MetricKind.MILK_LEVEL: check_level,
    MetricKind.BEANS_LEVEL: check_level,
    MetricKind.STATUS: check_status,
    MetricKind.USAGE: _parse_usage_scalar,
}

for _table in (_STRUCTURED, _SCALAR):
    _missing = set(MetricKind) - set(_table)
    if _missing:
        raise RuntimeError(f"payload parser has no handler for {sorted(k.value for k in _missing)}")
del _table, _missing


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParseResult:
    """Typed value, or the reason the payload was rejected."""

    valid: bool
    value: Optional[MetricValue] = None
    source_ts: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, value: MetricValue, source_ts: Optional[datetime] = None) -> "ParseResult":
        return cls(valid=True, value=value, source_ts=source_ts)

    @classmethod
    def unparseable(cls, error: str) -> "ParseResult":
        return cls(valid=False, error=error)


def parse_payload(metric_kind: MetricKind, raw: Union[bytes, str]) -> ParseResult:
    """Decode and validate a telemetry payload for ``metric_kind``."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            text = bytes(raw).decode("utf-8")
        except UnicodeDecodeError:
            return ParseResult.unparseable("payload is not valid UTF-8")
    else:
        text = raw
    text = text.strip()

    if not text:
        return ParseResult.unparseable("empty payload")

    if text.startswith("{"):
        return _parse_structured(metric_kind, text)

    # A JSON string literal ("ON", "92.5") carries the same scalar.
    if len(text) >= 2 and text[0] == text[-1] == '"':
        text = text[1:-1].strip()

    try:
        return ParseResult.ok(_SCALAR[metric_kind](text))
    except ValueError as e:
        return ParseResult.unparseable(str(e))


def _parse_structured(metric_kind: MetricKind, text: str) -> ParseResult:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        return ParseResult.unparseable(f"invalid JSON: {e.msg}")
    except ValueError as e:
        # int() digit limit on oversized integer literals
        return ParseResult.unparseable(f"invalid JSON: {e}")

    if not isinstance(data, dict):
        return ParseResult.unparseable("JSON payload must be an object")

    key, schema = _STRUCTURED[metric_kind]
    if key not in data and not (metric_kind is MetricKind.USAGE and "brew_type" in data):
        return ParseResult.unparseable(f"missing key {key!r} for {metric_kind.value}")

    try:
        payload = schema.model_validate(data)
    except ValidationError as e:
        return ParseResult.unparseable(_first_error(e))

    if isinstance(payload, TemperaturePayload):
        value: MetricValue = payload.temperature
    elif isinstance(payload, LevelPayload):
        value = payload.level
    elif isinstance(payload, StatusPayload):
        value = payload.status
    else:
        value = payload.to_reading()

    return ParseResult.ok(value, source_ts=payload.timestamp)


def _first_error(error: ValidationError) -> str:
    errors = error.errors()
    if not errors:
        return str(error)
    first = errors[0]
    loc = ".".join(str(p) for p in first.get("loc", ()))
    msg = first.get("msg", "invalid value")
    return f"{loc}: {msg}" if loc else msg
