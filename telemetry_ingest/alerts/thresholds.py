from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum


class DebounceMode(str, Enum):
    SUPPRESS = "suppress"
    REFRESH = "refresh"


@dataclass(frozen=True)
class AlertThresholds:
    """Alert thresholds; the same values apply to every machine unless overridden."""

    low_water: int = 20
    low_milk: int = 20
    low_beans: int = 20
    min_temperature: float = 85.0
    max_temperature: float = 100.0
    critical_margin: float = 10.0
    debounce_mode: DebounceMode = DebounceMode.SUPPRESS

    def __post_init__(self) -> None:
        if self.min_temperature > self.max_temperature:
            raise ValueError(
                f"min_temperature ({self.min_temperature}) > max_temperature ({self.max_temperature})"
            )
        if self.critical_margin < 0:
            raise ValueError("critical_margin must be >= 0")

    @classmethod
    def from_env(cls) -> "AlertThresholds":
        mode = os.getenv("ALERT_DEBOUNCE_MODE", DebounceMode.SUPPRESS.value).strip().lower()
        return cls(
            low_water=int(os.getenv("ALERT_LOW_WATER_THRESHOLD", "20")),
            low_milk=int(os.getenv("ALERT_LOW_MILK_THRESHOLD", "20")),
            low_beans=int(os.getenv("ALERT_LOW_BEANS_THRESHOLD", "20")),
            min_temperature=float(os.getenv("ALERT_MIN_TEMPERATURE", "85")),
            max_temperature=float(os.getenv("ALERT_MAX_TEMPERATURE", "100")),
            critical_margin=float(os.getenv("ALERT_CRITICAL_MARGIN", "10")),
            debounce_mode=DebounceMode(mode),
        )
