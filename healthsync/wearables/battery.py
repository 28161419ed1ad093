"""Battery-aware admission control for periodic sync passes.

A periodic tick only runs when the device has enough charge for the
configured optimization level, or is charging.  Manual ``sync_now`` calls
bypass this check entirely.

Minimum charge (strictly above) per level:

    NONE    always allowed
    LOW     15 %
    MEDIUM  25 %
    HIGH    40 %
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from healthsync.wearables.base import BatteryOptimizationLevel, Clock, utc_now

logger = logging.getLogger("healthsync.wearables.battery")

BATTERY_FLOORS: dict[BatteryOptimizationLevel, float] = {
    BatteryOptimizationLevel.LOW: 15.0,
    BatteryOptimizationLevel.MEDIUM: 25.0,
    BatteryOptimizationLevel.HIGH: 40.0,
}


@dataclass(frozen=True)
class BatteryState:
    level: float  # percent, 0-100
    is_charging: bool


class BatteryProvider(Protocol):
    """Source of battery readings."""

    def read(self) -> BatteryState: ...


class StaticBatteryProvider:
    """Reports a fixed, settable battery state."""

    def __init__(self, level: float = 100.0, is_charging: bool = False) -> None:
        self.level = level
        self.is_charging = is_charging

    def set(self, level: float, is_charging: bool = False) -> None:
        self.level = level
        self.is_charging = is_charging

    def read(self) -> BatteryState:
        return BatteryState(level=self.level, is_charging=self.is_charging)


class SimulatedBatteryProvider:
    """Battery that drains over time and occasionally plugs in or out.

    Each reading drains 0-3 % per elapsed hour while discharging (or gains
    the same while charging) and flips the charging flag with 10 %
    probability.

    Args:
        rng:   Random source; pass a seeded ``random.Random`` for determinism.
        clock: Time source used to measure elapsed hours.
        level: Starting charge.
    """

    DRAIN_PER_HOUR = 3.0
    FLIP_PROBABILITY = 0.1

    def __init__(
        self,
        rng: random.Random | None = None,
        clock: Clock = utc_now,
        level: float = 100.0,
    ) -> None:
        self._rng = rng or random.Random()
        self._clock = clock
        self._level = level
        self._is_charging = False
        self._last_read: datetime = clock()

    def read(self) -> BatteryState:
        now = self._clock()
        hours = max((now - self._last_read).total_seconds() / 3600, 0.0)
        self._last_read = now

        delta = self._rng.random() * self.DRAIN_PER_HOUR * hours
        if self._is_charging:
            self._level = min(100.0, self._level + delta)
        else:
            self._level = max(0.0, self._level - delta)

        if self._rng.random() < self.FLIP_PROBABILITY:
            self._is_charging = not self._is_charging

        return BatteryState(level=self._level, is_charging=self._is_charging)


class BatteryOptimizer:
    """Decide whether a periodic sync may run right now.

    Args:
        level:    Optimization level.
        provider: Battery source; defaults to a full, discharging battery.
    """

    def __init__(
        self,
        level: BatteryOptimizationLevel = BatteryOptimizationLevel.MEDIUM,
        provider: BatteryProvider | None = None,
    ) -> None:
        self._level = BatteryOptimizationLevel(level)
        self._provider = provider or StaticBatteryProvider()

    @property
    def optimization_level(self) -> BatteryOptimizationLevel:
        return self._level

    def can_sync(self) -> bool:
        if self._level is BatteryOptimizationLevel.NONE:
            return True
        state = self._provider.read()
        if state.is_charging:
            return True
        allowed = state.level > BATTERY_FLOORS[self._level]
        if not allowed:
            logger.debug(
                "Battery at %.1f%% is below the %s floor of %.0f%%",
                state.level,
                self._level.value,
                BATTERY_FLOORS[self._level],
            )
        return allowed

    def update_optimization_level(self, level: BatteryOptimizationLevel) -> None:
        self._level = BatteryOptimizationLevel(level)

    def get_battery_level(self) -> float:
        return self._provider.read().level

    def is_device_charging(self) -> bool:
        return self._provider.read().is_charging
