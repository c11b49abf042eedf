"""
Connectivity monitor.

Tracks the device's network quality and battery level as reported by the
host platform, plus an explicit user "go offline" switch. Offline and a
critical battery are normal preconditions for the sync engine, never errors.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Optional, Union

logger = logging.getLogger(__name__)


class NetworkQuality(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


BATCH_SIZE_BY_QUALITY = {
    NetworkQuality.HIGH: 100,
    NetworkQuality.MEDIUM: 50,
    NetworkQuality.LOW: 20,
    NetworkQuality.NONE: 0,
}


class BatteryLevel(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"
    CRITICAL = "critical"


class SyncStrategy(str, Enum):
    AGGRESSIVE = "aggressive"
    MODERATE = "moderate"
    CONSERVATIVE = "conservative"
    MINIMAL = "minimal"
    DISABLED = "disabled"


# Low battery falls back to the low-quality batch size; critical stops sync
BATCH_SIZE_CAP_BY_BATTERY = {
    BatteryLevel.HIGH: BATCH_SIZE_BY_QUALITY[NetworkQuality.HIGH],
    BatteryLevel.NORMAL: BATCH_SIZE_BY_QUALITY[NetworkQuality.HIGH],
    BatteryLevel.LOW: BATCH_SIZE_BY_QUALITY[NetworkQuality.LOW],
    BatteryLevel.CRITICAL: 0,
}


def battery_level_for(percent: int) -> BatteryLevel:
    if percent >= 80:
        return BatteryLevel.HIGH
    if percent >= 50:
        return BatteryLevel.NORMAL
    if percent >= 20:
        return BatteryLevel.LOW
    return BatteryLevel.CRITICAL


def batch_size_for(quality: NetworkQuality, max_batch_size: int) -> int:
    """Batch size adapted to network quality, never above the configured maximum"""
    return min(BATCH_SIZE_BY_QUALITY[NetworkQuality(quality)], max_batch_size)
class ConnectivityMonitor:
    """Holds the current connectivity and power state and signals reconnects."""

    def __init__(
        self,
        quality: NetworkQuality = NetworkQuality.NONE,
        connection_type: str = "unknown",
        battery_level: BatteryLevel = BatteryLevel.NORMAL,
        is_metered: bool = False
    ):
        self._quality = NetworkQuality(quality)
        self.connection_type = connection_type
        self._battery_level = BatteryLevel(battery_level)
        self.is_metered = is_metered
        self._user_offline = False
        self._regained = asyncio.Event()
        self.last_change_at: Optional[datetime] = None

    @property
    def quality(self) -> NetworkQuality:
        return self._quality

    @property
    def battery_level(self) -> BatteryLevel:
        return self._battery_level

    @property
    def user_offline(self) -> bool:
        return self._user_offline

    @property
    def is_online(self) -> bool:
        return self._quality != NetworkQuality.NONE and not self._user_offline

    @property
    def battery_critical(self) -> bool:
        return self._battery_level == BatteryLevel.CRITICAL

    @property
    def strategy(self) -> SyncStrategy:
        """Sync strategy for the current network and battery conditions"""
        if not self.is_online or self.battery_critical:
            return SyncStrategy.DISABLED
        if self._battery_level == BatteryLevel.LOW and self.is_metered:
            return SyncStrategy.MINIMAL
        if (
            self._quality == NetworkQuality.HIGH
            and self.connection_type == "wifi"
            and self._battery_level in (BatteryLevel.HIGH, BatteryLevel.NORMAL)
        ):
            return SyncStrategy.AGGRESSIVE
        if self._quality in (NetworkQuality.HIGH, NetworkQuality.MEDIUM) and not self.is_metered:
            return SyncStrategy.MODERATE
        return SyncStrategy.CONSERVATIVE

    def update(
        self,
        quality: NetworkQuality,
        connection_type: Optional[str] = None,
        is_metered: Optional[bool] = None
    ):
        """Report a network change from the host platform."""
        was_online = self.is_online
        self._quality = NetworkQuality(quality)
        if connection_type is not None:
            self.connection_type = connection_type
        if is_metered is not None:
            self.is_metered = is_metered
        self._after_change(was_online)

    def update_battery(self, level: Union[BatteryLevel, int]):
        """Report the battery level, either as a level or a charge percentage."""
        was_critical = self.battery_critical
        if isinstance(level, int):
            level = battery_level_for(level)
        self._battery_level = BatteryLevel(level)

        if was_critical and not self.battery_critical:
            logger.info(f"Battery recovered ({self._battery_level.value})")
            if self.is_online:
                self._regained.set()
        elif self.battery_critical and not was_critical:
            logger.info("Battery critical; sync deferred")

    def go_offline(self):
        """Explicit user request to stop network activity."""
        was_online = self.is_online
        self._user_offline = True
        self._after_change(was_online)

    def go_online(self):
        was_online = self.is_online
        self._user_offline = False
        self._after_change(was_online)

    async def wait_for_reconnect(self, timeout: Optional[float] = None) -> bool:
        """Wait until connectivity is regained. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._regained.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        self._regained.clear()
        return True

    def batch_size(self, max_batch_size: int) -> int:
        if not self.is_online:
            return 0
        return min(
            batch_size_for(self._quality, max_batch_size),
            BATCH_SIZE_CAP_BY_BATTERY[self._battery_level]
        )

    def _after_change(self, was_online: bool):
        self.last_change_at = datetime.utcnow()
        if self.is_online and not was_online:
            logger.info(f"Connectivity regained ({self._quality.value}, {self.connection_type})")
            if not self.battery_critical:
                self._regained.set()
        elif was_online and not self.is_online:
            logger.info("Device offline; sync deferred")
            self._regained.clear()
