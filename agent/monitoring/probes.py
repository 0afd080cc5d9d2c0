"""
Log Shield Agent - Device Probes

Probes read the current device state the scheduler compares against the
last reported values. PsutilDeviceProbe covers hosts where psutil can see
the battery, the interfaces and the process table.
"""

import asyncio
import os
import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Tuple

import psutil
import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BatteryReading:
    percent: int
    charging: bool


@dataclass(frozen=True)
class NetworkReading:
    network_type: str
    connected: bool


@dataclass(frozen=True)
class ForegroundApp:
    package: str
    app_name: str


# Interface name prefix -> reported network type
INTERFACE_TYPES: List[Tuple[str, str]] = [
    ("wlan", "WiFi"),
    ("wlp", "WiFi"),
    ("wifi", "WiFi"),
    ("rmnet", "Mobile Data"),
    ("ccmni", "Mobile Data"),
    ("wwan", "Mobile Data"),
    ("eth", "Ethernet"),
    ("enp", "Ethernet"),
    ("eno", "Ethernet"),
    ("tun", "VPN"),
    ("tap", "VPN"),
    ("wg", "VPN"),
    ("ppp", "VPN"),
]


def classify_interface(name: str) -> str:
    lowered = name.lower()
    for prefix, network_type in INTERFACE_TYPES:
        if lowered.startswith(prefix):
            return network_type
    return "Unknown"


class DeviceProbe(ABC):
    """Reads device state. Implementations may raise; the scheduler isolates failures."""

    @abstractmethod
    async def read_battery(self) -> Optional[BatteryReading]:
        """Current battery level, or None when the device has no battery."""
        pass

    @abstractmethod
    async def read_network(self) -> NetworkReading:
        """Active network type and connectivity."""
        pass

    @abstractmethod
    async def read_foreground_app(self) -> Optional[ForegroundApp]:
        """Application currently in the foreground, if it can be determined."""
        pass


class PsutilDeviceProbe(DeviceProbe):
    """Device probe backed by psutil."""

    async def read_battery(self) -> Optional[BatteryReading]:
        battery = await asyncio.to_thread(psutil.sensors_battery)
        if battery is None or battery.percent is None:
            return None
        return BatteryReading(
            percent=int(round(battery.percent)),
            charging=bool(battery.power_plugged)
        )

    async def read_network(self) -> NetworkReading:
        return await asyncio.to_thread(self._read_network_blocking)

    def _read_network_blocking(self) -> NetworkReading:
        stats = psutil.net_if_stats()
        addrs = psutil.net_if_addrs()

        active = []
        for iface, iface_stats in stats.items():
            if iface == "lo" or not iface_stats.isup:
                continue
            has_ipv4 = any(a.family == socket.AF_INET for a in addrs.get(iface, []))
            if has_ipv4:
                active.append(iface)

        if not active:
            return NetworkReading(network_type="Unknown", connected=False)

        # Prefer a recognised interface type over an unknown one
        active.sort(key=lambda name: (classify_interface(name) == "Unknown", name))
        return NetworkReading(network_type=classify_interface(active[0]), connected=True)

    async def read_foreground_app(self) -> Optional[ForegroundApp]:
        return await asyncio.to_thread(self._read_foreground_blocking)

    def _read_foreground_blocking(self) -> Optional[ForegroundApp]:
        """Most recently started process of the current user, as the best available signal."""
        own_pid = os.getpid()
        try:
            user = psutil.Process(own_pid).username()
        except (psutil.Error, OSError):
            user = None

        latest = None
        for proc in psutil.process_iter(["pid", "name", "username", "create_time", "exe"]):
            info = proc.info
            if info["pid"] == own_pid or not info.get("name"):
                continue
            if user and info.get("username") != user:
                continue
            if latest is None or (info.get("create_time") or 0) > (latest.get("create_time") or 0):
                latest = info

        if latest is None:
            return None

        package = latest.get("exe") or latest["name"]
        return ForegroundApp(package=package, app_name=latest["name"])
