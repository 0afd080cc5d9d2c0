"""
Log Shield Agent - Monitoring Package

Periodic device checks that turn state changes into events.
"""

from .probes import BatteryReading, DeviceProbe, ForegroundApp, NetworkReading, PsutilDeviceProbe
from .scheduler import Scheduler
from .state import MonitoringState

__all__ = [
    "BatteryReading",
    "DeviceProbe",
    "ForegroundApp",
    "NetworkReading",
    "PsutilDeviceProbe",
    "Scheduler",
    "MonitoringState",
]
