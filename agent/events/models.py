"""
Log Shield Agent - Event Models

Data types shared by the event store, the retry queue and the scheduler.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Category(str, Enum):
    """Event category. Categories partition local storage."""
    APP = "app"
    SCREEN = "screen"
    POWER = "power"
    NETWORK = "network"
    BATTERY = "battery"
    FOREGROUND = "foreground"
    SERVICE = "service"

    @property
    def event_type(self) -> str:
        """Tag used in the forwarded record."""
        return _EVENT_TYPES[self]


_EVENT_TYPES = {
    Category.APP: "APP_EVENT",
    Category.SCREEN: "SCREEN_EVENT",
    Category.POWER: "POWER_EVENT",
    Category.NETWORK: "NETWORK_EVENT",
    Category.BATTERY: "BATTERY_EVENT",
    Category.FOREGROUND: "FOREGROUND_APP",
    Category.SERVICE: "SERVICE_EVENT",
}

# Retention caps per category
DEFAULT_RETENTION = {
    Category.APP: 100,
    Category.SCREEN: 50,
    Category.POWER: 50,
    Category.NETWORK: 100,
    Category.BATTERY: 100,
    Category.FOREGROUND: 100,
    Category.SERVICE: 100,
}


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Event:
    """A single captured observation."""
    timestamp: int
    category: Category
    payload: str

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "category": self.category.value,
            "payload": self.payload,
        }


@dataclass(frozen=True)
class PendingLogEntry:
    """A record that failed transport and waits for replay."""
    timestamp: int
    event_type: str
    message: str
    entry_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.entry_id,
            "timestamp": self.timestamp,
            "event_type": self.event_type,
            "message": self.message,
        }
