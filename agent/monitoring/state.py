"""
Log Shield Agent - Monitoring State

Last observed device values and counters. Owned by the scheduler, persisted
explicitly with load()/save() in the 'monitoring_data' namespace.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict

import structlog

from storage import PreferenceStore

logger = structlog.get_logger(__name__)

STATE_NAMESPACE = "monitoring_data"
SETTINGS_NAMESPACE = "monitoring_settings"
INTERVAL_KEY = "monitoring_interval"
DEFAULT_INTERVAL_MS = 30000


@dataclass
class MonitoringState:
    """Scalar state carried from one tick to the next."""
    last_battery_percent: int = -1
    last_battery_report_ms: int = 0
    last_network_type: str = ""
    last_network_connected: bool = False
    last_foreground_package: str = ""
    last_foreground_app: str = ""
    last_check_ms: int = 0
    events_processed: int = 0
    poll_interval_ms: int = DEFAULT_INTERVAL_MS
    last_events: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    async def load(cls, preferences: PreferenceStore) -> "MonitoringState":
        """Read persisted state; unreadable or mistyped values keep their defaults."""
        state = cls()
        try:
            stored = await preferences.get_namespace(STATE_NAMESPACE)
        except Exception as e:
            logger.exception("Failed to load monitoring state", error=str(e))
            return state

        for f in fields(cls):
            if f.name not in stored:
                continue
            value = stored[f.name]
            default = getattr(state, f.name)
            if isinstance(default, bool):
                ok = isinstance(value, bool)
            elif isinstance(default, int):
                ok = isinstance(value, int) and not isinstance(value, bool)
            else:
                ok = isinstance(value, type(default))
            if ok:
                setattr(state, f.name, value)
            else:
                logger.warning("Ignoring malformed monitoring state value", key=f.name)

        return state

    async def save(self, preferences: PreferenceStore) -> None:
        try:
            await preferences.put_many(STATE_NAMESPACE, self.to_dict())
        except Exception as e:
            logger.exception("Failed to save monitoring state", error=str(e))

    def update_from(self, other: "MonitoringState") -> None:
        """Copy every field of another state into this one, in place."""
        for f in fields(self):
            setattr(self, f.name, getattr(other, f.name))

    def reset(self) -> None:
        """Forget observed values and counters, keeping the poll interval."""
        self.update_from(MonitoringState(poll_interval_ms=self.poll_interval_ms))
