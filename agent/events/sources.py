"""
Log Shield Agent - Event Sources

OS hooks (package install/remove, screen and power broadcasts) live outside
the agent. They reach it through the EventSource capability and describe what
happened with the payload helpers below; format_message turns a stored
payload into the text that is forwarded.
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Union

from .models import Category

UNKNOWN = "Unknown"


class EventSource(ABC):
    """Anything that originates device events."""

    @abstractmethod
    async def on_event(self, category: Union[Category, str], payload: str) -> None:
        """Deliver one observed event."""
        pass


class AgentEventSource(EventSource):
    """Forwards events to a report callable (normally LogShieldAgent.report_event)."""

    def __init__(self, report: Callable[[Union[Category, str], str], Awaitable[None]]):
        self._report = report

    async def on_event(self, category: Union[Category, str], payload: str) -> None:
        await self._report(category, payload)


def app_payload(action: str, app_name: Optional[str], package_name: Optional[str]) -> str:
    """Payload for an app install/remove/update, e.g. 'INSTALLED|Foo|com.foo'."""
    return "|".join([action or UNKNOWN, app_name or UNKNOWN, package_name or UNKNOWN])


def screen_payload(action: str) -> str:
    return action or UNKNOWN


def power_payload(action: str, battery_level: Optional[int] = None) -> str:
    """Payload for a power event; a level of None or -1 means unknown."""
    level = -1 if battery_level is None else battery_level
    return f"{action or UNKNOWN}|{level}"


def format_message(category: Category, payload: str) -> str:
    """Human-readable message forwarded for a stored payload."""
    if category == Category.APP:
        parts = payload.split("|", 2)
        if len(parts) == 3:
            action, app_name, package_name = parts
            return f"Application {action}: {app_name} (Package: {package_name})"
        return f"Application event: {payload}"

    if category == Category.SCREEN:
        return f"Screen: {payload}"

    if category == Category.POWER:
        action, _, level = payload.partition("|")
        try:
            battery_level = int(level)
        except ValueError:
            battery_level = -1
        battery_text = f" (Battery: {battery_level}%)" if battery_level >= 0 else ""
        return f"Power: {action}{battery_text}"

    return payload
