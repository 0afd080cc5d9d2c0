"""
Log Shield Agent - Events Package

Captured device events and their bounded local storage.
"""

from .models import Category, Event, PendingLogEntry
from .store import EventStore
from .sources import AgentEventSource, EventSource, format_message

__all__ = [
    "Category",
    "Event",
    "PendingLogEntry",
    "EventStore",
    "EventSource",
    "AgentEventSource",
    "format_message",
]
