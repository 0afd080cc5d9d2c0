"""
Log Shield Agent - Event Store

Bounded, durable record sets, one per event category. Local storage is
best-effort: failures are logged and the operation becomes a no-op.
"""

import asyncio
from contextlib import AsyncExitStack
from typing import Callable, Dict, List, Optional

import structlog

from storage import AgentDatabase

from .models import Category, DEFAULT_RETENTION, Event, now_ms

logger = structlog.get_logger(__name__)


class EventStore:
    """Per-category event sets capped at a retention limit."""

    def __init__(
        self,
        database: AgentDatabase,
        retention: Optional[Dict[Category, int]] = None,
        default_cap: int = 100,
        clock: Callable[[], int] = now_ms
    ):
        self._database = database
        self._retention = dict(DEFAULT_RETENTION)
        if retention:
            self._retention.update(retention)
        self._default_cap = default_cap
        self._clock = clock
        self._locks: Dict[Category, asyncio.Lock] = {c: asyncio.Lock() for c in Category}

    def cap_for(self, category: Category) -> int:
        """Maximum number of events retained for a category."""
        return max(1, int(self._retention.get(category, self._default_cap)))

    async def append(self, category: Category, payload: str, timestamp: Optional[int] = None) -> None:
        """Store an event, evicting the oldest ones beyond the cap."""
        ts = timestamp if timestamp is not None else self._clock()
        cap = self.cap_for(category)

        try:
            async with self._locks[category]:
                async with self._database.connect() as db:
                    await db.execute(
                        "INSERT INTO events (category, ts, payload) VALUES (?, ?, ?)",
                        (category.value, ts, payload)
                    )
                    # Oldest by timestamp go first, whatever order they were written in
                    cursor = await db.execute(
                        """
                        DELETE FROM events WHERE id IN (
                            SELECT id FROM events WHERE category = ?
                            ORDER BY ts DESC, id DESC
                            LIMIT -1 OFFSET ?
                        )
                        """,
                        (category.value, cap)
                    )
                    evicted = cursor.rowcount
                    await db.commit()

            logger.debug("Event stored", category=category.value, evicted=max(evicted, 0))
        except Exception as e:
            logger.exception("Failed to store event", category=category.value, error=str(e))

    async def snapshot(self, category: Category) -> List[Event]:
        """Copy of the category's events ordered by timestamp."""
        try:
            async with self._database.connect() as db:
                cursor = await db.execute(
                    "SELECT ts, payload FROM events WHERE category = ? ORDER BY ts, id",
                    (category.value,)
                )
                rows = await cursor.fetchall()
        except Exception as e:
            logger.exception("Failed to read events", category=category.value, error=str(e))
            return []

        return [Event(timestamp=ts, category=category, payload=payload) for ts, payload in rows]

    async def count(self, category: Category) -> int:
        try:
            async with self._database.connect() as db:
                cursor = await db.execute(
                    "SELECT COUNT(*) FROM events WHERE category = ?",
                    (category.value,)
                )
                row = await cursor.fetchone()
        except Exception as e:
            logger.exception("Failed to count events", category=category.value, error=str(e))
            return 0

        return row[0] if row else 0

    async def counts(self) -> Dict[str, int]:
        """Event count for every category, zero for empty ones."""
        counts = {c.value: 0 for c in Category}
        try:
            async with self._database.connect() as db:
                cursor = await db.execute(
                    "SELECT category, COUNT(*) FROM events GROUP BY category"
                )
                rows = await cursor.fetchall()
        except Exception as e:
            logger.exception("Failed to count events", error=str(e))
            return counts

        for category, count in rows:
            counts[category] = count
        return counts

    async def clear_all(self) -> None:
        """Drop every stored event."""
        try:
            async with AsyncExitStack() as stack:
                for lock in self._locks.values():
                    await stack.enter_async_context(lock)
                async with self._database.connect() as db:
                    await db.execute("DELETE FROM events")
                    await db.commit()

            logger.info("Event store cleared")
        except Exception as e:
            logger.exception("Failed to clear events", error=str(e))
