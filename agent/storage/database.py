"""
Log Shield Agent - Local Database

A single SQLite file backs everything the agent keeps across restarts:
per-category event sets, the pending-retry set and namespaced preference
slots (the key/value layout the host platform uses for its own settings).
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Optional

import aiosqlite
import structlog

logger = structlog.get_logger(__name__)


class AgentDatabase:
    """SQLite database holding the agent's durable state."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def connect(self) -> aiosqlite.Connection:
        """Open a new connection. Use as an async context manager."""
        return aiosqlite.connect(self.db_path)

    async def init(self) -> None:
        """Create the schema if it does not exist yet."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with self.connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")

            await db.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    category TEXT NOT NULL,
                    ts INTEGER NOT NULL,
                    payload TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_events_category_ts
                ON events(category, ts)
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS pending_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ts INTEGER NOT NULL,
                    event_type TEXT NOT NULL,
                    message TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS preferences (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT,
                    PRIMARY KEY (namespace, key)
                )
            """)

            await db.commit()

        self._initialized = True
        logger.info("Agent database initialized", path=self.db_path)


class PreferenceStore:
    """
    Namespaced key/value slots.

    Values are stored JSON-encoded so ints, bools and strings round-trip
    with their types. A value that cannot be decoded reads back as the
    caller's default.
    """

    def __init__(self, database: AgentDatabase):
        self._database = database
        self._lock = asyncio.Lock()

    async def get(self, namespace: str, key: str, default: Any = None) -> Any:
        async with self._database.connect() as db:
            cursor = await db.execute(
                "SELECT value FROM preferences WHERE namespace = ? AND key = ?",
                (namespace, key)
            )
            row = await cursor.fetchone()

        if row is None or row[0] is None:
            return default
        return self._decode(namespace, key, row[0], default)

    async def get_namespace(self, namespace: str) -> Dict[str, Any]:
        async with self._database.connect() as db:
            cursor = await db.execute(
                "SELECT key, value FROM preferences WHERE namespace = ?",
                (namespace,)
            )
            rows = await cursor.fetchall()

        return {
            key: self._decode(namespace, key, value, None)
            for key, value in rows
            if value is not None
        }

    async def put(self, namespace: str, key: str, value: Any) -> None:
        await self.put_many(namespace, {key: value})

    async def put_many(self, namespace: str, values: Dict[str, Any]) -> None:
        """Write several keys of one namespace in a single transaction."""
        rows = [(namespace, key, json.dumps(value)) for key, value in values.items()]
        async with self._lock:
            async with self._database.connect() as db:
                await db.executemany(
                    """
                    INSERT INTO preferences (namespace, key, value) VALUES (?, ?, ?)
                    ON CONFLICT(namespace, key) DO UPDATE SET value = excluded.value
                    """,
                    rows
                )
                await db.commit()

    async def remove(self, namespace: str, key: str) -> None:
        async with self._lock:
            async with self._database.connect() as db:
                await db.execute(
                    "DELETE FROM preferences WHERE namespace = ? AND key = ?",
                    (namespace, key)
                )
                await db.commit()

    async def clear_namespace(self, namespace: str) -> None:
        async with self._lock:
            async with self._database.connect() as db:
                await db.execute("DELETE FROM preferences WHERE namespace = ?", (namespace,))
                await db.commit()

    def _decode(self, namespace: str, key: str, raw: str, default: Any) -> Any:
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Undecodable preference value", namespace=namespace, key=key)
            return default
