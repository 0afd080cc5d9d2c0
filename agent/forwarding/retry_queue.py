"""
Log Shield Agent - Retry Queue

Records that failed transport wait here and are replayed on later ticks.
Replays carry the time of the replay, not of the original failure: the
collector is told that something happened, not exactly when.
"""

import asyncio
from typing import Callable, List, Optional, Tuple

import structlog

from events.models import PendingLogEntry, now_ms
from storage import AgentDatabase

from .config_resolver import ServerDestination
from .syslog import SyslogEncoder
from .transport import UdpTransport

logger = structlog.get_logger(__name__)


class RetryQueue:
    """Durable, bounded set of pending records."""

    def __init__(
        self,
        database: AgentDatabase,
        encoder: SyslogEncoder,
        transport: UdpTransport,
        max_entries: int = 100,
        send_delay: float = 0.1,
        clock: Callable[[], int] = now_ms
    ):
        self._database = database
        self._encoder = encoder
        self._transport = transport
        self.max_entries = max(1, max_entries)
        self.send_delay = send_delay
        self._clock = clock
        self._lock = asyncio.Lock()

    async def enqueue(self, event_type: str, message: str, timestamp: Optional[int] = None) -> None:
        """Add a failed record. Identical records are kept as separate entries."""
        ts = timestamp if timestamp is not None else self._clock()
        try:
            async with self._lock:
                async with self._database.connect() as db:
                    await db.execute(
                        "INSERT INTO pending_logs (ts, event_type, message) VALUES (?, ?, ?)",
                        (ts, event_type, message)
                    )
                    await db.execute(
                        """
                        DELETE FROM pending_logs WHERE id IN (
                            SELECT id FROM pending_logs
                            ORDER BY ts DESC, id DESC
                            LIMIT -1 OFFSET ?
                        )
                        """,
                        (self.max_entries,)
                    )
                    await db.commit()

            logger.debug("Stored for retry", event_type=event_type)
        except Exception as e:
            logger.exception("Failed to store record for retry", event_type=event_type, error=str(e))

    async def pending(self) -> List[PendingLogEntry]:
        """Copy of the pending entries, oldest first."""
        try:
            async with self._lock:
                return await self._load()
        except Exception as e:
            logger.exception("Failed to read pending records", error=str(e))
            return []

    async def count(self) -> int:
        try:
            async with self._database.connect() as db:
                cursor = await db.execute("SELECT COUNT(*) FROM pending_logs")
                row = await cursor.fetchone()
        except Exception as e:
            logger.exception("Failed to count pending records", error=str(e))
            return 0
        return row[0] if row else 0

    async def clear(self) -> None:
        try:
            async with self._lock:
                async with self._database.connect() as db:
                    await db.execute("DELETE FROM pending_logs")
                    await db.commit()
        except Exception as e:
            logger.exception("Failed to clear pending records", error=str(e))

    async def flush(self, destination: ServerDestination) -> Tuple[int, int]:
        """
        Replay every pending entry to the destination.

        Works on a snapshot and afterwards deletes only the entries that
        were sent, so entries enqueued while the flush runs are kept.

        Returns:
            (sent, failed) counts for this flush.
        """
        entries = await self.pending()
        if not entries:
            logger.debug("No pending records to send")
            return 0, 0

        logger.info("Replaying pending records", count=len(entries), destination=str(destination))

        sent_ids: List[int] = []
        failed = 0
        for index, entry in enumerate(entries):
            payload = self._encoder.encode_retry(entry.event_type, entry.message)
            if await self._transport.send(destination, payload):
                sent_ids.append(entry.entry_id)
            else:
                failed += 1

            if self.send_delay and index < len(entries) - 1:
                await asyncio.sleep(self.send_delay)

        if sent_ids:
            try:
                async with self._lock:
                    async with self._database.connect() as db:
                        await db.executemany(
                            "DELETE FROM pending_logs WHERE id = ?",
                            [(entry_id,) for entry_id in sent_ids]
                        )
                        await db.commit()
            except Exception as e:
                logger.exception("Failed to remove replayed records", error=str(e))

        logger.info("Pending records processed", sent=len(sent_ids), failed=failed)
        return len(sent_ids), failed

    async def _load(self) -> List[PendingLogEntry]:
        async with self._database.connect() as db:
            cursor = await db.execute(
                "SELECT id, ts, event_type, message FROM pending_logs ORDER BY ts, id"
            )
            rows = await cursor.fetchall()

        return [
            PendingLogEntry(timestamp=ts, event_type=event_type, message=message, entry_id=entry_id)
            for entry_id, ts, event_type, message in rows
        ]
