"""
Log Shield Agent - Forwarding Pipeline

The single send path. Every event source, the scheduler and the host bridge
call send_now(); nothing else encodes or transmits records.

Work runs on one background worker fed by a bounded inbox, so sends are
serialized in submission order and never block the caller.
"""

import asyncio
from collections import deque
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

import structlog

from events.models import now_ms

from .config_resolver import ConfigResolver
from .retry_queue import RetryQueue
from .syslog import SyslogEncoder
from .transport import UdpTransport

logger = structlog.get_logger(__name__)

OUTCOME_HISTORY_SIZE = 50


class DeliveryOutcome(str, Enum):
    """What happened to one record."""
    SENT = "sent"
    NOT_CONFIGURED = "not_configured"
    QUEUED_FOR_RETRY = "queued_for_retry"


class ForwardingPipeline:
    """Resolve, encode, transmit, and hand failures to the retry queue."""

    def __init__(
        self,
        resolver: ConfigResolver,
        encoder: SyslogEncoder,
        transport: UdpTransport,
        retry_queue: RetryQueue,
        inbox_size: int = 1000,
        clock: Callable[[], int] = now_ms
    ):
        self._resolver = resolver
        self._encoder = encoder
        self._transport = transport
        self._retry_queue = retry_queue
        self._clock = clock

        self._inbox: asyncio.Queue = asyncio.Queue(maxsize=inbox_size)
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._accepting = False
        self._flush_queued = False

        self.sent_total = 0
        self.failed_total = 0
        self.skipped_total = 0
        self.dropped_total = 0
        self.last_outcome: Optional[Dict[str, Any]] = None
        self._history: Deque[Dict[str, Any]] = deque(maxlen=OUTCOME_HISTORY_SIZE)

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def backlog(self) -> int:
        return self._inbox.qsize()

    async def start(self) -> None:
        """Start the background worker."""
        if self.is_running:
            return
        self._loop = asyncio.get_running_loop()
        self._accepting = True
        self._worker = asyncio.create_task(self._worker_loop())
        logger.info("Forwarding pipeline started", inbox_size=self._inbox.maxsize)

    async def stop(self, drain_timeout: float = 10.0) -> None:
        """Stop accepting work and let queued sends finish or time out."""
        self._accepting = False

        if self._worker:
            try:
                await asyncio.wait_for(self._inbox.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Forwarding inbox not drained", remaining=self._inbox.qsize())

            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        logger.info("Forwarding pipeline stopped", sent=self.sent_total, failed=self.failed_total)

    def send_now(self, event_type: str, message: str) -> None:
        """Queue a record for delivery. Returns immediately, never raises."""
        self._submit_threadsafe(partial(self.deliver, event_type, message), event_type)

    def request_flush(self) -> None:
        """Queue a retry-queue replay unless one is already waiting."""
        if self._flush_queued:
            return
        self._flush_queued = True
        self._submit_threadsafe(self._run_flush, "flush")

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until everything queued so far has been processed."""
        await asyncio.wait_for(self._inbox.join(), timeout=timeout)

    async def deliver(self, event_type: str, message: str) -> DeliveryOutcome:
        """Send one record now, falling back to the retry queue on failure."""
        destination = await self._resolver.resolve_destination()
        if destination is None:
            # Nothing to retry against until a destination is configured
            self.skipped_total += 1
            logger.info("Destination not configured, record not sent", event_type=event_type)
            return self._record(DeliveryOutcome.NOT_CONFIGURED, event_type, None)

        payload = self._encoder.encode(event_type, message)
        if await self._transport.send(destination, payload):
            self.sent_total += 1
            logger.debug("Record sent", event_type=event_type, destination=str(destination))
            return self._record(DeliveryOutcome.SENT, event_type, str(destination))

        self.failed_total += 1
        await self._retry_queue.enqueue(event_type, message)
        logger.warning("Record send failed, stored for retry", event_type=event_type, destination=str(destination))
        return self._record(DeliveryOutcome.QUEUED_FOR_RETRY, event_type, str(destination))

    def recent_outcomes(self, limit: int = OUTCOME_HISTORY_SIZE) -> List[Dict[str, Any]]:
        """Latest delivery outcomes, newest first."""
        return list(self._history)[:max(0, limit)]

    def _record(self, outcome: DeliveryOutcome, event_type: str, destination: Optional[str]) -> DeliveryOutcome:
        self.last_outcome = {
            "outcome": outcome.value,
            "event_type": event_type,
            "destination": destination,
            "timestamp": self._clock(),
        }
        self._history.appendleft(self.last_outcome)
        return outcome

    async def flush_retries(self) -> Optional[Tuple[int, int]]:
        """Replay the retry queue. Returns None when no destination is configured."""
        destination = await self._resolver.resolve_destination()
        if destination is None:
            logger.debug("Destination not configured, pending records kept")
            return None
        return await self._retry_queue.flush(destination)

    async def _run_flush(self) -> None:
        self._flush_queued = False
        await self.flush_retries()

    def _submit_threadsafe(self, job: Callable[[], Awaitable], label: str) -> None:
        try:
            running_loop = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None

        if self._loop is not None and running_loop is not self._loop:
            self._loop.call_soon_threadsafe(self._submit, job, label)
        else:
            self._submit(job, label)

    def _submit(self, job: Callable[[], Awaitable], label: str) -> None:
        if not self._accepting:
            self.dropped_total += 1
            if label == "flush":
                self._flush_queued = False
            logger.warning("Forwarding pipeline not accepting work", job=label)
            return

        try:
            self._inbox.put_nowait(job)
        except asyncio.QueueFull:
            self.dropped_total += 1
            if label == "flush":
                self._flush_queued = False
            logger.warning("Forwarding inbox full, job dropped", job=label, size=self._inbox.qsize())

    async def _worker_loop(self) -> None:
        """Run queued jobs one at a time."""
        while True:
            job = await self._inbox.get()
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Forwarding job failed", error=str(e))
            finally:
                self._inbox.task_done()
