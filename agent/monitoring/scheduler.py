"""
Log Shield Agent - Monitoring Scheduler

Runs the periodic tick: derived-event checks (battery, network, foreground
app), a retry-queue replay, then state bookkeeping. Derived events are only
emitted when the observed value differs from the last reported one.

A failing tick is logged and the next tick is scheduled anyway.
"""

import asyncio
import math
from typing import Awaitable, Callable, Optional

import structlog

from events.models import Category, now_ms
from forwarding import ForwardingPipeline
from storage import PreferenceStore

from .probes import DeviceProbe
from .state import DEFAULT_INTERVAL_MS, INTERVAL_KEY, SETTINGS_NAMESPACE, MonitoringState

logger = structlog.get_logger(__name__)

EmitCallback = Callable[[Category, str], Awaitable[None]]


class Scheduler:
    """Single cooperative timer loop driving periodic checks."""

    def __init__(
        self,
        probe: DeviceProbe,
        state: MonitoringState,
        preferences: PreferenceStore,
        pipeline: ForwardingPipeline,
        emit: EmitCallback,
        default_interval_ms: int = DEFAULT_INTERVAL_MS,
        battery_delta: int = 5,
        battery_report_interval_ms: int = 300000,
        clock: Callable[[], int] = now_ms
    ):
        self._probe = probe
        self.state = state
        self._preferences = preferences
        self._pipeline = pipeline
        self._emit = emit
        self._default_interval_ms = default_interval_ms
        self._battery_delta = battery_delta
        self._battery_report_interval_ms = battery_report_interval_ms
        self._clock = clock

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Monitoring scheduler started")

    async def stop(self) -> None:
        """Cancel the pending tick."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Monitoring scheduler stopped", ticks=self.ticks)

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Monitoring tick failed", error=str(e))

            interval_ms = await self.read_interval_ms()
            await asyncio.sleep(interval_ms / 1000)

    async def read_interval_ms(self) -> int:
        """Poll interval, read fresh so changes apply without a restart."""
        try:
            value = await self._preferences.get(SETTINGS_NAMESPACE, INTERVAL_KEY, self._default_interval_ms)
        except Exception as e:
            logger.exception("Failed to read poll interval", error=str(e))
            value = self._default_interval_ms

        interval_ms = None
        if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
            interval_ms = int(value)

        # Sub-millisecond values truncate to 0 and would spin the loop
        if interval_ms is None or interval_ms < 1:
            logger.warning("Invalid poll interval, using default", value=value)
            interval_ms = self._default_interval_ms

        self.state.poll_interval_ms = int(interval_ms)
        return self.state.poll_interval_ms

    async def run_tick(self) -> None:
        """One pass of the monitoring work."""
        self.ticks += 1
        logger.debug("Performing monitoring tasks", tick=self.ticks)

        await self._guarded("battery", self.check_battery)
        await self._guarded("network", self.check_network)
        await self._guarded("foreground", self.check_foreground_app)

        self._pipeline.request_flush()

        self.state.last_check_ms = self._clock()
        self.state.events_processed += 1
        await self.state.save(self._preferences)

    async def _guarded(self, name: str, check: Callable[[], Awaitable[None]]) -> None:
        try:
            await check()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Monitoring check failed", check=name, error=str(e))

    async def check_battery(self) -> None:
        reading = await self._probe.read_battery()
        if reading is None:
            return

        now = self._clock()
        changed = abs(self.state.last_battery_percent - reading.percent) >= self._battery_delta
        stale = now - self.state.last_battery_report_ms > self._battery_report_interval_ms
        if not (changed or stale):
            return

        status = "Charging" if reading.charging else "Discharging"
        await self._emit(Category.BATTERY, f"Battery: {reading.percent}% - {status}")
        self.state.last_battery_percent = reading.percent
        self.state.last_battery_report_ms = now

    async def check_network(self) -> None:
        reading = await self._probe.read_network()
        if (reading.network_type == self.state.last_network_type
                and reading.connected == self.state.last_network_connected):
            return

        connected = "true" if reading.connected else "false"
        await self._emit(
            Category.NETWORK,
            f"Network changed to: {reading.network_type} (Connected: {connected})"
        )
        self.state.last_network_type = reading.network_type
        self.state.last_network_connected = reading.connected

    async def check_foreground_app(self) -> None:
        app = await self._probe.read_foreground_app()
        if app is None or not app.package:
            return
        if app.package == self.state.last_foreground_package:
            return

        app_name = app.app_name or app.package
        await self._emit(Category.FOREGROUND, f"App in foreground: {app_name} ({app.package})")
        self.state.last_foreground_package = app.package
        self.state.last_foreground_app = app_name
        logger.debug("Foreground app changed", app=app_name, package=app.package)
