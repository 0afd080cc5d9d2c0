"""
Log Shield Agent - Test Fixtures

Shared fixtures and fakes for the agent test suite.
"""

import os
import sys
from typing import Callable, List, Optional, Tuple, Union

import pytest
import pytest_asyncio

# Agent packages are imported top-level, as the agent itself runs them
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from forwarding.config_resolver import ServerDestination  # noqa: E402
from monitoring.probes import BatteryReading, DeviceProbe, ForegroundApp, NetworkReading  # noqa: E402
from storage import AgentDatabase, PreferenceStore  # noqa: E402


class FakeClock:
    """Settable millisecond clock."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def advance(self, ms: int) -> None:
        self.now += ms

    def __call__(self) -> int:
        return self.now


class FakeTransport:
    """Records every datagram; outcome is a bool or a callable deciding per send."""

    def __init__(self, outcome: Union[bool, Callable[[ServerDestination, bytes], bool]] = True):
        self.outcome = outcome
        self.sent: List[Tuple[ServerDestination, bytes]] = []
        self.attempts = 0

    async def send(self, destination: ServerDestination, payload: bytes) -> bool:
        self.attempts += 1
        ok = self.outcome(destination, payload) if callable(self.outcome) else self.outcome
        if ok:
            self.sent.append((destination, payload))
        return ok

    @property
    def records(self) -> List[str]:
        return [payload.decode("utf-8") for _, payload in self.sent]


class FakeProbe(DeviceProbe):
    """Device probe returning whatever the test sets."""

    def __init__(self):
        self.battery: Optional[BatteryReading] = None
        self.network = NetworkReading(network_type="WiFi", connected=True)
        self.foreground: Optional[ForegroundApp] = None
        self.battery_error: Optional[Exception] = None
        self.calls = {"battery": 0, "network": 0, "foreground": 0}

    async def read_battery(self) -> Optional[BatteryReading]:
        self.calls["battery"] += 1
        if self.battery_error:
            raise self.battery_error
        return self.battery

    async def read_network(self) -> NetworkReading:
        self.calls["network"] += 1
        return self.network

    async def read_foreground_app(self) -> Optional[ForegroundApp]:
        self.calls["foreground"] += 1
        return self.foreground


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest_asyncio.fixture
async def database(tmp_path) -> AgentDatabase:
    db = AgentDatabase(str(tmp_path / "agent.db"))
    await db.init()
    return db


@pytest_asyncio.fixture
async def preferences(database) -> PreferenceStore:
    return PreferenceStore(database)
