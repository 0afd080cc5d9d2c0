"""
Log Shield Agent - Tests

Pytest tests for the agent composition and its bridge handlers.
"""

import asyncio

import pytest
import pytest_asyncio

from conftest import FakeProbe, FakeTransport


def make_config(tmp_path, **forwarding):
    from log_shield import load_config

    config = load_config(None)
    config["database"]["path"] = str(tmp_path / "agent.db")
    config["socket"]["enabled"] = False
    config["monitoring"]["interval"] = 3600
    config["forwarding"].update({"retry_send_delay": 0, **forwarding})
    return config


async def start_and_settle(agent):
    """Start the agent and wait for the first monitoring tick to be saved."""
    from events.models import now_ms
    from monitoring.state import STATE_NAMESPACE

    started_at = now_ms()
    await agent.start()
    for _ in range(200):
        if await agent.preferences.get(STATE_NAMESPACE, "last_check_ms", 0) >= started_at:
            break
        await asyncio.sleep(0.01)
    await agent.pipeline.drain(timeout=5)


@pytest_asyncio.fixture
async def agent(tmp_path):
    from log_shield import LogShieldAgent

    agent = LogShieldAgent(make_config(tmp_path), probe=FakeProbe(), transport=FakeTransport())
    await start_and_settle(agent)
    yield agent
    await agent.stop()


class TestConfig:
    """Test YAML configuration loading."""

    def test_defaults(self):
        """Test defaults when no file is given."""
        from log_shield import load_config

        config = load_config(None)

        assert config["forwarding"]["default_port"] == 1514
        assert config["forwarding"]["max_pending"] == 100
        assert config["monitoring"]["interval"] == 30

    def test_sections_merged_over_defaults(self, tmp_path):
        """Test that a partial section keeps the other defaults."""
        from log_shield import load_config

        path = tmp_path / "config.yaml"
        path.write_text(
            "forwarding:\n"
            "  server_url: collector.local:1515\n"
            "monitoring:\n"
            "  interval: 60\n"
        )

        config = load_config(str(path))

        assert config["forwarding"]["server_url"] == "collector.local:1515"
        assert config["forwarding"]["timeout"] == 5.0
        assert config["monitoring"]["interval"] == 60
        assert config["monitoring"]["battery_delta"] == 5

    def test_missing_file_uses_defaults(self, tmp_path):
        from log_shield import DEFAULT_CONFIG, load_config

        config = load_config(str(tmp_path / "absent.yaml"))

        assert config["socket"] == DEFAULT_CONFIG["socket"]

    def test_defaults_not_mutated(self, tmp_path):
        from log_shield import DEFAULT_CONFIG

        make_config(tmp_path)

        assert DEFAULT_CONFIG["socket"]["enabled"] is True


class TestReportEvent:
    """Test the host-facing event entry point."""

    @pytest.mark.asyncio
    async def test_event_stored_without_destination(self, agent):
        """Test that with nothing configured the event is stored and nothing is sent or queued."""
        from events import Category

        await agent.report_event(Category.APP, "INSTALLED|Foo|com.foo")
        await agent.pipeline.drain(timeout=5)

        events = await agent.event_store.snapshot(Category.APP)
        assert [e.payload for e in events] == ["INSTALLED|Foo|com.foo"]
        assert await agent.retry_queue.count() == 0
        assert agent.transport.attempts == 0
        assert agent.state.last_events["app"] == "INSTALLED|Foo|com.foo"

    @pytest.mark.asyncio
    async def test_event_forwarded_with_destination(self, agent):
        from forwarding import parse_record

        await agent.set_destination("10.0.0.5:1514")
        await agent.report_event("power", "POWER_CONNECTED|85")
        await agent.pipeline.drain(timeout=5)

        records = [parse_record(r) for r in agent.transport.records]
        assert ("POWER_EVENT", "Power: POWER_CONNECTED (Battery: 85%)") in \
            [(r.event_type, r.message) for r in records]

    @pytest.mark.asyncio
    async def test_failed_send_is_queued(self, tmp_path):
        from log_shield import LogShieldAgent

        agent = LogShieldAgent(make_config(tmp_path), probe=FakeProbe(), transport=FakeTransport(outcome=False))
        await start_and_settle(agent)
        try:
            await agent.set_destination("10.0.0.5")
            await agent.report_event("screen", "SCREEN_OFF")
            await agent.pipeline.drain(timeout=5)

            pending = await agent.retry_queue.pending()
            assert ("SCREEN_EVENT", "Screen: SCREEN_OFF") in [(p.event_type, p.message) for p in pending]
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_non_string_payload_is_stored_and_forwarded(self, agent):
        """Test that a payload of the wrong type still takes the send path."""
        from events import Category
        from forwarding import parse_record

        await agent.set_destination("10.0.0.5")
        await agent.report_event("app", 123)
        await agent.report_event("screen", None)
        await agent.pipeline.drain(timeout=5)

        assert [e.payload for e in await agent.event_store.snapshot(Category.APP)] == ["123"]
        assert [e.payload for e in await agent.event_store.snapshot(Category.SCREEN)] == [""]
        records = [(r.event_type, r.message) for r in map(parse_record, agent.transport.records)]
        assert ("APP_EVENT", "Application event: 123") in records
        assert ("SCREEN_EVENT", "Screen: ") in records

    @pytest.mark.asyncio
    async def test_unknown_category_ignored(self, agent):
        await agent.report_event("telepathy", "x")

        counts = await agent.get_pending_counts()
        assert "telepathy" not in counts
        assert "telepathy" not in agent.state.last_events


class TestBridgeHandlers:
    """Test the methods exposed to the host UI."""

    @pytest.mark.asyncio
    async def test_status(self, agent):
        await agent.report_event("screen", "SCREEN_ON")
        await agent.pipeline.drain(timeout=5)

        status = await agent.get_status()

        assert status["is_running"] is True
        assert status["current_interval"] == 3600
        assert status["detailed_pending"]["screen"] == 1
        assert status["pending_events"] >= 1
        assert status["pending_retry"] == 0
        assert status["last_events"]["screen"] == "SCREEN_ON"
        assert status["forwarding"]["last_outcome"]["outcome"] == "not_configured"
        assert status["forwarding"]["last_outcome"]["event_type"] == "SCREEN_EVENT"

    @pytest.mark.asyncio
    async def test_set_destination_sends_config_test(self, agent):
        from forwarding import parse_record

        result = await agent.set_destination("http://collector.local:1515/")
        await agent.pipeline.drain(timeout=5)

        assert result == {"saved": True, "destination": "collector.local:1515"}
        records = [parse_record(r) for r in agent.transport.records]
        assert ("CONFIG_TEST", "Server URL saved successfully") in [(r.event_type, r.message) for r in records]

    @pytest.mark.asyncio
    async def test_set_empty_destination_rejected(self, agent):
        assert await agent.set_destination("   ") == {"saved": False, "destination": None}

    @pytest.mark.asyncio
    async def test_set_poll_interval(self, agent):
        from monitoring.state import INTERVAL_KEY, SETTINGS_NAMESPACE

        assert await agent.set_poll_interval(45) == {"interval": 45}
        assert await agent.preferences.get(SETTINGS_NAMESPACE, INTERVAL_KEY) == 45000
        assert await agent.scheduler.read_interval_ms() == 45000

    @pytest.mark.asyncio
    async def test_non_positive_interval_rejected(self, agent):
        from rpc import RPCError

        with pytest.raises(RPCError) as exc:
            await agent.set_poll_interval(0)
        assert exc.value.code == -32602

    @pytest.mark.asyncio
    async def test_clear_data(self, agent):
        await agent.report_event("app", "INSTALLED|Foo|com.foo")
        await agent.set_poll_interval(45)

        assert await agent.clear_data() == {"cleared": True}

        assert sum((await agent.get_pending_counts()).values()) == 0
        assert agent.state.events_processed == 0
        assert agent.state.last_events == {}
        assert await agent.scheduler.read_interval_ms() == 3600 * 1000

    @pytest.mark.asyncio
    async def test_test_connection_without_destination(self, agent):
        assert await agent.test_connection() == {"sent": False, "reason": "not_configured"}

    @pytest.mark.asyncio
    async def test_trigger_test_events(self, agent):
        from forwarding import parse_record

        await agent.set_destination("10.0.0.5")
        assert await agent.trigger_test_events() == {"queued": 3}
        await agent.pipeline.drain(timeout=5)

        types = [parse_record(r).event_type for r in agent.transport.records]
        assert types[-3:] == ["APP_EVENT", "SCREEN_EVENT", "POWER_EVENT"]

    @pytest.mark.asyncio
    async def test_dispatch(self, agent):
        health = await agent._handle_rpc("system.health", {})

        assert health["status"] == "healthy"
        assert health["components"]["pipeline"] is True
        assert health["components"]["socket_server"] is None

    @pytest.mark.asyncio
    async def test_dispatch_with_params(self, agent):
        await agent._handle_rpc("event.report", {"category": "screen", "payload": "SCREEN_ON"})

        events = await agent._handle_rpc("events.list", {"category": "screen"})
        assert [e["payload"] for e in events] == ["SCREEN_ON"]

    @pytest.mark.asyncio
    async def test_forwarding_history(self, agent):
        await agent.set_destination("10.0.0.5")
        await agent.pipeline.drain(timeout=5)

        history = await agent._handle_rpc("forwarding.history", {"limit": 1})

        assert [(h["outcome"], h["event_type"]) for h in history] == [("sent", "CONFIG_TEST")]

    @pytest.mark.asyncio
    async def test_dispatch_rejects_unexpected_params(self, agent):
        from rpc import RPCError

        with pytest.raises(RPCError) as exc:
            await agent._handle_rpc("monitoring.set_interval", {"minutes": 5})
        assert exc.value.code == -32602

        with pytest.raises(RPCError) as exc:
            await agent._handle_rpc("event.report", {"category": "app"})
        assert exc.value.code == -32602

    @pytest.mark.asyncio
    async def test_type_error_in_handler_body_not_reported_as_bad_params(self, agent):
        """Test that a failure inside a handler is not mistaken for a binding error."""
        from unittest.mock import patch

        from rpc import RPCError

        with patch.object(agent.event_store, "counts", side_effect=TypeError("broken")):
            with pytest.raises(TypeError):
                await agent._handle_rpc("status.pending", {})

        with pytest.raises(RPCError):
            await agent._handle_rpc("status.pending", {"extra": 1})

    @pytest.mark.asyncio
    async def test_unknown_method(self, agent):
        from rpc import RPCError

        with pytest.raises(RPCError) as exc:
            await agent._handle_rpc("nope", {})
        assert exc.value.code == -32601


class TestLifecycle:
    """Test start and stop."""

    @pytest.mark.asyncio
    async def test_configured_server_url_seeds_destination(self, tmp_path):
        from log_shield import LogShieldAgent

        agent = LogShieldAgent(
            make_config(tmp_path, server_url="collector.local:1515"),
            probe=FakeProbe(),
            transport=FakeTransport(),
        )
        await start_and_settle(agent)
        try:
            destination = await agent.resolver.resolve_destination()
            assert str(destination) == "collector.local:1515"
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_service_events_forwarded(self, tmp_path):
        from forwarding import parse_record
        from log_shield import LogShieldAgent

        transport = FakeTransport()
        agent = LogShieldAgent(
            make_config(tmp_path, server_url="10.0.0.5"),
            probe=FakeProbe(),
            transport=transport,
        )
        await agent.start()
        await agent.stop()

        messages = [parse_record(r).message for r in transport.records]
        assert "Monitoring service started" in messages
        assert "Monitoring service stopped" in messages
        assert not agent.pipeline.is_running

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, tmp_path):
        from events import Category
        from log_shield import LogShieldAgent

        config = make_config(tmp_path)
        first = LogShieldAgent(config, probe=FakeProbe(), transport=FakeTransport())
        await start_and_settle(first)
        await first.report_event("screen", "SCREEN_ON")
        await first.stop()

        second = LogShieldAgent(config, probe=FakeProbe(), transport=FakeTransport())
        await start_and_settle(second)
        try:
            assert second.state.last_network_type == "WiFi"
            assert second.state.last_events["screen"] == "SCREEN_ON"
            assert (await second.event_store.snapshot(Category.SCREEN))[0].payload == "SCREEN_ON"
        finally:
            await second.stop()
