#!/usr/bin/env python3
"""
Log Shield Agent

Runs on the device and provides:
- Event capture from OS hooks (app, screen, power) into bounded local storage
- Periodic battery, network and foreground-app checks
- Syslog forwarding over UDP with a durable retry queue
- Unix socket bridge for the host UI (status, destination, interval)

Usage:
    python3 log_shield.py [--config CONFIG_PATH]
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog
import yaml

from events import Category, EventStore, format_message
from events.models import now_ms
from forwarding import ConfigResolver, ForwardingPipeline, RetryQueue, SyslogEncoder, UdpTransport
from monitoring import MonitoringState, PsutilDeviceProbe, Scheduler
from monitoring.probes import DeviceProbe
from monitoring.state import INTERVAL_KEY, SETTINGS_NAMESPACE, STATE_NAMESPACE
from rpc import RPCError, SocketServer
from rpc.socket_server import METHOD_NOT_FOUND, check_params
from storage import AgentDatabase, PreferenceStore

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    "agent": {"name": "log-shield-agent", "version": "1.0.0"},
    "database": {"path": "/var/lib/log-shield/agent.db"},
    "socket": {"enabled": True, "path": "/run/log-shield/agent.sock", "permissions": "0660"},
    "forwarding": {
        "server_url": "",
        "default_port": 1514,
        "timeout": 5.0,
        "inbox_size": 1000,
        "max_pending": 100,
        "retry_send_delay": 0.1,
        "drain_timeout": 10.0,
        "device_tag": "mobile-device",
        "agent_tag": "LogShield",
        "pid": 1000,
    },
    "monitoring": {"interval": 30, "battery_delta": 5, "battery_report_interval": 300},
    "events": {"retention": {}},
    "logging": {"level": "INFO"},
}


def configure_logging(level: str = "INFO") -> None:
    """Structured JSON logging to stdout."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, str(level).upper(), logging.INFO),
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def load_config(config_path: Optional[str]) -> Dict[str, Dict[str, Any]]:
    """Load the YAML config and merge each section over the defaults."""
    config = {section: dict(values) for section, values in DEFAULT_CONFIG.items()}
    if not config_path:
        return config

    path = Path(config_path)
    if not path.exists():
        logger.warning("Config file not found, using defaults", path=config_path)
        return config

    with open(path, "r") as f:
        loaded = yaml.safe_load(f) or {}

    for section, values in loaded.items():
        if isinstance(values, dict) and isinstance(config.get(section), dict):
            config[section].update(values)
        else:
            config[section] = values

    logger.info("Configuration loaded", path=config_path)
    return config


class LogShieldAgent:
    """Main agent application."""

    def __init__(
        self,
        config: Optional[Dict[str, Dict[str, Any]]] = None,
        probe: Optional[DeviceProbe] = None,
        transport: Optional[UdpTransport] = None
    ):
        self.config = config if config is not None else load_config(None)
        forwarding = self.config.get("forwarding", {})
        monitoring = self.config.get("monitoring", {})

        self.database = AgentDatabase(self.config.get("database", {}).get("path", "agent.db"))
        self.preferences = PreferenceStore(self.database)
        self.event_store = EventStore(self.database, retention=self._retention())

        candidates = forwarding.get("destination_candidates")
        canonical = forwarding.get("canonical_destination")
        self.resolver = ConfigResolver(
            self.preferences,
            candidates=[tuple(c) for c in candidates] if candidates else None,
            canonical=tuple(canonical) if canonical else None,
            default_port=forwarding.get("default_port", 1514),
        )
        self.encoder = SyslogEncoder(
            device_tag=forwarding.get("device_tag", "mobile-device"),
            agent_tag=forwarding.get("agent_tag", "LogShield"),
            pid=forwarding.get("pid", 1000),
        )
        self.transport = transport or UdpTransport(timeout=forwarding.get("timeout", 5.0))
        self.retry_queue = RetryQueue(
            self.database,
            self.encoder,
            self.transport,
            max_entries=forwarding.get("max_pending", 100),
            send_delay=forwarding.get("retry_send_delay", 0.1),
        )
        self.pipeline = ForwardingPipeline(
            self.resolver,
            self.encoder,
            self.transport,
            self.retry_queue,
            inbox_size=forwarding.get("inbox_size", 1000),
        )

        self.state = MonitoringState()
        self.probe = probe or PsutilDeviceProbe()
        self.scheduler = Scheduler(
            self.probe,
            self.state,
            self.preferences,
            self.pipeline,
            emit=self.report_event,
            default_interval_ms=int(monitoring.get("interval", 30) * 1000),
            battery_delta=monitoring.get("battery_delta", 5),
            battery_report_interval_ms=int(monitoring.get("battery_report_interval", 300) * 1000),
        )

        socket_config = self.config.get("socket", {})
        self.socket_server = None
        if socket_config.get("enabled", True):
            self.socket_server = SocketServer(
                socket_path=socket_config.get("path", "/run/log-shield/agent.sock"),
                handler=self._handle_rpc,
                permissions=socket_config.get("permissions", "0660"),
                group=socket_config.get("group"),
            )

        self.running = False
        self._shutdown_event = asyncio.Event()

    def _retention(self) -> Dict[Category, int]:
        retention = {}
        for name, cap in (self.config.get("events", {}).get("retention") or {}).items():
            try:
                retention[Category(name)] = int(cap)
            except ValueError:
                logger.warning("Ignoring retention for unknown category", category=name)
        return retention

    async def report_event(self, category: Union[Category, str], payload: str) -> None:
        """Store an event and forward it. Never raises."""
        try:
            category = Category(category)
        except ValueError:
            logger.warning("Unknown event category, event ignored", category=str(category))
            return

        payload = "" if payload is None else str(payload)
        try:
            await self.event_store.append(category, payload)
            self.state.last_events[category.value] = payload
            self.pipeline.send_now(category.event_type, format_message(category, payload))
            logger.debug("Event reported", category=category.value)
        except Exception as e:
            logger.exception("Failed to report event", category=category.value, error=str(e))

    async def get_events(self, category: str, limit: int = 100) -> List[Dict]:
        try:
            events = await self.event_store.snapshot(Category(category))
        except ValueError:
            raise RPCError(-32602, f"Unknown category: {category}")
        return [e.to_dict() for e in events[-limit:]]

    async def get_pending_counts(self) -> Dict[str, int]:
        return await self.event_store.counts()

    async def get_status(self) -> Dict[str, Any]:
        """Summary for the host UI."""
        pending = await self.get_pending_counts()
        return {
            "is_running": self.running and self.scheduler.is_running,
            "current_interval": self.state.poll_interval_ms // 1000,
            "last_check": self.state.last_check_ms,
            "events_processed": self.state.events_processed,
            "pending_events": sum(pending.values()),
            "detailed_pending": pending,
            "pending_retry": await self.retry_queue.count(),
            "last_foreground_app": self.state.last_foreground_app or "None",
            "last_events": dict(self.state.last_events),
            "forwarding": {
                "sent": self.pipeline.sent_total,
                "failed": self.pipeline.failed_total,
                "skipped": self.pipeline.skipped_total,
                "dropped": self.pipeline.dropped_total,
                "backlog": self.pipeline.backlog,
                "last_outcome": self.pipeline.last_outcome,
            },
        }

    async def set_destination(self, url: str) -> Dict[str, Any]:
        destination = await self.resolver.set_destination(url)
        if destination is None:
            return {"saved": False, "destination": None}

        self.pipeline.send_now("CONFIG_TEST", "Server URL saved successfully")
        return {"saved": True, "destination": str(destination)}

    async def get_destination_status(self) -> Dict[str, Any]:
        return await self.resolver.destination_status()

    async def set_poll_interval(self, seconds: int = 30) -> Dict[str, Any]:
        try:
            seconds = int(seconds)
        except (TypeError, ValueError):
            seconds = 0
        if seconds <= 0:
            raise RPCError(-32602, "Interval must be a positive number of seconds")

        await self.preferences.put(SETTINGS_NAMESPACE, INTERVAL_KEY, seconds * 1000)
        logger.info("Monitoring interval updated", seconds=seconds)
        return {"interval": seconds}

    async def clear_data(self) -> Dict[str, Any]:
        """Drop stored events, monitoring state and the interval override."""
        await self.event_store.clear_all()
        try:
            await self.preferences.clear_namespace(STATE_NAMESPACE)
            await self.preferences.remove(SETTINGS_NAMESPACE, INTERVAL_KEY)
        except Exception as e:
            logger.exception("Failed to clear monitoring settings", error=str(e))
        self.state.reset()
        logger.info("Monitoring data cleared")
        return {"cleared": True}

    async def test_connection(self) -> Dict[str, Any]:
        status = await self.resolver.destination_status()
        if not status["any_url_set"]:
            logger.warning("Cannot test connection, no destination configured")
            return {"sent": False, "reason": "not_configured"}

        self.pipeline.send_now("CONNECTION_TEST", f"Test message from agent at {now_ms()}")
        return {"sent": True, "destination": status["first_url_found"]}

    async def trigger_test_events(self) -> Dict[str, Any]:
        self.pipeline.send_now("APP_EVENT", "TEST: App 'TestApp' (com.test.app) - INSTALLED")
        self.pipeline.send_now("SCREEN_EVENT", "TEST: Screen: SCREEN_ON")
        self.pipeline.send_now("POWER_EVENT", "TEST: Power: CONNECTED (85%)")
        return {"queued": 3}

    async def get_forwarding_history(self, limit: int = 50) -> List[Dict[str, Any]]:
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            raise RPCError(-32602, "Limit must be an integer")
        return self.pipeline.recent_outcomes(limit)

    async def _get_health(self) -> Dict[str, Any]:
        return {
            "status": "healthy" if self.running else "stopped",
            "components": {
                "socket_server": self.socket_server.is_running if self.socket_server else None,
                "pipeline": self.pipeline.is_running,
                "scheduler": self.scheduler.is_running,
            },
        }

    async def _handle_rpc(self, method: str, params: Dict[str, Any]) -> Any:
        """Dispatch bridge requests from the host UI."""
        logger.debug("Bridge request received", method=method)

        handlers = {
            "event.report": self.report_event,
            "events.list": self.get_events,
            "status.get": self.get_status,
            "status.pending": self.get_pending_counts,
            "config.set_destination": self.set_destination,
            "config.destination_status": self.get_destination_status,
            "monitoring.set_interval": self.set_poll_interval,
            "data.clear": self.clear_data,
            "test.connection": self.test_connection,
            "test.events": self.trigger_test_events,
            "forwarding.history": self.get_forwarding_history,
            "system.health": self._get_health,
        }

        handler = handlers.get(method)
        if not handler:
            raise RPCError(METHOD_NOT_FOUND, f"Unknown method: {method}")

        check_params(handler, params)
        return await handler(**params)

    async def start(self) -> None:
        """Start all components."""
        logger.info("Starting Log Shield agent", version=self.config.get("agent", {}).get("version"))

        await self.database.init()
        await self._seed_destination()

        loaded = await MonitoringState.load(self.preferences)
        self.state.update_from(loaded)
        await self.scheduler.read_interval_ms()

        await self.pipeline.start()
        if self.socket_server:
            await self.socket_server.start()
        await self.scheduler.start()

        self.running = True
        await self.report_event(Category.SERVICE, "Monitoring service started")
        logger.info("Log Shield agent started")

    async def run(self) -> None:
        """Start and block until stop() is called."""
        await self.start()
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop gracefully, letting queued sends drain."""
        if not self.running:
            self._shutdown_event.set()
            return

        logger.info("Stopping Log Shield agent")
        await self.report_event(Category.SERVICE, "Monitoring service stopped")
        self.running = False

        await self.scheduler.stop()
        await self.state.save(self.preferences)
        if self.socket_server:
            await self.socket_server.stop()
        await self.pipeline.stop(drain_timeout=self.config.get("forwarding", {}).get("drain_timeout", 10.0))

        self._shutdown_event.set()
        logger.info("Log Shield agent stopped")

    async def _seed_destination(self) -> None:
        """Use the configured server_url until the host UI sets one."""
        server_url = self.config.get("forwarding", {}).get("server_url")
        if not server_url:
            return
        if await self.resolver.resolve_destination() is None:
            await self.resolver.set_destination(server_url)

    def handle_signal(self) -> None:
        logger.info("Received shutdown signal")
        asyncio.create_task(self.stop())


async def main() -> None:
    parser = argparse.ArgumentParser(description="Log Shield device telemetry agent")
    parser.add_argument(
        "--config", "-c",
        default="config.yaml",
        help="Path to configuration file"
    )
    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(config.get("logging", {}).get("level", "INFO"))

    agent = LogShieldAgent(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, agent.handle_signal)

    try:
        await agent.run()
    except Exception as e:
        logger.exception("Agent failed", error=str(e))
        sys.exit(1)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
