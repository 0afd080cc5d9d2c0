"""
Log Shield Agent - Destination Resolution

The destination string may have been written to several preference slots
over time (host UI, older agent builds, Flutter's own store). The resolver
checks an explicit ordered list of them and the first non-empty value wins.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from events.models import now_ms
from storage import PreferenceStore

logger = structlog.get_logger(__name__)

DEFAULT_PORT = 1514

DEFAULT_CANDIDATES: List[Tuple[str, str]] = [
    ("monitoring_settings", "server_url"),
    ("app_monitor", "wazuh_server_url"),
    ("app_monitor", "server_url"),
    ("FlutterSharedPreferences", "flutter.server_url"),
]

DEFAULT_CANONICAL = ("monitoring_settings", "server_url")


@dataclass(frozen=True)
class ServerDestination:
    """Where records are sent."""
    host: str
    port: int = DEFAULT_PORT

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


def clean_url(raw: str) -> str:
    """Trim whitespace, a leading http:// or https:// and trailing slashes."""
    value = (raw or "").strip()
    for prefix in ("http://", "https://"):
        if value.lower().startswith(prefix):
            value = value[len(prefix):]
            break
    return value.rstrip("/").strip()


def parse_destination(raw: str, default_port: int = DEFAULT_PORT) -> Optional[ServerDestination]:
    """
    Parse 'host' or 'host:port'.

    Returns None for an empty value. An unusable port falls back to the
    default port instead of rejecting the whole value.
    """
    value = clean_url(raw)
    if not value:
        return None

    host, sep, port_text = value.partition(":")
    host = host.strip()
    if not host:
        return None

    port = default_port
    if sep:
        try:
            port = int(port_text.strip())
        except ValueError:
            logger.warning("Invalid destination port, using default", value=value, port=default_port)
            port = default_port
        if not 0 < port < 65536:
            logger.warning("Destination port out of range, using default", value=value, port=default_port)
            port = default_port

    return ServerDestination(host=host, port=port)


class ConfigResolver:
    """Resolves the active destination from ordered preference slots."""

    def __init__(
        self,
        preferences: PreferenceStore,
        candidates: Optional[Sequence[Tuple[str, str]]] = None,
        canonical: Optional[Tuple[str, str]] = None,
        default_port: int = DEFAULT_PORT
    ):
        self._preferences = preferences
        self.candidates = [tuple(c) for c in (candidates or DEFAULT_CANDIDATES)]
        self.canonical = tuple(canonical or DEFAULT_CANONICAL)
        self.default_port = default_port

    async def resolve_destination(self) -> Optional[ServerDestination]:
        """First configured destination, or None when nothing is set."""
        for namespace, key in self.candidates:
            value = await self._lookup(namespace, key)
            if value:
                destination = parse_destination(value, self.default_port)
                if destination:
                    return destination
        return None

    async def set_destination(self, raw: str) -> Optional[ServerDestination]:
        """Store a new destination string in the canonical slot."""
        cleaned = clean_url(raw)
        namespace, key = self.canonical
        try:
            await self._preferences.put(namespace, key, cleaned)
        except Exception as e:
            logger.exception("Failed to save destination", namespace=namespace, key=key, error=str(e))
            return None

        logger.info("Destination saved", namespace=namespace, key=key, value=cleaned)
        return parse_destination(cleaned, self.default_port)

    async def destination_status(self) -> Dict[str, Any]:
        """Raw value of every candidate slot plus the winning one."""
        locations: Dict[str, str] = {}
        for namespace, key in self.candidates:
            locations[f"{namespace}.{key}"] = await self._lookup(namespace, key)

        first_url = next((v for v in locations.values() if v), "")
        return {
            "locations": locations,
            "any_url_set": bool(first_url),
            "first_url_found": first_url,
            "timestamp": now_ms(),
        }

    async def _lookup(self, namespace: str, key: str) -> str:
        try:
            value = await self._preferences.get(namespace, key)
        except Exception as e:
            logger.exception("Failed to read destination slot", namespace=namespace, key=key, error=str(e))
            return ""

        if value is None:
            return ""
        return str(value).strip()
