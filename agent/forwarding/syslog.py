"""
Log Shield Agent - Syslog Encoding

Records are single lines:

    <13>2024-05-01T12:00:00Z mobile-device LogShield[1000]: [APP_EVENT] message

The message is not escaped; the collector has to tolerate pipes and other
delimiters inside it.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

PRIORITY = 13  # facility user, severity notice
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
RETRY_PREFIX = "RETRY: "

_RECORD_RE = re.compile(
    r"^<(?P<priority>\d+)>(?P<timestamp>\S+) (?P<device_tag>\S+) "
    r"(?P<agent_tag>[^\s\[]+)\[(?P<pid>\d+)\]: \[(?P<event_type>[^\]]*)\] (?P<message>.*)$",
    re.DOTALL,
)


@dataclass(frozen=True)
class SyslogRecord:
    """Fields recovered from an encoded record."""
    priority: int
    timestamp: str
    device_tag: str
    agent_tag: str
    pid: int
    event_type: str
    message: str

    @property
    def is_retry(self) -> bool:
        return self.message.startswith(RETRY_PREFIX)


def format_timestamp(now: Optional[datetime] = None) -> str:
    """UTC timestamp in the record format. Naive datetimes are taken as UTC."""
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


class SyslogEncoder:
    """Renders events into wire records."""

    def __init__(
        self,
        device_tag: str = "mobile-device",
        agent_tag: str = "LogShield",
        pid: int = 1000,
        priority: int = PRIORITY
    ):
        self.device_tag = device_tag
        self.agent_tag = agent_tag
        self.pid = pid
        self.priority = priority

    def encode(self, event_type: str, message: str, now: Optional[datetime] = None) -> bytes:
        header = f"<{self.priority}>{format_timestamp(now)} {self.device_tag} {self.agent_tag}[{self.pid}]:"
        return f"{header} [{event_type}] {message}".encode("utf-8")

    def encode_retry(self, event_type: str, message: str, now: Optional[datetime] = None) -> bytes:
        """Replay form of a record that failed earlier."""
        return self.encode(event_type, f"{RETRY_PREFIX}{message}", now)


def parse_record(record: Union[bytes, str]) -> SyslogRecord:
    """Split an encoded record back into its fields. Raises ValueError if malformed."""
    if isinstance(record, bytes):
        record = record.decode("utf-8")

    match = _RECORD_RE.match(record)
    if not match:
        raise ValueError(f"Not a syslog record: {record[:80]!r}")

    return SyslogRecord(
        priority=int(match.group("priority")),
        timestamp=match.group("timestamp"),
        device_tag=match.group("device_tag"),
        agent_tag=match.group("agent_tag"),
        pid=int(match.group("pid")),
        event_type=match.group("event_type"),
        message=match.group("message"),
    )
