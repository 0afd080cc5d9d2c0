"""
Log Shield Agent - Forwarding Package

Encodes events as syslog records and delivers them over UDP, keeping
failed records for later replay.
"""

from .config_resolver import ConfigResolver, ServerDestination, parse_destination
from .pipeline import DeliveryOutcome, ForwardingPipeline
from .retry_queue import RetryQueue
from .syslog import SyslogEncoder, parse_record
from .transport import UdpTransport

__all__ = [
    "ConfigResolver",
    "ServerDestination",
    "parse_destination",
    "DeliveryOutcome",
    "ForwardingPipeline",
    "RetryQueue",
    "SyslogEncoder",
    "parse_record",
    "UdpTransport",
]
