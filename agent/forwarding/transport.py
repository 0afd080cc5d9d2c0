"""
Log Shield Agent - UDP Transport

One datagram per record on a fresh, unconnected socket. No acknowledgement
and no retransmission; every failure is reported as False.
"""

import asyncio
import socket

import structlog

from .config_resolver import ServerDestination

logger = structlog.get_logger(__name__)


class UdpTransport:
    """Fire-and-forget datagram sender."""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    async def send(self, destination: ServerDestination, payload: bytes) -> bool:
        """Send one datagram. Returns False on resolve, socket or timeout errors."""
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._send_blocking, destination, payload),
                timeout=self.timeout
            )
            return True
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.warning("UDP send timed out", destination=str(destination), timeout=self.timeout)
        except Exception as e:
            logger.warning("UDP send failed", destination=str(destination), error=str(e))
        return False

    def _send_blocking(self, destination: ServerDestination, payload: bytes) -> None:
        family, socktype, proto, _, address = socket.getaddrinfo(
            destination.host, destination.port, type=socket.SOCK_DGRAM
        )[0]
        with socket.socket(family, socktype, proto) as sock:
            sock.settimeout(self.timeout)
            sock.sendto(payload, address)
