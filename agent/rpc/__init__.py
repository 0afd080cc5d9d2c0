"""
Log Shield Agent - RPC Package

Unix socket bridge between the host UI and the agent.
"""

from .socket_server import RPCError, SocketClient, SocketServer, check_params

__all__ = ["RPCError", "SocketClient", "SocketServer", "check_params"]
