"""
Log Shield Agent - Host Bridge Socket

JSON-RPC 2.0 over a Unix domain socket. Each message is a 4-byte big-endian
length followed by a UTF-8 JSON body. The host UI uses it to report events,
set the destination and pull status summaries.
"""

import asyncio
import inspect
import json
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

MAX_MESSAGE_SIZE = 1024 * 1024


class RPCError(Exception):
    """JSON-RPC error raised by handlers and by SocketClient.call."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


Handler = Callable[[str, Dict[str, Any]], Awaitable[Any]]


def check_params(func: Callable, params: Dict[str, Any]) -> None:
    """Raise INVALID_PARAMS unless params bind to func's keyword arguments."""
    try:
        inspect.signature(func).bind(**params)
    except TypeError as e:
        raise RPCError(INVALID_PARAMS, f"Invalid params: {e}")


class SocketServer:
    """Unix domain socket server dispatching requests to a handler."""

    def __init__(
        self,
        socket_path: str,
        handler: Handler,
        permissions: str = "0660",
        group: Optional[str] = None,
        max_message_size: int = MAX_MESSAGE_SIZE
    ):
        self.socket_path = socket_path
        self.handler = handler
        self.permissions = int(permissions, 8)
        self.group = group
        self.max_message_size = max_message_size

        self._server: Optional[asyncio.AbstractServer] = None
        self._is_running = False

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self) -> None:
        Path(self.socket_path).parent.mkdir(parents=True, exist_ok=True)

        # Stale socket from a previous run
        if os.path.exists(self.socket_path):
            os.unlink(self.socket_path)

        self._server = await asyncio.start_unix_server(self._handle_client, path=self.socket_path)

        if self.group:
            try:
                import grp
                gid = grp.getgrnam(self.group).gr_gid
                os.chown(self.socket_path, -1, gid)
            except (KeyError, OSError) as e:
                logger.warning("Failed to set socket group", group=self.group, error=str(e))

        os.chmod(self.socket_path, self.permissions)

        self._is_running = True
        logger.info("Bridge socket started", path=self.socket_path)

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if os.path.exists(self.socket_path):
            os.unlink(self.socket_path)

        self._is_running = False
        logger.info("Bridge socket stopped")

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                length = int.from_bytes(await reader.readexactly(4), byteorder="big")
                if length > self.max_message_size:
                    logger.warning("Bridge message too large", length=length)
                    break

                body = await reader.readexactly(length)
                try:
                    request = json.loads(body.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError) as e:
                    response = _error_response(None, PARSE_ERROR, f"Parse error: {e}")
                else:
                    response = await self._process_request(request)

                await _write_message(writer, response)

        except asyncio.IncompleteReadError:
            logger.debug("Bridge client disconnected")
        except Exception as e:
            logger.exception("Bridge client error", error=str(e))
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _process_request(self, request: Any) -> Dict[str, Any]:
        if not isinstance(request, dict):
            return _error_response(None, INVALID_REQUEST, "Invalid Request")

        request_id = request.get("id")
        method = request.get("method")
        params = request.get("params") or {}

        if not isinstance(method, str) or not method:
            return _error_response(request_id, INVALID_REQUEST, "Method must be a non-empty string")
        if not isinstance(params, dict):
            return _error_response(request_id, INVALID_PARAMS, "Params must be object")

        try:
            result = await self.handler(method, params)
        except RPCError as e:
            return _error_response(request_id, e.code, e.message)
        except Exception as e:
            logger.exception("Bridge handler error", method=method, error=str(e))
            return _error_response(request_id, INTERNAL_ERROR, f"Internal error: {e}")

        return {"jsonrpc": "2.0", "id": request_id, "result": result}


class SocketClient:
    """Client side of the bridge socket, used by the host UI and tests."""

    def __init__(self, socket_path: str):
        self.socket_path = socket_path
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._request_id = 0

    async def connect(self) -> None:
        self._reader, self._writer = await asyncio.open_unix_connection(self.socket_path)

    async def disconnect(self) -> None:
        if self._writer:
            self._writer.close()
            await self._writer.wait_closed()
        self._reader = None
        self._writer = None

    async def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Call a bridge method. Raises RPCError on an error response."""
        if not self._writer or not self._reader:
            await self.connect()

        self._request_id += 1
        await _write_message(self._writer, {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or {},
        })

        length = int.from_bytes(await self._reader.readexactly(4), byteorder="big")
        response = json.loads((await self._reader.readexactly(length)).decode("utf-8"))

        if "error" in response:
            error = response["error"]
            raise RPCError(error.get("code", INTERNAL_ERROR), error.get("message", "Unknown error"))
        return response.get("result")


async def _write_message(writer: asyncio.StreamWriter, message: Dict[str, Any]) -> None:
    body = json.dumps(message).encode("utf-8")
    writer.write(len(body).to_bytes(4, byteorder="big"))
    writer.write(body)
    await writer.drain()


def _error_response(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {"code": code, "message": message},
    }
