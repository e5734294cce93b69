"""JSON-RPC client for a tool server reached over a ``MessageChannel``.

Lifecycle::

    disconnected --connect()--> connecting --handshake ok--> ready
    connecting --handshake failure / process error--> disconnected
    ready --disconnect() or process exit--> disconnected

Every request gets its own id and deadline.  When the connection goes away
all pending requests are failed with ``ProviderConnectionError`` so nothing
waits forever.
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import json
import logging
from typing import Any, Callable, Sequence

from trainsync.wearables.errors import (
    ProtocolError,
    ProviderConnectionError,
    RequestTimeoutError,
    ToolError,
)
from trainsync.wearables.mcp.channel import MessageChannel

logger = logging.getLogger("trainsync.wearables.mcp.client")

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"
DEFAULT_REQUEST_TIMEOUT_S = 30.0

ChannelFactory = Callable[..., MessageChannel]


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"


class MCPClient:
    """Request/response correlation and handshake over a worker process.

    Usage::

        client = MCPClient(["garmin-mcp"], env={"GARMIN_EMAIL": "..."})
        await client.connect()
        activities = await client.call_tool("list_activities")
        await client.disconnect()
    """

    def __init__(
        self,
        command: Sequence[str],
        env: dict[str, str] | None = None,
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
        client_name: str = "trainsync-garmin-client",
        client_version: str = "0.1.0",
        channel_factory: ChannelFactory | None = None,
    ) -> None:
        self._command = list(command)
        self._env = env
        self._request_timeout = request_timeout
        self._client_info = {"name": client_name, "version": client_version}
        self._channel_factory = channel_factory or MessageChannel
        self._channel: MessageChannel | None = None
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._state = ConnectionState.DISCONNECTED
        self._handshake: asyncio.Task | None = None
        self.server_info: dict[str, Any] = {}

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_connected(self) -> bool:
        return self._state is ConnectionState.READY

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Spawn the worker and run the initialize handshake.

        No-op when already ready.  Concurrent callers share one handshake.

        Raises:
            ProviderConnectionError: If spawning or the handshake fails.
        """
        if self._state is ConnectionState.READY:
            logger.debug("Already connected to %s", self._command[0])
            return
        if self._handshake is None:
            self._handshake = asyncio.create_task(self._open())
        handshake = self._handshake
        try:
            await asyncio.shield(handshake)
        finally:
            if handshake.done() and self._handshake is handshake:
                self._handshake = None

    async def _open(self) -> None:
        logger.info("Starting tool server %s", self._command[0])
        self._state = ConnectionState.CONNECTING
        channel = self._channel_factory(self._command, self._env)
        channel.on_message(self._dispatch)
        channel.on_close(self._handle_close)
        self._channel = channel

        try:
            await channel.start()
            result = await self.invoke(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": self._client_info,
                },
            )
            await self.notify("notifications/initialized", {})
        except Exception as exc:
            logger.error("Tool server handshake failed: %s", exc)
            await self._teardown(ProviderConnectionError("Handshake failed"))
            if isinstance(exc, ProviderConnectionError):
                raise
            raise ProviderConnectionError(f"Handshake failed: {exc}") from exc

        self.server_info = (result or {}).get("serverInfo", {}) if isinstance(result, dict) else {}
        self._state = ConnectionState.READY
        logger.debug("Tool server initialized: %s", self.server_info)

    async def disconnect(self) -> None:
        """Stop the worker and fail every pending request."""
        if self._channel is None and self._state is ConnectionState.DISCONNECTED:
            return
        logger.info("Disconnecting from %s", self._command[0])
        await self._teardown(ProviderConnectionError("Connection closed"))

    async def __aenter__(self) -> "MCPClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    async def _teardown(self, reason: Exception) -> None:
        channel, self._channel = self._channel, None
        self._state = ConnectionState.DISCONNECTED
        self._reject_pending(reason)
        if channel is not None:
            await channel.close()

    def _handle_close(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.warning("Tool server channel closed: %s", exc)
        else:
            logger.info("Tool server channel closed")
        self._state = ConnectionState.DISCONNECTED
        self._reject_pending(ProviderConnectionError("Connection closed"))

    def _reject_pending(self, reason: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(reason)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def invoke(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and wait for its result.

        Raises:
            ProviderConnectionError: If not connected or the connection drops.
            RequestTimeoutError:     If no answer arrives within the deadline.
            ProtocolError:           If the worker answers with an error object.
        """
        channel = self._channel
        if channel is None or channel.closed:
            raise ProviderConnectionError("Not connected to tool server")

        request_id = next(self._ids)
        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await channel.send(_encode(message))
        except ProviderConnectionError:
            self._pending.pop(request_id, None)
            raise

        deadline = self._request_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(future, timeout=deadline)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(method, deadline) from None
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification (no id, no response)."""
        channel = self._channel
        if channel is None or channel.closed:
            raise ProviderConnectionError("Not connected to tool server")
        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
        if params is not None:
            message["params"] = params
        await channel.send(_encode(message))

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        """Invoke ``tools/call`` and unwrap the text-content envelope.

        The first text item is JSON-decoded when possible, otherwise
        returned as the raw string.  Results without a text envelope are
        returned unchanged.
        """
        if self._state is not ConnectionState.READY:
            raise ProviderConnectionError("Tool server client not initialized. Call connect() first.")

        result = await self.invoke("tools/call", {"name": name, "arguments": arguments or {}})
        text = _first_text(result)
        if isinstance(result, dict) and result.get("isError"):
            raise ToolError(text or f"Tool {name} failed")
        if text is None:
            return result
        try:
            return json.loads(text)
        except ValueError:
            return text

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------

    def _dispatch(self, message: dict[str, Any]) -> None:
        request_id = message.get("id")
        if request_id is None or ("result" not in message and "error" not in message):
            logger.debug("Tool server message: %s", message.get("method", "<no method>"))
            return

        future = self._pending.pop(request_id, None)
        if future is None:
            logger.debug("Dropping response for unknown request id %r", request_id)
            return
        if future.done():
            return

        error = message.get("error")
        if error:
            if isinstance(error, dict):
                future.set_exception(
                    ProtocolError(str(error.get("message", "Unknown error")), error.get("code"))
                )
            else:
                future.set_exception(ProtocolError(str(error)))
        else:
            future.set_result(message.get("result"))


def _encode(message: dict[str, Any]) -> bytes:
    return (json.dumps(message, separators=(",", ":")) + "\n").encode("utf-8")


def _first_text(result: Any) -> str | None:
    if not isinstance(result, dict):
        return None
    content = result.get("content")
    if not isinstance(content, list) or not content:
        return None
    first = content[0]
    if isinstance(first, dict) and first.get("type") == "text":
        return first.get("text", "")
    return None
