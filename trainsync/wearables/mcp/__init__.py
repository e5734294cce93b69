"""Worker-process transport: line-delimited JSON channel and JSON-RPC client."""

from trainsync.wearables.mcp.channel import LineDecoder, MessageChannel
from trainsync.wearables.mcp.client import ConnectionState, MCPClient

__all__ = [
    "LineDecoder",
    "MessageChannel",
    "ConnectionState",
    "MCPClient",
]
