"""External tool bridge over WebSocket JSON-RPC.

Each call opens a connection, sends one request frame and reads frames
until one carries done=true:

    -> {"method": "call_tool", "params": {"name": "...", "arguments": {...}}, "id": "3"}
    <- {"id": "3", "result": {...}, "done": true}
    <- {"id": "3", "error": "unknown tool", "done": true}

Supported methods are list_tools and call_tool. Tools from list_tools are
described as {"name", "description", "parameters"} objects.
"""

import itertools
import json
import logging
from typing import Any

import websockets
import websockets.exceptions

from agent_runtime.schemas.prompt import ToolSpec, function_tool

logger = logging.getLogger(__name__)


class BridgeError(Exception):
    """The bridge was unreachable or answered with an error frame."""


class WebSocketToolBridge:
    """ExternalToolBridge backed by a JSON-RPC WebSocket server."""

    def __init__(self, uri: str, open_timeout: float = 10.0):
        self._uri = uri
        self._open_timeout = open_timeout
        self._ids = itertools.count(1)

    async def list_tools(self) -> list[ToolSpec]:
        result = await self._request("list_tools", {})
        tools = result.get("tools", []) if isinstance(result, dict) else result
        specs: list[ToolSpec] = []
        for tool in tools or []:
            if not isinstance(tool, dict) or not tool.get("name"):
                logger.warning("Skipping malformed bridge tool: %r", tool)
                continue
            specs.append(
                function_tool(
                    tool["name"],
                    tool.get("description", ""),
                    parameters=tool.get("parameters") or None,
                    strict=bool(tool.get("strict", False)),
                )
            )
        return specs

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        return await self._request("call_tool", {"name": name, "arguments": arguments})

    async def _request(self, method: str, params: dict[str, Any]) -> Any:
        request_id = str(next(self._ids))
        frame = json.dumps({"method": method, "params": params, "id": request_id})
        try:
            async with websockets.connect(self._uri, open_timeout=self._open_timeout) as ws:
                await ws.send(frame)
                async for raw_frame in ws:
                    reply = json.loads(raw_frame)
                    if reply.get("error"):
                        raise BridgeError(f"{method} failed: {reply['error']}")
                    if reply.get("done", False):
                        return reply.get("result")
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            raise BridgeError(f"Tool bridge at {self._uri} unavailable: {exc}") from exc
        raise BridgeError(f"{method} closed before a done frame")
