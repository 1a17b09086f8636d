"""Tool registry, tool catalogue and the external bridge interface.

The catalogue offered to the model on every turn is assembled from:
- registered local tools, minus the disabled ones (unless all tools are enabled)
- update_plan, which is always offered
- web_search, when enabled
- tools exposed by an external bridge, when enabled and a bridge is attached
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from agent_runtime.schemas.prompt import FunctionToolSpec, ToolSpec, function_tool, tool_name

logger = logging.getLogger(__name__)

UPDATE_PLAN_TOOL = "update_plan"
WEB_SEARCH_TOOL = "web_search"

UPDATE_PLAN_SPEC = function_tool(
    UPDATE_PLAN_TOOL,
    "Update the current task plan",
    parameters={
        "type": "object",
        "properties": {
            "tasks": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "description": {"type": "string"},
                        "status": {
                            "type": "string",
                            "enum": ["pending", "in_progress", "completed"],
                        },
                    },
                    "required": ["id", "description", "status"],
                },
            },
        },
        "required": ["tasks"],
    },
)

WEB_SEARCH_SPEC = function_tool(
    WEB_SEARCH_TOOL,
    "Search the web for information",
    parameters={
        "type": "object",
        "properties": {"query": {"type": "string", "description": "Search query"}},
        "required": ["query"],
    },
)

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any] | Any]


class ToolsConfig(BaseModel):
    """Which tools a turn offers to the model."""

    disabled: list[str] = Field(default_factory=list)
    enable_all_tools: bool = False
    web_search: bool = False
    bridge_tools: bool = False

    def web_search_enabled(self) -> bool:
        return self.enable_all_tools or self.web_search

    def bridge_tools_enabled(self) -> bool:
        return self.enable_all_tools or self.bridge_tools


class ToolError(BaseModel):
    message: str
    code: str = "execution_error"


class ToolResponse(BaseModel):
    """Outcome of one tool execution. Exactly one of data/error is meaningful."""

    success: bool
    data: Any = None
    error: ToolError | None = None


@runtime_checkable
class ExternalToolBridge(Protocol):
    """Tools served by another process."""

    async def list_tools(self) -> list[ToolSpec]: ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any: ...


class ToolRegistry:
    """Locally implemented tools, keyed by the name the model uses."""

    def __init__(self) -> None:
        self._tools: dict[str, tuple[ToolSpec, ToolHandler]] = {}

    def register(self, spec: ToolSpec, handler: ToolHandler) -> None:
        name = tool_name(spec)
        if name in self._tools:
            raise ValueError(f"Tool already registered: {name}")
        self._tools[name] = (spec, handler)

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def list_tools(self) -> list[ToolSpec]:
        return [spec for spec, _ in self._tools.values()]

    def get_tool(self, name: str) -> ToolSpec | None:
        entry = self._tools.get(name)
        return entry[0] if entry is not None else None

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResponse:
        """Run a tool. Handler exceptions are returned as a failed response."""
        entry = self._tools.get(name)
        if entry is None:
            return ToolResponse(
                success=False,
                error=ToolError(message=f"Tool '{name}' not found", code="not_found"),
            )
        _, handler = entry
        try:
            result = handler(arguments)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.exception("Tool %s failed", name)
            return ToolResponse(success=False, error=ToolError(message=str(exc) or type(exc).__name__))
        return ToolResponse(success=True, data=result)


def _as_function(spec: ToolSpec) -> ToolSpec:
    """Bridge tools are always offered as non-strict functions."""
    if isinstance(spec, FunctionToolSpec):
        return spec
    return function_tool(tool_name(spec), f"External tool {tool_name(spec)}")


async def build_catalogue(
    registry: ToolRegistry,
    config: ToolsConfig,
    bridge: ExternalToolBridge | None = None,
) -> list[ToolSpec]:
    """Tools to offer the model for one turn, in a stable order."""
    tools: list[ToolSpec] = []
    disabled = set() if config.enable_all_tools else set(config.disabled)
    for spec in registry.list_tools():
        if tool_name(spec) not in disabled:
            tools.append(spec)

    if config.web_search_enabled():
        tools.append(WEB_SEARCH_SPEC)

    tools.append(UPDATE_PLAN_SPEC)

    if config.bridge_tools_enabled() and isinstance(bridge, ExternalToolBridge):
        tools.extend(_as_function(spec) for spec in await bridge.list_tools())

    return tools
