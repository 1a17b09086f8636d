"""Data types shared by the stream, client and turn executor."""

from agent_runtime.schemas.events import (
    CompletedEvent,
    CreatedEvent,
    OutputItemDoneEvent,
    OutputTextDeltaEvent,
    RateLimitsEvent,
    ReasoningContentDeltaEvent,
    ReasoningSummaryDeltaEvent,
    ReasoningSummaryPartAddedEvent,
    ResponseEvent,
    ResponseEventType,
    WebSearchCallBeginEvent,
)
from agent_runtime.schemas.notifications import Notification, NotificationSink, NotificationType
from agent_runtime.schemas.prompt import (
    CustomToolSpec,
    FunctionToolSpec,
    LocalShellToolSpec,
    ModelFamily,
    Prompt,
    ProviderInfo,
    ToolSpec,
    WebSearchToolSpec,
    function_tool,
    tool_name,
)
from agent_runtime.schemas.rate_limits import RateLimitSnapshot, RateLimitWindow
from agent_runtime.schemas.usage import TokenUsage, TokenUsageInfo

__all__ = [
    "CompletedEvent",
    "CreatedEvent",
    "CustomToolSpec",
    "FunctionToolSpec",
    "LocalShellToolSpec",
    "ModelFamily",
    "Notification",
    "NotificationSink",
    "NotificationType",
    "OutputItemDoneEvent",
    "OutputTextDeltaEvent",
    "Prompt",
    "ProviderInfo",
    "RateLimitSnapshot",
    "RateLimitWindow",
    "RateLimitsEvent",
    "ReasoningContentDeltaEvent",
    "ReasoningSummaryDeltaEvent",
    "ReasoningSummaryPartAddedEvent",
    "ResponseEvent",
    "ResponseEventType",
    "TokenUsage",
    "TokenUsageInfo",
    "ToolSpec",
    "WebSearchCallBeginEvent",
    "WebSearchToolSpec",
    "function_tool",
    "tool_name",
]
