"""Notifications the turn executor sends to the host.

The host supplies a sink (sync or async callable) and receives one
Notification per observable step of a turn. The `type` field determines
which keys are present in `data`:

- response_created, reasoning_summary_part_added: {}
- rate_limits: snapshot
- agent_message_delta, reasoning_summary_delta, reasoning_content_delta: delta
- agent_message: message
- user_message: message, kind, images
- agent_reasoning, agent_reasoning_raw_content: content
- web_search_begin: call_id and/or query
- web_search_end: query and results_count, plus call_id for hosted searches
- tool_call_begin: call_id, tool_name, arguments
- tool_call_end: call_id, tool_name, success, error
- plan_update: tasks
- token_count: info (TokenUsageInfo), rate_limits
- stream_error: error, retrying, attempt, delay_ms
- error: message, kind
"""

from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class NotificationType(StrEnum):
    """Notification kinds emitted during a turn."""

    RESPONSE_CREATED = "response_created"
    RATE_LIMITS = "rate_limits"

    # Incremental output, forwarded as it arrives.
    AGENT_MESSAGE_DELTA = "agent_message_delta"
    REASONING_SUMMARY_DELTA = "reasoning_summary_delta"
    REASONING_CONTENT_DELTA = "reasoning_content_delta"
    REASONING_SUMMARY_PART_ADDED = "reasoning_summary_part_added"

    # Finished items, translated by the item mapper.
    AGENT_MESSAGE = "agent_message"
    USER_MESSAGE = "user_message"
    AGENT_REASONING = "agent_reasoning"
    AGENT_REASONING_RAW_CONTENT = "agent_reasoning_raw_content"

    WEB_SEARCH_BEGIN = "web_search_begin"
    WEB_SEARCH_END = "web_search_end"

    TOOL_CALL_BEGIN = "tool_call_begin"
    TOOL_CALL_END = "tool_call_end"
    PLAN_UPDATE = "plan_update"

    TOKEN_COUNT = "token_count"

    # Advisory: a transient failure is being retried.
    STREAM_ERROR = "stream_error"

    # Terminal: the turn failed.
    ERROR = "error"


class Notification(BaseModel):
    """A single notification sent to the host sink."""

    type: NotificationType
    data: dict[str, Any] = Field(default_factory=dict)


NotificationSink = Callable[[Notification], Awaitable[None] | None]
