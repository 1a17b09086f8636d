"""Typed events decoded from the Responses API stream.

Each SSE frame from the server is classified into at most one of these
events by the SSE parser. Consumers (the turn executor) switch on `type`.
Exactly one CompletedEvent is produced per successful stream and it is
always the last event a consumer sees.
"""

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter

from agent_runtime.schemas.rate_limits import RateLimitSnapshot
from agent_runtime.schemas.usage import TokenUsage


class ResponseEventType(StrEnum):
    """The closed set of event kinds a stream can carry."""

    # Server acknowledged the request and started a response.
    CREATED = "created"

    # A message, reasoning block or tool invocation is final.
    OUTPUT_ITEM_DONE = "output_item_done"

    # Incremental assistant text.
    OUTPUT_TEXT_DELTA = "output_text_delta"

    # Incremental reasoning summary / raw reasoning text.
    REASONING_SUMMARY_DELTA = "reasoning_summary_delta"
    REASONING_CONTENT_DELTA = "reasoning_content_delta"

    # Boundary between two reasoning summary parts.
    REASONING_SUMMARY_PART_ADDED = "reasoning_summary_part_added"

    # The model started a hosted web search.
    WEB_SEARCH_CALL_BEGIN = "web_search_call_begin"

    # Terminal success, with final usage.
    COMPLETED = "completed"

    # Synthetic event built from response headers, emitted first.
    RATE_LIMITS = "rate_limits"


class CreatedEvent(BaseModel):
    type: Literal[ResponseEventType.CREATED] = ResponseEventType.CREATED


class OutputItemDoneEvent(BaseModel):
    type: Literal[ResponseEventType.OUTPUT_ITEM_DONE] = ResponseEventType.OUTPUT_ITEM_DONE
    item: dict[str, Any]


class OutputTextDeltaEvent(BaseModel):
    type: Literal[ResponseEventType.OUTPUT_TEXT_DELTA] = ResponseEventType.OUTPUT_TEXT_DELTA
    delta: str


class ReasoningSummaryDeltaEvent(BaseModel):
    type: Literal[ResponseEventType.REASONING_SUMMARY_DELTA] = (
        ResponseEventType.REASONING_SUMMARY_DELTA
    )
    delta: str


class ReasoningContentDeltaEvent(BaseModel):
    type: Literal[ResponseEventType.REASONING_CONTENT_DELTA] = (
        ResponseEventType.REASONING_CONTENT_DELTA
    )
    delta: str


class ReasoningSummaryPartAddedEvent(BaseModel):
    type: Literal[ResponseEventType.REASONING_SUMMARY_PART_ADDED] = (
        ResponseEventType.REASONING_SUMMARY_PART_ADDED
    )


class WebSearchCallBeginEvent(BaseModel):
    type: Literal[ResponseEventType.WEB_SEARCH_CALL_BEGIN] = (
        ResponseEventType.WEB_SEARCH_CALL_BEGIN
    )
    call_id: str


class CompletedEvent(BaseModel):
    type: Literal[ResponseEventType.COMPLETED] = ResponseEventType.COMPLETED
    response_id: str
    token_usage: TokenUsage | None = None


class RateLimitsEvent(BaseModel):
    type: Literal[ResponseEventType.RATE_LIMITS] = ResponseEventType.RATE_LIMITS
    snapshot: RateLimitSnapshot


ResponseEvent = Annotated[
    CreatedEvent
    | OutputItemDoneEvent
    | OutputTextDeltaEvent
    | ReasoningSummaryDeltaEvent
    | ReasoningContentDeltaEvent
    | ReasoningSummaryPartAddedEvent
    | WebSearchCallBeginEvent
    | CompletedEvent
    | RateLimitsEvent,
    Field(discriminator="type"),
]

# Validates plain dicts (e.g. recorded fixtures) into the right event class.
response_event_adapter: TypeAdapter[ResponseEvent] = TypeAdapter(ResponseEvent)
