"""Decoder for Responses API Server-Sent-Event frames.

Each `data:` line of the response body is a JSON envelope:

    {"type": "response.output_text.delta", "delta": "Hel"}
    {"type": "response.output_item.done", "item": {...}}
    {"type": "response.completed", "response": {"id": "...", "usage": {...}}}

Classification rules:
- Malformed frames (empty, non-JSON, non-object) decode to None and are
  skipped by the caller. They never fail the stream.
- Frame kinds on the ignore list and unknown kinds produce no events.
  Unknown kinds are logged so new benign server events don't break us.
- response.failed always raises ResponseFailedError. An explicit failure
  signal must never be silently dropped.
- response.completed is returned like any other event. Holding it until
  the transport closes is the streaming client's job.
"""

import json
import logging
import re
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel

from agent_runtime.errors import ResponseFailedError
from agent_runtime.schemas.events import (
    CompletedEvent,
    CreatedEvent,
    OutputItemDoneEvent,
    OutputTextDeltaEvent,
    ReasoningContentDeltaEvent,
    ReasoningSummaryDeltaEvent,
    ReasoningSummaryPartAddedEvent,
    ResponseEvent,
    WebSearchCallBeginEvent,
)
from agent_runtime.schemas.usage import TokenUsage

logger = logging.getLogger(__name__)

# "Please try again in 1.5s." / "... in 250ms."
_RETRY_AFTER_PATTERN = re.compile(r"in (\d+(?:\.\d+)?)\s*(ms|s)\b")

# Progress / acknowledgement frames that carry nothing we act on.
IGNORED_FRAME_TYPES: frozenset[str] = frozenset(
    {
        "response.content_part.done",
        "response.function_call_arguments.delta",
        "response.custom_tool_call_input.delta",
        "response.custom_tool_call_input.done",
        "response.in_progress",
        "response.output_text.done",
        "response.reasoning_summary_text.done",
    }
)


class SseFrame(BaseModel):
    """Envelope of one decoded `data:` payload."""

    type: str = ""
    response: dict[str, Any] | None = None
    item: dict[str, Any] | None = None
    delta: str | None = None


def parse_retry_after(message: str | None) -> float | None:
    """Extract a retry hint in milliseconds from an error message, if any."""
    if not message:
        return None
    match = _RETRY_AFTER_PATTERN.search(message)
    if match is None:
        return None
    value = float(match.group(1))
    if match.group(2) == "s":
        return value * 1000
    return value


class SSEEventParser:
    """Turns raw `data:` payloads into ResponseEvents."""

    def decode(self, raw: str) -> SseFrame | None:
        """Parse one payload into an envelope; None if it is not a JSON object."""
        if not raw:
            return None
        text = raw.strip()
        if not text:
            return None
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed SSE frame: %s", text[:100])
            return None
        if not isinstance(parsed, dict):
            logger.debug("Skipping non-object SSE frame: %s", text[:100])
            return None

        delta = parsed.get("delta")
        response = parsed.get("response")
        item = parsed.get("item")
        return SseFrame(
            type=str(parsed.get("type") or ""),
            response=response if isinstance(response, dict) else None,
            item=item if isinstance(item, dict) else None,
            delta=delta if isinstance(delta, str) else None,
        )

    def classify(self, frame: SseFrame) -> list[ResponseEvent]:
        """Map an envelope to zero or one events.

        Raises:
            ResponseFailedError: for response.failed frames.
        """
        frame_type = frame.type

        if frame_type in IGNORED_FRAME_TYPES:
            return []

        if frame_type == "response.created":
            return [CreatedEvent()]

        if frame_type == "response.output_item.done":
            if frame.item is None:
                return []
            return [OutputItemDoneEvent(item=frame.item)]

        if frame_type == "response.output_text.delta":
            return [OutputTextDeltaEvent(delta=frame.delta)] if frame.delta else []

        if frame_type == "response.reasoning_summary_text.delta":
            return [ReasoningSummaryDeltaEvent(delta=frame.delta)] if frame.delta else []

        if frame_type == "response.reasoning_text.delta":
            return [ReasoningContentDeltaEvent(delta=frame.delta)] if frame.delta else []

        if frame_type == "response.reasoning_summary_part.added":
            return [ReasoningSummaryPartAddedEvent()]

        if frame_type == "response.output_item.added":
            if frame.item is not None and frame.item.get("type") == "web_search_call":
                return [WebSearchCallBeginEvent(call_id=str(frame.item.get("id") or ""))]
            return []

        if frame_type == "response.completed":
            return [self._completed_event(frame.response)]

        if frame_type == "response.failed":
            raise self._failure(frame.response)

        logger.debug("Ignoring unknown SSE event type: %s", frame_type)
        return []

    def process_batch(self, raw_frames: Iterable[str]) -> list[ResponseEvent]:
        """Decode and classify several payloads, skipping malformed ones."""
        events: list[ResponseEvent] = []
        for raw in raw_frames:
            frame = self.decode(raw)
            if frame is not None:
                events.extend(self.classify(frame))
        return events

    @staticmethod
    def _completed_event(response: dict[str, Any] | None) -> CompletedEvent:
        response = response or {}
        usage = response.get("usage")
        return CompletedEvent(
            response_id=str(response.get("id") or ""),
            token_usage=TokenUsage.from_api(usage) if isinstance(usage, dict) else None,
        )

    @staticmethod
    def _failure(response: dict[str, Any] | None) -> ResponseFailedError:
        error = (response or {}).get("error")
        if not isinstance(error, dict):
            return ResponseFailedError("Response failed")
        message = error.get("message") or "Response failed"
        return ResponseFailedError(
            message,
            code=error.get("code"),
            retry_after_ms=parse_retry_after(message),
        )
