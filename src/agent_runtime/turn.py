"""Turn executor: one prompt, one consumed stream, tool calls, retries.

A turn moves through PENDING -> STREAMING and then ends in COMPLETED,
FAILED or CANCELLED. A retryable failure passes through RETRYING and
starts a fresh stream. Retries never overlap. Every attempt re-sends the
caller's input after repairing unpaired function calls, so the provider
always sees each function_call matched by exactly one output.

Tool failures never fail the turn: they come back to the model as an
"Error: ..." output. Only stream and HTTP failures do.
"""

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, Protocol

from pydantic import BaseModel, Field

from agent_runtime.backoff import RetryConfig, RetryState, compute_delay_ms
from agent_runtime.errors import (
    ErrorKind,
    ModelClientError,
    StreamError,
    StreamErrorCode,
    is_turn_fatal,
)
from agent_runtime.event_mapping import map_response_item
from agent_runtime.schemas.events import ResponseEvent, ResponseEventType
from agent_runtime.schemas.notifications import Notification, NotificationSink, NotificationType
from agent_runtime.schemas.prompt import Prompt, ToolSpec
from agent_runtime.schemas.rate_limits import RateLimitSnapshot
from agent_runtime.schemas.usage import TokenUsage, TokenUsageInfo
from agent_runtime.stream import ResponseStream
from agent_runtime.tools import (
    UPDATE_PLAN_TOOL,
    WEB_SEARCH_TOOL,
    ExternalToolBridge,
    ToolRegistry,
    ToolsConfig,
    build_catalogue,
)

logger = logging.getLogger(__name__)

WebSearchHandler = Callable[[str], Awaitable[dict[str, Any]]]
ItemMapper = Callable[[dict[str, Any], bool], list[Notification]]


class TurnState(StrEnum):
    PENDING = "pending"
    STREAMING = "streaming"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TurnConfig(BaseModel):
    """Whole-turn retry curve and display options."""

    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: float = Field(default=1000, ge=0)
    max_delay_ms: float = Field(default=30000, ge=0)
    backoff_multiplier: float = Field(default=2, ge=1)
    jitter_percent: float = Field(default=0.1, ge=0)
    show_raw_reasoning: bool = False

    @classmethod
    def from_retry_config(cls, retry: RetryConfig, **overrides: Any) -> "TurnConfig":
        return cls(**retry.model_dump(), **overrides)

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            backoff_multiplier=self.backoff_multiplier,
            jitter_percent=self.jitter_percent,
        )


class ProcessedResponseItem(BaseModel):
    """A finished output item and the input item it produced, if any."""

    item: dict[str, Any]
    response: dict[str, Any] | None = None


class TurnResult(BaseModel):
    processed_items: list[ProcessedResponseItem] = Field(default_factory=list)
    token_usage: TokenUsage | None = None
    response_id: str = ""

    def response_items(self) -> list[dict[str, Any]]:
        """Tool outputs to send back to the model on the next turn."""
        return [p.response for p in self.processed_items if p.response is not None]


class StreamingModelClient(Protocol):
    async def stream(
        self, prompt: Prompt, cancel_event: asyncio.Event | None = None
    ) -> ResponseStream: ...

    def model_context_window(self) -> int | None: ...

    def auto_compact_token_limit(self) -> int | None: ...


class ToolDispatchError(Exception):
    """A tool call could not be carried out. Reported to the model, never raised out of a turn."""


def repair_missing_call_outputs(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Prepend an "aborted" output for every function_call without one."""
    answered = {
        item.get("call_id")
        for item in items
        if item.get("type") == "function_call_output" and item.get("call_id")
    }
    missing: list[str] = []
    for item in items:
        call_id = item.get("call_id")
        if item.get("type") == "function_call" and call_id and call_id not in answered:
            if call_id not in missing:
                missing.append(call_id)
    if not missing:
        return list(items)
    synthetic = [
        {"type": "function_call_output", "call_id": call_id, "output": "aborted"}
        for call_id in missing
    ]
    return synthetic + list(items)


class TurnExecutor:
    """Runs turns for one conversation against a streaming model client."""

    def __init__(
        self,
        client: StreamingModelClient,
        registry: ToolRegistry | None = None,
        tools_config: ToolsConfig | None = None,
        bridge: ExternalToolBridge | None = None,
        sink: NotificationSink | None = None,
        config: TurnConfig | None = None,
        base_instructions_override: str | None = None,
        user_instructions: str | None = None,
        output_schema: dict[str, Any] | None = None,
        web_search: WebSearchHandler | None = None,
        item_mapper: ItemMapper = map_response_item,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self._registry = registry or ToolRegistry()
        self._tools_config = tools_config or ToolsConfig()
        self._bridge = bridge
        self._sink = sink
        self._config = config or TurnConfig()
        self._base_instructions_override = base_instructions_override
        self._user_instructions = user_instructions
        self._output_schema = output_schema
        self._web_search = web_search
        self._item_mapper = item_mapper
        self._sleep = sleep

        self._cancel_event = asyncio.Event()
        self._state = TurnState.PENDING
        self.token_usage_info = TokenUsageInfo(
            model_context_window=client.model_context_window(),
            auto_compact_token_limit=client.auto_compact_token_limit(),
        )
        self.rate_limits: RateLimitSnapshot | None = None
        # Hosted searches already announced by a web_search_call begin event.
        self._announced_searches: set[str] = set()

    @property
    def state(self) -> TurnState:
        return self._state

    def cancel(self) -> None:
        """Stop the running turn. Observed by the body reader and the event loop."""
        self._cancel_event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # -----------------------------------------------------------------------
    # Turn loop
    # -----------------------------------------------------------------------

    async def run_turn(self, input_items: list[dict[str, Any]]) -> TurnResult:
        """Run one turn, retrying transient failures.

        Raises:
            ModelClientError: the terminal failure once retries are exhausted,
                or immediately for cancelled, authentication, usage-limit,
                validation and client errors.
        """
        self._cancel_event.clear()
        self._state = TurnState.PENDING
        tools = await build_catalogue(self._registry, self._tools_config, self._bridge)
        retry_config = self._config.retry_config()
        retry_state = RetryState()

        while True:
            prompt = self._build_prompt(input_items, tools)
            self._state = TurnState.STREAMING
            try:
                result = await self._try_run(prompt)
            except ModelClientError as exc:
                if self.is_cancelled or exc.kind is ErrorKind.CANCELLED:
                    self._state = TurnState.CANCELLED
                    await self._notify_error(exc)
                    raise
                if is_turn_fatal(exc) or retry_state.attempt >= retry_config.max_retries:
                    self._state = TurnState.FAILED
                    await self._notify_error(exc)
                    raise

                delay_ms = compute_delay_ms(retry_state.attempt, retry_config, exc.retry_after_ms)
                retry_state.record_failure(exc, delay_ms)
                self._state = TurnState.RETRYING
                logger.warning(
                    "Turn attempt failed (%s), retrying %d/%d in %.0fms",
                    exc.message,
                    retry_state.attempt,
                    retry_config.max_retries,
                    delay_ms,
                )
                await self._notify(
                    NotificationType.STREAM_ERROR,
                    error=f"Stream error: {exc.message}; retrying "
                    f"{retry_state.attempt}/{retry_config.max_retries} in {delay_ms:.0f}ms",
                    retrying=True,
                    attempt=retry_state.attempt,
                    delay_ms=delay_ms,
                )
                await self._sleep(delay_ms / 1000)
                continue

            self._state = TurnState.COMPLETED
            await self._record_usage(result.token_usage)
            return result

    def _build_prompt(self, input_items: list[dict[str, Any]], tools: list[ToolSpec]) -> Prompt:
        return Prompt(
            input=repair_missing_call_outputs(input_items),
            tools=tools,
            base_instructions_override=self._base_instructions_override,
            user_instructions=self._user_instructions,
            output_schema=self._output_schema,
        )

    async def _try_run(self, prompt: Prompt) -> TurnResult:
        """One attempt: acquire a stream and consume it to Completed."""
        stream = await self._client.stream(prompt, self._cancel_event)
        processed: list[ProcessedResponseItem] = []
        self._announced_searches.clear()

        async for event in stream:
            if self.is_cancelled:
                raise StreamError("Turn cancelled", StreamErrorCode.ABORTED)
            if event.type == ResponseEventType.COMPLETED:
                return TurnResult(
                    processed_items=processed,
                    token_usage=event.token_usage,
                    response_id=event.response_id,
                )
            if event.type == ResponseEventType.OUTPUT_ITEM_DONE:
                response = await self._handle_item(event.item)
                processed.append(ProcessedResponseItem(item=event.item, response=response))
                continue
            await self._forward(event)

        raise StreamError("stream closed before response.completed", StreamErrorCode.INCOMPLETE)

    async def _forward(self, event: ResponseEvent) -> None:
        """Pass a non-item event through to the host."""
        match event.type:
            case ResponseEventType.CREATED:
                await self._notify(NotificationType.RESPONSE_CREATED)
            case ResponseEventType.RATE_LIMITS:
                self.rate_limits = event.snapshot
                await self._notify(
                    NotificationType.RATE_LIMITS, snapshot=event.snapshot.model_dump()
                )
            case ResponseEventType.OUTPUT_TEXT_DELTA:
                await self._notify(NotificationType.AGENT_MESSAGE_DELTA, delta=event.delta)
            case ResponseEventType.REASONING_SUMMARY_DELTA:
                await self._notify(NotificationType.REASONING_SUMMARY_DELTA, delta=event.delta)
            case ResponseEventType.REASONING_CONTENT_DELTA:
                await self._notify(NotificationType.REASONING_CONTENT_DELTA, delta=event.delta)
            case ResponseEventType.REASONING_SUMMARY_PART_ADDED:
                await self._notify(NotificationType.REASONING_SUMMARY_PART_ADDED)
            case ResponseEventType.WEB_SEARCH_CALL_BEGIN:
                self._announced_searches.add(event.call_id)
                await self._notify(NotificationType.WEB_SEARCH_BEGIN, call_id=event.call_id)

    # -----------------------------------------------------------------------
    # Items and tools
    # -----------------------------------------------------------------------

    async def _handle_item(self, item: dict[str, Any]) -> dict[str, Any] | None:
        """Act on a finished item. Returns the input item it produces, if any."""
        item_type = item.get("type")

        if item_type == "function_call":
            return await self._dispatch_tool(
                item.get("name", ""), item.get("arguments"), item.get("call_id", "")
            )

        if item_type == "web_search_call":
            action = item.get("action") or {}
            if action.get("type") == "search":
                # Runs here and reports its own begin/end pair.
                call_id = item.get("call_id") or item.get("id") or ""
                try:
                    result = await self._run_web_search(action.get("query", ""), call_id)
                except Exception as exc:
                    logger.warning("Web search failed: %s", exc)
                    return _call_output(call_id, f"Error: {exc}")
                return _call_output(call_id, json.dumps(result))

        if item_type in ("message", "reasoning", "web_search_call"):
            for notification in self._item_mapper(item, self._config.show_raw_reasoning):
                await self._emit(notification)

        return None

    async def _dispatch_tool(self, name: str, raw_arguments: Any, call_id: str) -> dict[str, Any]:
        await self._notify(
            NotificationType.TOOL_CALL_BEGIN,
            call_id=call_id,
            tool_name=name,
            arguments=raw_arguments,
        )
        try:
            arguments = _parse_arguments(raw_arguments)
            result = await self._execute_tool(name, arguments)
        except Exception as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            await self._notify(
                NotificationType.TOOL_CALL_END,
                call_id=call_id,
                tool_name=name,
                success=False,
                error=str(exc),
            )
            return _call_output(call_id, f"Error: {exc}")

        await self._notify(
            NotificationType.TOOL_CALL_END,
            call_id=call_id,
            tool_name=name,
            success=True,
            error=None,
        )
        return _call_output(call_id, json.dumps(result))

    async def _execute_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        if name == WEB_SEARCH_TOOL:
            return await self._run_web_search(arguments.get("query", ""))

        if name == UPDATE_PLAN_TOOL:
            tasks = arguments.get("tasks", [])
            await self._notify(NotificationType.PLAN_UPDATE, tasks=tasks)
            return {"success": True, "tasks": tasks}

        if self._registry.get_tool(name) is not None:
            response = await self._registry.execute(name, arguments)
            if not response.success:
                message = response.error.message if response.error else "Tool execution failed"
                raise ToolDispatchError(message)
            return response.data

        if self._tools_config.bridge_tools_enabled() and isinstance(
            self._bridge, ExternalToolBridge
        ):
            return await self._bridge.call_tool(name, arguments)

        raise ToolDispatchError(f"Tool '{name}' not available")

    async def _run_web_search(self, query: str, call_id: str | None = None) -> dict[str, Any]:
        details: dict[str, Any] = {"query": query}
        if call_id is not None:
            details = {"call_id": call_id, **details}
        if call_id is None or call_id not in self._announced_searches:
            await self._notify(NotificationType.WEB_SEARCH_BEGIN, **details)
        if self._web_search is not None:
            result = await self._web_search(query)
        else:
            result = {"query": query, "results": []}
        await self._notify(
            NotificationType.WEB_SEARCH_END,
            **details,
            results_count=len(result.get("results", [])),
        )
        return result

    # -----------------------------------------------------------------------
    # Notifications
    # -----------------------------------------------------------------------

    async def _record_usage(self, usage: TokenUsage | None) -> None:
        if usage is not None:
            self.token_usage_info = self.token_usage_info.update(usage)
        await self._notify(
            NotificationType.TOKEN_COUNT,
            info=self.token_usage_info.model_dump(),
            rate_limits=self.rate_limits.model_dump() if self.rate_limits else None,
        )

    async def _notify_error(self, exc: ModelClientError) -> None:
        await self._notify(NotificationType.ERROR, message=exc.message, kind=exc.kind.value)

    async def _notify(self, notification_type: NotificationType, **data: Any) -> None:
        await self._emit(Notification(type=notification_type, data=data))

    async def _emit(self, notification: Notification) -> None:
        if self._sink is None:
            return
        result = self._sink(notification)
        if inspect.isawaitable(result):
            await result


def _parse_arguments(raw: Any) -> dict[str, Any]:
    """Tool arguments arrive as a JSON string; an empty string means no arguments."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise ToolDispatchError(f"Failed to parse tool parameters: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ToolDispatchError("Tool parameters must be a JSON object")
    return parsed


def _call_output(call_id: str, output: str) -> dict[str, Any]:
    return {"type": "function_call_output", "call_id": call_id, "output": output}
