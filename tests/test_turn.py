"""Tests for TurnExecutor: event handling, tool dispatch, retries, cancellation.

A FakeClient replaces the HTTP client. Each call to stream() consumes the
next scripted outcome: a list of events, a ready-made ResponseStream or an
exception to raise.
"""

import json

import httpx
import pytest

from agent_runtime.backoff import RetryConfig
from agent_runtime.client import ResponsesClient
from agent_runtime.errors import (
    ErrorKind,
    ModelClientError,
    ResponseFailedError,
    StreamError,
    StreamErrorCode,
)
from agent_runtime.schemas.events import (
    CompletedEvent,
    CreatedEvent,
    OutputItemDoneEvent,
    OutputTextDeltaEvent,
    RateLimitsEvent,
    ReasoningSummaryPartAddedEvent,
    WebSearchCallBeginEvent,
)
from agent_runtime.schemas.notifications import NotificationType
from agent_runtime.schemas.prompt import function_tool, tool_name
from agent_runtime.schemas.rate_limits import RateLimitSnapshot, RateLimitWindow
from agent_runtime.schemas.usage import TokenUsage
from agent_runtime.stream import ResponseStream
from agent_runtime.tools import ToolRegistry, ToolsConfig
from agent_runtime.turn import (
    TurnConfig,
    TurnExecutor,
    TurnState,
    repair_missing_call_outputs,
)

USER_INPUT = [{"type": "message", "role": "user", "content": [{"type": "input_text", "text": "hi"}]}]


def completed(response_id: str = "resp_1", total: int = 10) -> CompletedEvent:
    return CompletedEvent(response_id=response_id, token_usage=TokenUsage(total_tokens=total))


def function_call(name: str, arguments: dict | str, call_id: str = "call_1") -> OutputItemDoneEvent:
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return OutputItemDoneEvent(
        item={"type": "function_call", "name": name, "arguments": raw, "call_id": call_id}
    )


class FakeClient:
    """Scripted stand-in for ResponsesClient."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.prompts = []
        self.cancel_events = []

    async def stream(self, prompt, cancel_event=None):
        self.prompts.append(prompt)
        self.cancel_events.append(cancel_event)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(cancel_event)
        if isinstance(outcome, ResponseStream):
            return outcome
        return ResponseStream.from_events(outcome)

    def model_context_window(self):
        return 200000

    def auto_compact_token_limit(self):
        return 160000


class FakeBridge:
    def __init__(self):
        self.calls = []

    async def list_tools(self):
        return [function_tool("remote_fetch", "Fetch remotely")]

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        return {"fetched": arguments.get("url")}


def make_executor(client, collector, sleeper, **kwargs) -> TurnExecutor:
    kwargs.setdefault("config", TurnConfig(jitter_percent=0))
    return TurnExecutor(client, sink=collector, sleep=sleeper, **kwargs)


class TestRepairMissingCallOutputs:
    """Unpaired function calls get a synthetic aborted output up front."""

    def test_prepends_aborted_output(self):
        items = USER_INPUT + [{"type": "function_call", "call_id": "X", "name": "t", "arguments": "{}"}]
        repaired = repair_missing_call_outputs(items)
        assert repaired[0] == {"type": "function_call_output", "call_id": "X", "output": "aborted"}
        assert repaired[1:] == items

    def test_paired_calls_untouched(self):
        items = [
            {"type": "function_call", "call_id": "X"},
            {"type": "function_call_output", "call_id": "X", "output": "ok"},
        ]
        assert repair_missing_call_outputs(items) == items

    def test_each_missing_call_once(self):
        items = [
            {"type": "function_call", "call_id": "A"},
            {"type": "function_call", "call_id": "B"},
            {"type": "function_call", "call_id": "A"},
        ]
        repaired = repair_missing_call_outputs(items)
        assert [i["call_id"] for i in repaired[:2]] == ["A", "B"]
        assert repaired[2]["type"] == "function_call"


class TestSuccessfulTurn:
    """Event handling on the happy path."""

    @pytest.mark.asyncio
    async def test_notifications_and_result(self, collector, sleeper):
        snapshot = RateLimitSnapshot(primary=RateLimitWindow(used_percent=20))
        client = FakeClient(
            [
                RateLimitsEvent(snapshot=snapshot),
                CreatedEvent(),
                OutputTextDeltaEvent(delta="Hel"),
                ReasoningSummaryPartAddedEvent(),
                OutputItemDoneEvent(
                    item={
                        "type": "message",
                        "role": "assistant",
                        "content": [{"type": "output_text", "text": "Hello"}],
                    }
                ),
                completed("resp_9", total=42),
            ]
        )
        executor = make_executor(client, collector, sleeper)

        result = await executor.run_turn(USER_INPUT)

        assert result.response_id == "resp_9"
        assert result.token_usage.total_tokens == 42
        assert len(result.processed_items) == 1
        assert result.processed_items[0].response is None
        assert result.response_items() == []
        assert collector.types == [
            NotificationType.RATE_LIMITS,
            NotificationType.RESPONSE_CREATED,
            NotificationType.AGENT_MESSAGE_DELTA,
            NotificationType.REASONING_SUMMARY_PART_ADDED,
            NotificationType.AGENT_MESSAGE,
            NotificationType.TOKEN_COUNT,
        ]
        assert executor.state is TurnState.COMPLETED
        assert executor.rate_limits == snapshot

    @pytest.mark.asyncio
    async def test_usage_accumulates_across_turns(self, collector, sleeper):
        client = FakeClient([completed(total=10)], [completed(total=5)])
        executor = make_executor(client, collector, sleeper)

        await executor.run_turn(USER_INPUT)
        await executor.run_turn(USER_INPUT)

        info = executor.token_usage_info
        assert info.total_token_usage.total_tokens == 15
        assert info.last_token_usage.total_tokens == 5
        assert info.model_context_window == 200000
        assert info.auto_compact_token_limit == 160000
        token_count = collector.of_type(NotificationType.TOKEN_COUNT)[-1]
        assert token_count.data["info"]["total_token_usage"]["total_tokens"] == 15

    @pytest.mark.asyncio
    async def test_prompt_carries_tools_and_instructions(self, collector, sleeper):
        registry = ToolRegistry()
        registry.register(function_tool("read_page", "Read"), lambda args: "page")
        client = FakeClient([completed()])
        executor = make_executor(
            client,
            collector,
            sleeper,
            registry=registry,
            base_instructions_override="Be brief.",
            user_instructions="Use Python.",
        )

        await executor.run_turn(USER_INPUT)

        prompt = client.prompts[0]
        assert [tool_name(t) for t in prompt.tools] == ["read_page", "update_plan"]
        assert prompt.base_instructions_override == "Be brief."
        assert prompt.user_instructions == "Use Python."
        assert prompt.input == USER_INPUT

    @pytest.mark.asyncio
    async def test_async_sink(self, sleeper):
        received = []

        async def sink(notification):
            received.append(notification.type)

        executor = TurnExecutor(FakeClient([CreatedEvent(), completed()]), sink=sink, sleep=sleeper)
        await executor.run_turn(USER_INPUT)
        assert received == [NotificationType.RESPONSE_CREATED, NotificationType.TOKEN_COUNT]


class TestToolDispatch:
    """function_call items become function_call_output items."""

    @pytest.mark.asyncio
    async def test_registry_tool(self, collector, sleeper):
        registry = ToolRegistry()
        registry.register(function_tool("add", "Add"), lambda args: {"sum": args["a"] + args["b"]})
        client = FakeClient([function_call("add", {"a": 2, "b": 3}), completed()])
        executor = make_executor(client, collector, sleeper, registry=registry)

        result = await executor.run_turn(USER_INPUT)

        assert result.response_items() == [
            {"type": "function_call_output", "call_id": "call_1", "output": json.dumps({"sum": 5})}
        ]
        begin = collector.of_type(NotificationType.TOOL_CALL_BEGIN)[0]
        end = collector.of_type(NotificationType.TOOL_CALL_END)[0]
        assert begin.data["tool_name"] == "add"
        assert end.data["success"] is True

    @pytest.mark.asyncio
    async def test_tool_error_becomes_output(self, collector, sleeper):
        registry = ToolRegistry()

        def broken(args):
            raise RuntimeError("page not loaded")

        registry.register(function_tool("read_page", "Read"), broken)
        client = FakeClient([function_call("read_page", {}), completed()])
        executor = make_executor(client, collector, sleeper, registry=registry)

        result = await executor.run_turn(USER_INPUT)

        assert result.response_items()[0]["output"] == "Error: page not loaded"
        assert collector.of_type(NotificationType.TOOL_CALL_END)[0].data["success"] is False
        assert executor.state is TurnState.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_tool(self, collector, sleeper):
        client = FakeClient([function_call("teleport", {}), completed()])
        executor = make_executor(client, collector, sleeper)

        result = await executor.run_turn(USER_INPUT)

        assert result.response_items()[0]["output"] == "Error: Tool 'teleport' not available"

    @pytest.mark.asyncio
    async def test_bad_arguments(self, collector, sleeper):
        registry = ToolRegistry()
        registry.register(function_tool("read_page", "Read"), lambda args: "page")
        client = FakeClient([function_call("read_page", "{not json"), completed()])
        executor = make_executor(client, collector, sleeper, registry=registry)

        result = await executor.run_turn(USER_INPUT)

        assert result.response_items()[0]["output"].startswith("Error: Failed to parse tool parameters")

    @pytest.mark.asyncio
    async def test_update_plan(self, collector, sleeper):
        tasks = [{"id": "1", "description": "Write tests", "status": "in_progress"}]
        client = FakeClient([function_call("update_plan", {"tasks": tasks}), completed()])
        executor = make_executor(client, collector, sleeper)

        result = await executor.run_turn(USER_INPUT)

        assert collector.of_type(NotificationType.PLAN_UPDATE)[0].data == {"tasks": tasks}
        assert json.loads(result.response_items()[0]["output"]) == {"success": True, "tasks": tasks}

    @pytest.mark.asyncio
    async def test_web_search_tool(self, collector, sleeper):
        async def search(query):
            return {"query": query, "results": [{"title": "Python", "url": "https://python.org"}]}

        client = FakeClient([function_call("web_search", {"query": "python"}), completed()])
        executor = make_executor(
            client, collector, sleeper, tools_config=ToolsConfig(web_search=True), web_search=search
        )

        result = await executor.run_turn(USER_INPUT)

        output = json.loads(result.response_items()[0]["output"])
        assert output["results"][0]["url"] == "https://python.org"
        end = collector.of_type(NotificationType.WEB_SEARCH_END)[0]
        assert end.data == {"query": "python", "results_count": 1}

    @pytest.mark.asyncio
    async def test_bridge_tool_when_enabled(self, collector, sleeper):
        bridge = FakeBridge()
        client = FakeClient([function_call("remote_fetch", {"url": "https://x"}), completed()])
        executor = make_executor(
            client, collector, sleeper, bridge=bridge, tools_config=ToolsConfig(bridge_tools=True)
        )

        result = await executor.run_turn(USER_INPUT)

        assert bridge.calls == [("remote_fetch", {"url": "https://x"})]
        assert json.loads(result.response_items()[0]["output"]) == {"fetched": "https://x"}
        assert "remote_fetch" in [tool_name(t) for t in client.prompts[0].tools]

    @pytest.mark.asyncio
    async def test_bridge_tool_when_disabled(self, collector, sleeper):
        bridge = FakeBridge()
        client = FakeClient([function_call("remote_fetch", {}), completed()])
        executor = make_executor(client, collector, sleeper, bridge=bridge)

        result = await executor.run_turn(USER_INPUT)

        assert bridge.calls == []
        assert "not available" in result.response_items()[0]["output"]

    @pytest.mark.asyncio
    async def test_hosted_web_search_call_runs_inline(self, collector, sleeper):
        item = {
            "type": "web_search_call",
            "id": "ws_1",
            "action": {"type": "search", "query": "asyncio"},
        }
        client = FakeClient(
            [WebSearchCallBeginEvent(call_id="ws_1"), OutputItemDoneEvent(item=item), completed()]
        )
        executor = make_executor(client, collector, sleeper)

        result = await executor.run_turn(USER_INPUT)

        response = result.response_items()[0]
        assert response["call_id"] == "ws_1"
        assert json.loads(response["output"]) == {"query": "asyncio", "results": []}
        (begin,) = collector.of_type(NotificationType.WEB_SEARCH_BEGIN)
        assert begin.data == {"call_id": "ws_1"}
        (end,) = collector.of_type(NotificationType.WEB_SEARCH_END)
        assert end.data == {"call_id": "ws_1", "query": "asyncio", "results_count": 0}

    @pytest.mark.asyncio
    async def test_hosted_web_search_without_begin_event(self, collector, sleeper):
        item = {
            "type": "web_search_call",
            "id": "ws_2",
            "action": {"type": "search", "query": "httpx"},
        }
        client = FakeClient([OutputItemDoneEvent(item=item), completed()])
        executor = make_executor(client, collector, sleeper)

        await executor.run_turn(USER_INPUT)

        (begin,) = collector.of_type(NotificationType.WEB_SEARCH_BEGIN)
        assert begin.data == {"call_id": "ws_2", "query": "httpx"}
        assert len(collector.of_type(NotificationType.WEB_SEARCH_END)) == 1


class TestRetries:
    """Whole-turn retry policy."""

    @pytest.mark.asyncio
    async def test_retryable_failure_then_success(self, collector, sleeper):
        client = FakeClient(
            ResponseStream.from_error(ModelClientError("HTTP 503", ErrorKind.SERVER)),
            [completed()],
        )
        executor = make_executor(client, collector, sleeper)

        result = await executor.run_turn(USER_INPUT)

        assert result.response_id == "resp_1"
        assert len(client.prompts) == 2
        assert sleeper.calls == [1.0]
        (advisory,) = collector.of_type(NotificationType.STREAM_ERROR)
        assert advisory.data["retrying"] is True
        assert advisory.data["attempt"] == 1
        assert "HTTP 503" in advisory.data["error"]
        assert collector.of_type(NotificationType.ERROR) == []

    @pytest.mark.asyncio
    async def test_read_error_mid_body_is_retried(self, collector, sleeper):
        async def broken_body():
            yield b'data: {"type": "response.created"}\n\n'
            raise httpx.ReadError("Connection reset by peer")

        completed_body = (
            b'data: {"type": "response.completed", "response": {"id": "resp_2"}}\n\n'
        )
        responses = [
            httpx.Response(200, content=broken_body()),
            httpx.Response(200, content=completed_body),
        ]
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: responses.pop(0)))
        client = ResponsesClient(
            api_key="sk-test",
            model="gpt-5",
            http_client=http,
            retry_config=RetryConfig(jitter_percent=0),
            sleep=sleeper,
        )
        executor = make_executor(client, collector, sleeper)

        result = await executor.run_turn(USER_INPUT)

        assert result.response_id == "resp_2"
        (advisory,) = collector.of_type(NotificationType.STREAM_ERROR)
        assert "Network error: Connection reset by peer" in advisory.data["error"]
        assert sleeper.calls == [1.0]
        await client.aclose()
        await http.aclose()

    @pytest.mark.asyncio
    async def test_stream_closed_without_completed_is_retried(self, collector, sleeper):
        client = FakeClient([CreatedEvent()], [completed()])
        executor = make_executor(client, collector, sleeper)

        await executor.run_turn(USER_INPUT)

        assert len(client.prompts) == 2

    @pytest.mark.asyncio
    async def test_retry_hint_overrides_backoff(self, collector, sleeper):
        failure = ResponseFailedError("Rate limit reached", retry_after_ms=2500)
        client = FakeClient(ResponseStream.from_error(failure), [completed()])
        executor = make_executor(client, collector, sleeper)

        await executor.run_turn(USER_INPUT)

        assert sleeper.calls == [2.5]

    @pytest.mark.asyncio
    async def test_retry_repairs_unpaired_calls(self, collector, sleeper):
        history = USER_INPUT + [
            {"type": "function_call", "call_id": "X", "name": "read_page", "arguments": "{}"}
        ]
        client = FakeClient(
            ResponseStream.from_error(ModelClientError("boom", ErrorKind.NETWORK)),
            [completed()],
        )
        executor = make_executor(client, collector, sleeper)

        await executor.run_turn(history)

        aborted = {"type": "function_call_output", "call_id": "X", "output": "aborted"}
        assert client.prompts[0].input[0] == aborted
        assert client.prompts[1].input[0] == aborted
        assert client.prompts[1].input[1:] == history

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_last_error(self, collector, sleeper):
        client = FakeClient(*[ModelClientError(f"fail {i}", ErrorKind.SERVER) for i in range(3)])
        executor = make_executor(client, collector, sleeper, config=TurnConfig(max_retries=2, jitter_percent=0))

        with pytest.raises(ModelClientError, match="fail 2"):
            await executor.run_turn(USER_INPUT)

        assert len(client.prompts) == 3
        assert sleeper.calls == [1.0, 2.0]
        assert executor.state is TurnState.FAILED
        (error,) = collector.of_type(NotificationType.ERROR)
        assert error.data == {"message": "fail 2", "kind": "server"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            ModelClientError("HTTP 401: bad key", ErrorKind.AUTHENTICATION, status_code=401),
            ResponseFailedError("You exceeded your quota", code="insufficient_quota"),
            ModelClientError("Prompt input must not be empty", ErrorKind.VALIDATION),
            ModelClientError("HTTP 400", ErrorKind.CLIENT, status_code=400),
        ],
    )
    async def test_fatal_errors_not_retried(self, collector, sleeper, error):
        client = FakeClient(error)
        executor = make_executor(client, collector, sleeper)

        with pytest.raises(ModelClientError):
            await executor.run_turn(USER_INPUT)

        assert len(client.prompts) == 1
        assert sleeper.calls == []
        assert collector.of_type(NotificationType.STREAM_ERROR) == []
        assert executor.state is TurnState.FAILED


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self, collector, sleeper):
        def live_stream(cancel_event):
            stream = ResponseStream(cancel_event=cancel_event)
            stream.push(CreatedEvent())
            stream.push(OutputTextDeltaEvent(delta="partial"))
            return stream

        running: dict[str, TurnExecutor] = {}

        def sink(notification):
            collector(notification)
            if notification.type == NotificationType.AGENT_MESSAGE_DELTA:
                running["executor"].cancel()

        client = FakeClient(live_stream)
        executor = make_executor(client, sink, sleeper)
        running["executor"] = executor

        with pytest.raises(StreamError) as exc_info:
            await executor.run_turn(USER_INPUT)

        assert exc_info.value.code is StreamErrorCode.ABORTED
        assert executor.state is TurnState.CANCELLED
        assert executor.is_cancelled
        assert len(client.prompts) == 1
        assert client.cancel_events[0].is_set()
        assert collector.of_type(NotificationType.ERROR)[0].data["kind"] == "cancelled"

    @pytest.mark.asyncio
    async def test_new_turn_clears_cancel(self, collector, sleeper):
        client = FakeClient([completed()])
        executor = make_executor(client, collector, sleeper)
        executor.cancel()

        result = await executor.run_turn(USER_INPUT)

        assert result.response_id == "resp_1"
        assert not executor.is_cancelled
