"""Streaming client for the Responses API.

stream() validates the prompt, posts it with retries and, once the server
answers 2xx, returns a ResponseStream straight away. A background task then
reads the body, turns `data:` lines into events and pushes them into the
stream while the caller is already consuming.

Retry policy for acquiring the stream:
- 401 and every other 4xx except 429 fail on the first attempt.
- 429, 5xx and network errors are retried up to max_retries times with
  exponential backoff. A server wait hint (retry-after-ms, retry-after or a
  "try again in 1.5s" message) replaces the computed delay.
- Failures after the stream was handed out are not retried here. They
  reach the consumer through the stream and the turn executor decides.
"""

import asyncio
import json
import logging
import math
import re
import uuid
from collections.abc import Awaitable, Callable

import httpx

from agent_runtime.backoff import RetryConfig, compute_delay_ms
from agent_runtime.errors import (
    ErrorKind,
    ModelClientError,
    StreamError,
    StreamErrorCode,
    classify_status,
    from_transport_error,
)
from agent_runtime.limiter import RequestLimitConfig, RequestLimiter, RequestPriority
from agent_runtime.payload import build_payload
from agent_runtime.schemas.events import CompletedEvent, RateLimitsEvent
from agent_runtime.schemas.prompt import (
    ModelFamily,
    Prompt,
    ProviderInfo,
    ReasoningEffort,
    Verbosity,
)
from agent_runtime.schemas.rate_limits import RateLimitSnapshot
from agent_runtime.sse_parser import SSEEventParser, parse_retry_after
from agent_runtime.stream import ResponseStream, StreamConfig

logger = logging.getLogger(__name__)

# Known context windows, in tokens. Unknown models report None.
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    "gpt-4": 8192,
    "gpt-4-32k": 32768,
    "gpt-4-turbo": 128000,
    "gpt-4o": 128000,
    "gpt-5": 200000,
    "gpt-3.5-turbo": 4096,
    "gpt-3.5-turbo-16k": 16384,
}

# Share of the context window after which history should be compacted.
AUTO_COMPACT_RATIO = 0.8

_DONE_SENTINEL = "[DONE]"

# Rough tokens-per-word ratio for English text on OpenAI tokenizers.
_TOKENS_PER_WORD = 1.3
_PUNCTUATION = re.compile(r"[.!?;:,]")


class ResponsesClient:
    """Issues streaming Responses requests for one conversation."""

    def __init__(
        self,
        api_key: str | None,
        model: str,
        family: ModelFamily | None = None,
        provider: ProviderInfo | None = None,
        conversation_id: str | None = None,
        session_id: str | None = None,
        organization: str | None = None,
        retry_config: RetryConfig | None = None,
        stream_config: StreamConfig | None = None,
        reasoning_effort: ReasoningEffort | None = None,
        reasoning_summary: str | None = None,
        verbosity: Verbosity | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 300.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        request_limiter: RequestLimiter | None = None,
    ):
        self._api_key = api_key
        self._model = model
        self._family = family or ModelFamily(family=model)
        self._provider = provider or ProviderInfo()
        self._conversation_id = conversation_id or str(uuid.uuid4())
        self._session_id = session_id or self._conversation_id
        self._organization = organization
        self._reasoning_effort = reasoning_effort
        self._reasoning_summary = reasoning_summary
        self._verbosity = verbosity
        self._sleep = sleep
        self._parser = SSEEventParser()

        retry_config = retry_config or RetryConfig()
        if self._provider.request_max_retries is not None:
            retry_config = retry_config.model_copy(
                update={"max_retries": self._provider.request_max_retries}
            )
        self._retry_config = retry_config

        stream_config = stream_config or StreamConfig()
        if self._provider.stream_idle_timeout_ms is not None:
            stream_config = stream_config.model_copy(
                update={"idle_timeout_ms": self._provider.stream_idle_timeout_ms}
            )
        self._stream_config = stream_config

        if request_limiter is None:
            limit_config = RequestLimitConfig.from_provider(self._provider)
            if limit_config is not None:
                request_limiter = RequestLimiter(limit_config, sleep=sleep)
        self._limiter = request_limiter

        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        # Running body readers and the streams they feed. Also keeps the tasks
        # referenced so they are not garbage collected.
        self._pump_tasks: dict[asyncio.Task, ResponseStream] = {}

    # -----------------------------------------------------------------------
    # Model and reasoning settings
    # -----------------------------------------------------------------------

    @property
    def model(self) -> str:
        return self._model

    def set_model(self, model: str) -> None:
        self._model = model

    @property
    def family(self) -> ModelFamily:
        return self._family

    @property
    def provider(self) -> ProviderInfo:
        return self._provider

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    @property
    def retry_config(self) -> RetryConfig:
        return self._retry_config

    @property
    def request_limiter(self) -> RequestLimiter | None:
        return self._limiter

    def model_context_window(self) -> int | None:
        return MODEL_CONTEXT_WINDOWS.get(self._model)

    def auto_compact_token_limit(self) -> int | None:
        window = self.model_context_window()
        if window is None:
            return None
        return int(window * AUTO_COMPACT_RATIO)

    def count_tokens(self, text: str) -> int:
        """Approximate token count of `text`, from words and punctuation."""
        words = len(text.split())
        punctuation = len(_PUNCTUATION.findall(text))
        return math.ceil((words + punctuation * 0.5) * _TOKENS_PER_WORD)

    @property
    def reasoning_effort(self) -> ReasoningEffort | None:
        return self._reasoning_effort

    def set_reasoning_effort(self, effort: ReasoningEffort | None) -> None:
        self._reasoning_effort = effort

    @property
    def reasoning_summary(self) -> str | None:
        return self._reasoning_summary

    def set_reasoning_summary(self, summary: str | None) -> None:
        self._reasoning_summary = summary

    # -----------------------------------------------------------------------
    # Streaming
    # -----------------------------------------------------------------------

    async def stream(
        self,
        prompt: Prompt,
        cancel_event: asyncio.Event | None = None,
        priority: RequestPriority = RequestPriority.NORMAL,
    ) -> ResponseStream:
        """Open a streaming response for `prompt`.

        When the provider declares request quotas every attempt first waits
        for a slot, with `priority` deciding the order among waiters.

        Raises:
            ModelClientError: validation or authentication problems (before
                any request), non-retryable HTTP statuses, or the last error
                once retries are exhausted.
        """
        if not prompt.input:
            raise ModelClientError("Prompt input must not be empty", ErrorKind.VALIDATION)
        if self._provider.requires_auth and not self._api_key:
            raise ModelClientError(
                f"No API key configured for provider {self._provider.name}",
                ErrorKind.AUTHENTICATION,
            )

        payload = build_payload(
            prompt,
            model=self._model,
            family=self._family,
            conversation_id=self._conversation_id,
            store=self._provider.is_azure,
            effort=self._reasoning_effort,
            summary=self._reasoning_summary,
            verbosity=self._verbosity,
        )
        max_retries = self._retry_config.max_retries

        for attempt in range(max_retries + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise StreamError("Request cancelled", StreamErrorCode.ABORTED)

            if self._limiter is not None:
                await self._limiter.acquire(priority)

            try:
                response = await self._send(payload)
            except httpx.TransportError as exc:
                error = from_transport_error(exc)
            else:
                if response.is_success:
                    return self._start_reading(response, cancel_event)
                error = await self._status_error(response)

            if not error.retryable:
                raise error
            if attempt >= max_retries:
                logger.warning("Giving up after %d attempts: %s", attempt + 1, error.message)
                raise error

            delay_ms = compute_delay_ms(attempt, self._retry_config, error.retry_after_ms)
            logger.warning(
                "Request failed (%s), retrying in %.0fms (attempt %d/%d)",
                error.message,
                delay_ms,
                attempt + 1,
                max_retries,
            )
            await self._sleep(delay_ms / 1000)

        # The loop always returns or raises.
        raise AssertionError("unreachable")

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "OpenAI-Beta": "responses=experimental",
            "conversation_id": self._conversation_id,
            "session_id": self._session_id,
            "Accept": "text/event-stream",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if self._organization:
            headers["OpenAI-Organization"] = self._organization
        headers.update(self._provider.http_headers)
        return headers

    async def _send(self, payload: dict) -> httpx.Response:
        url = f"{self._provider.base_url.rstrip('/')}/responses"
        request = self._http.build_request("POST", url, json=payload, headers=self._headers())
        return await self._http.send(request, stream=True)

    async def _status_error(self, response: httpx.Response) -> ModelClientError:
        """Read an error response body and turn it into a classified error."""
        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
        finally:
            await response.aclose()

        message = body or response.reason_phrase
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict) and isinstance(parsed.get("error"), dict):
            message = parsed["error"].get("message") or message

        return ModelClientError(
            f"HTTP {response.status_code}: {message}",
            classify_status(response.status_code),
            status_code=response.status_code,
            retry_after_ms=_retry_after_ms(response.headers, message),
        )

    def _start_reading(
        self, response: httpx.Response, cancel_event: asyncio.Event | None
    ) -> ResponseStream:
        stream = ResponseStream(cancel_event=cancel_event, config=self._stream_config)
        task = asyncio.create_task(self._pump(response, stream, cancel_event))
        self._pump_tasks[task] = stream
        task.add_done_callback(lambda done: self._pump_tasks.pop(done, None))
        return stream

    async def _pump(
        self,
        response: httpx.Response,
        stream: ResponseStream,
        cancel_event: asyncio.Event | None,
    ) -> None:
        """Read the body and feed `stream` until it terminates.

        Every exit path terminates the stream: completion, a failure the
        consumer sees after draining, or an abort on cancel.
        """
        held_completed: CompletedEvent | None = None
        try:
            snapshot = RateLimitSnapshot.from_headers(response.headers)
            if snapshot is not None:
                stream.push(RateLimitsEvent(snapshot=snapshot))

            async for line in response.aiter_lines():
                if (cancel_event is not None and cancel_event.is_set()) or stream.is_aborted:
                    stream.abort()
                    return
                data = _data_field(line)
                if data is None:
                    continue
                if data == _DONE_SENTINEL:
                    break
                held_completed = self._handle_data(data, stream, held_completed)

            if held_completed is None:
                stream.fail(
                    StreamError(
                        "stream closed before response.completed", StreamErrorCode.INCOMPLETE
                    )
                )
                return
            stream.push(held_completed)
            stream.complete()
        except asyncio.CancelledError:
            stream.abort()
            raise
        except ModelClientError as exc:
            stream.fail(exc)
        except httpx.RequestError as exc:
            stream.fail(from_transport_error(exc))
        except Exception as exc:
            logger.exception("Response body reader failed")
            stream.fail(ModelClientError(f"Stream reader failed: {exc}", ErrorKind.STREAM))
        finally:
            await response.aclose()

    def _handle_data(
        self,
        data: str,
        stream: ResponseStream,
        held_completed: CompletedEvent | None,
    ) -> CompletedEvent | None:
        """Push the events of one frame, returning the (possibly new) held completion."""
        frame = self._parser.decode(data)
        if frame is None:
            return held_completed
        for event in self._parser.classify(frame):
            if isinstance(event, CompletedEvent):
                held_completed = event
            else:
                stream.push(event)
        return held_completed

    async def aclose(self) -> None:
        """Abort in-flight streams and close the HTTP client if we created it."""
        tasks = list(self._pump_tasks.items())
        for task, stream in tasks:
            stream.abort()
            task.cancel()
        if tasks:
            await asyncio.gather(*(task for task, _ in tasks), return_exceptions=True)
        if self._owns_http_client:
            await self._http.aclose()


def _data_field(line: str) -> str | None:
    """Payload of an SSE `data:` line, or None for any other line."""
    if not line.startswith("data:"):
        return None
    return line[5:].removeprefix(" ")


def _retry_after_ms(headers: httpx.Headers, message: str) -> float | None:
    """Server wait hint from headers, falling back to the error message."""
    raw_ms = headers.get("retry-after-ms")
    if raw_ms:
        try:
            return float(raw_ms)
        except ValueError:
            pass
    raw_seconds = headers.get("retry-after")
    if raw_seconds:
        try:
            return float(raw_seconds) * 1000
        except ValueError:
            pass
    return parse_retry_after(message)
