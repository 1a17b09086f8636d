"""Streaming core for agent turns against the Responses API."""

from agent_runtime.client import ResponsesClient
from agent_runtime.errors import ErrorKind, ModelClientError, ResponseFailedError, StreamError
from agent_runtime.limiter import RequestLimiter, RequestPriority
from agent_runtime.stream import ResponseStream, StreamConfig
from agent_runtime.turn import TurnConfig, TurnExecutor, TurnResult

__all__ = [
    "ErrorKind",
    "ModelClientError",
    "RequestLimiter",
    "RequestPriority",
    "ResponseFailedError",
    "ResponseStream",
    "ResponsesClient",
    "StreamConfig",
    "StreamError",
    "TurnConfig",
    "TurnExecutor",
    "TurnResult",
]
