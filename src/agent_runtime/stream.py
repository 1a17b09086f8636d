"""Bounded, cancelable single-producer/single-consumer event channel.

The streaming client creates a ResponseStream, hands it to the caller
immediately, and keeps filling it from a background task that reads the
HTTP body. The caller drains it with `async for`.

Design constraints:
- Backpressure is fail-fast: when the buffer is full, push() raises instead
  of blocking, because the producer is a network-read loop that must never
  stall indefinitely.
- The stream terminates exactly once (complete, fail or abort). Later
  terminal calls are no-ops and later pushes raise.
- A failed stream still delivers everything buffered before the failure,
  then raises the failure.
- An abort (or the external cancel signal) raises immediately, also for a
  consumer that is blocked waiting for the next event.
- Only one consumer may iterate at a time.
"""

import asyncio
from collections import deque
from collections.abc import AsyncGenerator, Callable, Iterable
from typing import TypeVar

from pydantic import BaseModel, Field

from agent_runtime.errors import StreamError, StreamErrorCode
from agent_runtime.schemas.events import ResponseEvent

T = TypeVar("T")


class StreamConfig(BaseModel):
    """Buffering and timeout behaviour of a ResponseStream."""

    max_buffer_size: int = Field(default=1000, ge=1)
    # Max time a consumer waits for the next event before a timeout error.
    idle_timeout_ms: float = Field(default=30000, gt=0)
    enable_backpressure: bool = True


class ResponseStream:
    """Async iterable of ResponseEvents fed by one producer task."""

    def __init__(
        self,
        cancel_event: asyncio.Event | None = None,
        config: StreamConfig | None = None,
    ) -> None:
        self._config = config or StreamConfig()
        self._cancel_event = cancel_event
        self._buffer: deque[ResponseEvent] = deque()
        self._completed = False
        self._aborted = False
        self._error: BaseException | None = None
        # Futures of consumers blocked in __anext__, resolved on push/terminal.
        self._waiters: list[asyncio.Future[None]] = []

    # -----------------------------------------------------------------------
    # Producer side
    # -----------------------------------------------------------------------

    def push(self, event: ResponseEvent) -> None:
        """Append an event and wake one waiting consumer.

        Raises:
            StreamError: ABORTED if aborted or cancelled, CLOSED if already
                completed/failed, BACKPRESSURE if the buffer is full.
        """
        if self.is_aborted:
            raise StreamError("Cannot add event to aborted stream", StreamErrorCode.ABORTED)
        if self._completed:
            raise StreamError("Cannot add event to completed stream", StreamErrorCode.CLOSED)
        max_size = self._config.max_buffer_size
        if self._config.enable_backpressure and len(self._buffer) >= max_size:
            raise StreamError(
                f"Event buffer full ({max_size} events) - backpressure limit reached",
                StreamErrorCode.BACKPRESSURE,
            )
        self._buffer.append(event)
        self._wake(wake_all=False)

    def push_many(self, events: Iterable[ResponseEvent]) -> None:
        for event in events:
            self.push(event)

    def complete(self) -> None:
        """Mark normal end of stream. No-op if already terminated."""
        if self._terminated:
            return
        self._completed = True
        self._wake(wake_all=True)

    def fail(self, error: BaseException) -> None:
        """Terminate with an error; consumers raise it after draining the buffer."""
        if self._terminated:
            return
        self._error = error
        self._completed = True
        self._wake(wake_all=True)

    def abort(self) -> None:
        """Terminate immediately; pending and future reads raise ABORTED."""
        if self._terminated:
            return
        self._aborted = True
        self._wake(wake_all=True)

    # -----------------------------------------------------------------------
    # Introspection
    # -----------------------------------------------------------------------

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    @property
    def is_completed(self) -> bool:
        return self._completed

    @property
    def is_aborted(self) -> bool:
        # The external signal latches into an abort unless the stream
        # already terminated on its own.
        if not self._aborted and not self._completed and self._cancel_requested():
            self._aborted = True
        return self._aborted

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def _terminated(self) -> bool:
        return self._completed or self.is_aborted

    def _cancel_requested(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    # -----------------------------------------------------------------------
    # Consumer side
    # -----------------------------------------------------------------------

    def __aiter__(self) -> "ResponseStream":
        return self

    async def __anext__(self) -> ResponseEvent:
        while True:
            if self.is_aborted:
                raise StreamError("Stream aborted", StreamErrorCode.ABORTED)
            if self._buffer:
                return self._buffer.popleft()
            if self._completed:
                if self._error is not None:
                    raise self._error
                raise StopAsyncIteration
            await self._wait_for_event()

    async def _wait_for_event(self) -> None:
        """Block until a push, a terminal transition, a cancel or the idle timeout."""
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[None] = loop.create_future()
        self._waiters.append(waiter)

        watched: set[asyncio.Future] = {waiter}
        cancel_watch: asyncio.Future | None = None
        if self._cancel_event is not None:
            cancel_watch = asyncio.ensure_future(self._cancel_event.wait())
            watched.add(cancel_watch)

        timeout_seconds = self._config.idle_timeout_ms / 1000
        try:
            done, _ = await asyncio.wait(
                watched, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)
            waiter.cancel()
            if cancel_watch is not None:
                cancel_watch.cancel()

        if not done:
            raise StreamError(
                f"Event timeout after {self._config.idle_timeout_ms:g}ms",
                StreamErrorCode.TIMEOUT,
            )

    def _wake(self, wake_all: bool) -> None:
        if not self._waiters:
            return
        if wake_all:
            waiters, self._waiters = self._waiters, []
        else:
            waiters = [self._waiters.pop(0)]
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    # -----------------------------------------------------------------------
    # Constructors and helpers
    # -----------------------------------------------------------------------

    @classmethod
    def from_events(
        cls, events: Iterable[ResponseEvent], config: StreamConfig | None = None
    ) -> "ResponseStream":
        """A stream that already holds `events` and is complete."""
        stream = cls(config=config)
        try:
            stream.push_many(events)
        except StreamError as exc:
            stream.fail(exc)
            return stream
        stream.complete()
        return stream

    @classmethod
    def from_error(cls, error: BaseException) -> "ResponseStream":
        """A stream whose first read raises `error`."""
        stream = cls()
        stream.fail(error)
        return stream

    async def to_list(self) -> list[ResponseEvent]:
        """Drain the stream. Waits for the stream to terminate."""
        return [event async for event in self]

    async def take(self, count: int) -> AsyncGenerator[ResponseEvent, None]:
        if count <= 0:
            return
        taken = 0
        async for event in self:
            yield event
            taken += 1
            if taken >= count:
                return

    async def filter(
        self, predicate: Callable[[ResponseEvent], bool]
    ) -> AsyncGenerator[ResponseEvent, None]:
        async for event in self:
            if predicate(event):
                yield event

    async def map(self, mapper: Callable[[ResponseEvent], T]) -> AsyncGenerator[T, None]:
        async for event in self:
            yield mapper(event)
