"""Client-side request pacing for providers that publish request quotas.

A RequestLimiter keeps the start times of recent requests and makes
acquire() wait until one more request fits every window:
- the last minute holds at most min(requests_per_minute, burst_limit),
- the last hour holds at most requests_per_hour.

Waiting callers are admitted by priority, then arrival order. Only the
caller at the head of that order sleeps on the clock; the others wait for
the head to leave.
"""

import asyncio
import heapq
import itertools
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from enum import IntEnum

from pydantic import BaseModel, Field

from agent_runtime.schemas.prompt import ProviderInfo

logger = logging.getLogger(__name__)

_MINUTE_SECONDS = 60.0
_HOUR_SECONDS = 3600.0


class RequestPriority(IntEnum):
    """Admission order among waiting requests. Higher goes first."""

    LOW = 0
    NORMAL = 1
    HIGH = 2
    URGENT = 3


class RequestLimitConfig(BaseModel):
    requests_per_minute: int = Field(default=60, gt=0)
    requests_per_hour: int = Field(default=1000, gt=0)
    burst_limit: int = Field(default=10, gt=0)

    @classmethod
    def from_provider(cls, provider: ProviderInfo) -> "RequestLimitConfig | None":
        """Limits declared by the provider, or None when it declares none."""
        per_minute = provider.requests_per_minute
        per_hour = provider.requests_per_hour
        if per_minute is None and per_hour is None:
            return None
        return cls(
            requests_per_minute=per_minute or 60,
            requests_per_hour=per_hour or 1000,
            burst_limit=min(per_minute or 10, 10),
        )


class RequestLimiter:
    """Sliding-window limiter with priority admission."""

    def __init__(
        self,
        config: RequestLimitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._config = config or RequestLimitConfig()
        self._clock = clock
        self._sleep = sleep
        # Start times of admitted requests within the last hour, oldest first.
        self._history: deque[float] = deque()
        self._waiting: list[tuple[int, int]] = []
        self._sequence = itertools.count()
        self._head_changed = asyncio.Event()

    @property
    def config(self) -> RequestLimitConfig:
        return self._config

    @property
    def waiting(self) -> int:
        return len(self._waiting)

    def delay_seconds(self) -> float:
        """Time until one more request fits every window; 0 when it fits now."""
        now = self._clock()
        while self._history and self._history[0] <= now - _HOUR_SECONDS:
            self._history.popleft()

        minute_limit = min(self._config.requests_per_minute, self._config.burst_limit)
        recent = [t for t in self._history if t > now - _MINUTE_SECONDS]
        delay = 0.0
        if len(recent) >= minute_limit:
            oldest = recent[len(recent) - minute_limit]
            delay = max(delay, oldest + _MINUTE_SECONDS - now)
        if len(self._history) >= self._config.requests_per_hour:
            oldest = self._history[len(self._history) - self._config.requests_per_hour]
            delay = max(delay, oldest + _HOUR_SECONDS - now)
        return delay

    async def acquire(self, priority: RequestPriority = RequestPriority.NORMAL) -> None:
        """Wait for a slot and record the request as started."""
        ticket = (-int(priority), next(self._sequence))
        heapq.heappush(self._waiting, ticket)
        try:
            while True:
                if self._waiting[0] != ticket:
                    await self._wait_for_head_change()
                    continue
                delay = self.delay_seconds()
                if delay <= 0:
                    break
                logger.debug("Request limit reached, waiting %.1fs", delay)
                await self._sleep(delay)
        finally:
            self._waiting.remove(ticket)
            heapq.heapify(self._waiting)
            self._notify_head_changed()
        self._history.append(self._clock())

    async def _wait_for_head_change(self) -> None:
        event = self._head_changed
        await event.wait()

    def _notify_head_changed(self) -> None:
        self._head_changed.set()
        self._head_changed = asyncio.Event()
