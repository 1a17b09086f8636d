"""Exponential backoff with jitter and server wait hints."""

import random
from collections.abc import Callable
from dataclasses import dataclass, field

from pydantic import BaseModel, Field


class RetryConfig(BaseModel):
    """Retry limits and backoff curve. Delays are in milliseconds."""

    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: float = Field(default=1000, ge=0)
    max_delay_ms: float = Field(default=30000, ge=0)
    backoff_multiplier: float = Field(default=2, ge=1)
    jitter_percent: float = Field(default=0.1, ge=0)


def compute_delay_ms(
    attempt: int,
    config: RetryConfig,
    retry_after_ms: float | None = None,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay before retrying after the given 0-based failed attempt.

    delay = min(base * multiplier**attempt, max), plus up to jitter_percent
    of itself. A server-supplied retry_after_ms replaces the curve for this
    attempt only and is jittered the same way.
    """
    if retry_after_ms is not None:
        delay = float(retry_after_ms)
    else:
        delay = min(
            config.base_delay_ms * config.backoff_multiplier**attempt,
            config.max_delay_ms,
        )
    return delay + delay * config.jitter_percent * rand()


@dataclass
class RetryState:
    """Bookkeeping for one retry scope (a stream acquisition or one turn)."""

    attempt: int = 0
    delays_ms: list[float] = field(default_factory=list)
    last_error: BaseException | None = None

    def record_failure(self, error: BaseException, delay_ms: float) -> None:
        self.last_error = error
        self.delays_ms.append(delay_ms)
        self.attempt += 1
