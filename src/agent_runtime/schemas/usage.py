"""Token accounting types reported by the Responses API.

The server is authoritative for every count: this layer never checks that
total_tokens adds up, it only converts the wire shape and sums turns.
"""

from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, Field


class TokenUsage(BaseModel):
    """Token counts for a single model response."""

    input_tokens: int = Field(default=0, ge=0)
    cached_input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    reasoning_output_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)

    @classmethod
    def from_api(cls, usage: dict[str, Any]) -> "TokenUsage":
        """Convert the `response.usage` object of a completed response.

        Cached and reasoning counts live in nested *_details objects that
        the server omits when they are zero. Missing, malformed or negative
        counts read as 0.
        """
        input_details = _details(usage, "input_tokens_details")
        output_details = _details(usage, "output_tokens_details")
        return cls(
            input_tokens=_count(usage, "input_tokens"),
            cached_input_tokens=_count(input_details, "cached_tokens"),
            output_tokens=_count(usage, "output_tokens"),
            reasoning_output_tokens=_count(output_details, "reasoning_tokens"),
            total_tokens=_count(usage, "total_tokens"),
        )

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            cached_input_tokens=self.cached_input_tokens + other.cached_input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            reasoning_output_tokens=self.reasoning_output_tokens + other.reasoning_output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


def aggregate(usages: Iterable[TokenUsage]) -> TokenUsage:
    """Sum a sequence of usages, starting from all zeros."""
    total = TokenUsage()
    for usage in usages:
        total = total + usage
    return total


class TokenUsageInfo(BaseModel):
    """Running usage across turns of one conversation."""

    total_token_usage: TokenUsage = Field(default_factory=TokenUsage)
    last_token_usage: TokenUsage = Field(default_factory=TokenUsage)
    model_context_window: int | None = None
    auto_compact_token_limit: int | None = None

    def update(self, usage: TokenUsage) -> "TokenUsageInfo":
        """Return a copy with `usage` added to the total and recorded as last."""
        return self.model_copy(
            update={
                "total_token_usage": self.total_token_usage + usage,
                "last_token_usage": usage,
            }
        )


def _details(usage: dict[str, Any], key: str) -> dict[str, Any]:
    details = usage.get(key)
    return details if isinstance(details, dict) else {}


def _count(source: dict[str, Any], key: str) -> int:
    value = source.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return 0
    return value
