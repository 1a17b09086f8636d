"""Rate-limit windows reported through response headers.

The server sends up to two windows ("primary" and "secondary") on every
streaming response. Each window is a group of three headers:

    x-codex-primary-used-percent: 42.5
    x-codex-primary-window-minutes: 60
    x-codex-primary-resets-in-seconds: 1800

A window only exists when its used-percent header parses as a finite float.
"""

import math
from collections.abc import Mapping

from pydantic import BaseModel

_HEADER_PREFIX = "x-codex"


def _header_float(headers: Mapping[str, str], name: str) -> float | None:
    raw = headers.get(name)
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def _header_int(headers: Mapping[str, str], name: str) -> int | None:
    raw = headers.get(name)
    if not raw:
        return None
    try:
        return int(raw.strip())
    except ValueError:
        return None


class RateLimitWindow(BaseModel):
    """Usage of one rate-limit window. used_percent may exceed 100."""

    used_percent: float
    window_minutes: int | None = None
    resets_in_seconds: int | None = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str], group: str) -> "RateLimitWindow | None":
        used_percent = _header_float(headers, f"{_HEADER_PREFIX}-{group}-used-percent")
        if used_percent is None:
            return None
        return cls(
            used_percent=used_percent,
            window_minutes=_header_int(headers, f"{_HEADER_PREFIX}-{group}-window-minutes"),
            resets_in_seconds=_header_int(headers, f"{_HEADER_PREFIX}-{group}-resets-in-seconds"),
        )

    def describe(self) -> str:
        """Short human-readable summary, e.g. '42.5% used (60min window), resets in 30s'."""
        text = f"{self.used_percent:.1f}% used"
        if self.window_minutes:
            text += f" ({self.window_minutes}min window)"
        if self.resets_in_seconds:
            text += f", resets in {self.resets_in_seconds}s"
        return text


class RateLimitSnapshot(BaseModel):
    """Both windows as observed at the start of one stream."""

    primary: RateLimitWindow | None = None
    secondary: RateLimitWindow | None = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "RateLimitSnapshot | None":
        """Build a snapshot from response headers, or None if neither window is present."""
        primary = RateLimitWindow.from_headers(headers, "primary")
        secondary = RateLimitWindow.from_headers(headers, "secondary")
        if primary is None and secondary is None:
            return None
        return cls(primary=primary, secondary=secondary)

    def most_restrictive(self) -> RateLimitWindow | None:
        """The window with the highest used_percent (primary wins ties)."""
        if self.primary is None:
            return self.secondary
        if self.secondary is None:
            return self.primary
        if self.primary.used_percent >= self.secondary.used_percent:
            return self.primary
        return self.secondary

    def is_approaching(self, threshold: float = 80.0) -> bool:
        window = self.most_restrictive()
        return window is not None and window.used_percent >= threshold
