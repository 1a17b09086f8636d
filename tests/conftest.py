"""Shared fixtures for agent_runtime tests.

Clears AGENT_RUNTIME_* variables from the developer's shell so settings
tests see only what they set themselves.
"""

import os

import pytest

from agent_runtime.schemas.notifications import Notification, NotificationType

for _name in [name for name in os.environ if name.startswith("AGENT_RUNTIME_")]:
    del os.environ[_name]


class NotificationCollector:
    """Sink that records every notification it receives."""

    def __init__(self):
        self.notifications: list[Notification] = []

    def __call__(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def of_type(self, notification_type: NotificationType) -> list[Notification]:
        return [n for n in self.notifications if n.type == notification_type]

    @property
    def types(self) -> list[NotificationType]:
        return [n.type for n in self.notifications]


class SleepRecorder:
    """Stand-in for asyncio.sleep that returns immediately and records the delay."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def collector() -> NotificationCollector:
    return NotificationCollector()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()
