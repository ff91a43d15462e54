"""Shared fixtures for the telelog test suite."""

from collections.abc import Callable
from datetime import datetime
from types import MappingProxyType

import pytest

from telelog.relay import Entry, SendResult


def make_entry(
    message: str = "hello",
    priority: int = 6,
    identifier: str = "sshd",
    timestamp: datetime | None = None,
    **fields: str,
) -> Entry:
    return Entry(
        priority=priority,
        timestamp=timestamp or datetime(2024, 3, 5, 14, 7, 9),
        identifier=identifier,
        message=message,
        fields=MappingProxyType(fields),
    )


@pytest.fixture
def entry() -> Callable[..., Entry]:
    """Factory for journal entries."""
    return make_entry


class FakeTelegramClient:
    """Records sent texts and replays scripted results (default: success)."""

    def __init__(self, results: list[SendResult] | None = None):
        self.results = list(results or [])
        self.sent: list[str] = []
        self.chat_id = "-100"
        self.closed = False

    async def send_message(self, text: str) -> SendResult:
        self.sent.append(text)
        if self.results:
            return self.results.pop(0)
        return SendResult(status=200)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_client() -> FakeTelegramClient:
    return FakeTelegramClient()
