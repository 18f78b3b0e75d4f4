"""Shared fixtures for the fulfillment test suite."""

from __future__ import annotations

import os
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from fulfillment.clients.analytics import Analytics
from fulfillment.clients.email import EmailNotifier, SendResult
from fulfillment.reporting import ErrorReporter
from fulfillment.store import InMemoryKVStore

os.environ.setdefault("FULFILLMENT_REDIS_URL", "redis://localhost:6381/0")


class FakeMessage:
    """Queue message double that records the dispatch loop's decision."""

    def __init__(
        self,
        queue: str,
        body: dict[str, Any] | None,
        *,
        attempts: int = 0,
        id: str = "msg-1",
    ):
        self.id = id
        self.queue = queue
        self.body = body
        self.attempts = attempts
        self.acked = False
        self.retry_delay: int | None = None
        self.dead_letter_reason: str | None = None

    async def ack(self) -> None:
        self.acked = True

    async def retry(self, delay_seconds: int) -> None:
        self.retry_delay = delay_seconds

    async def dead_letter(self, reason: str) -> None:
        self.dead_letter_reason = reason


@pytest.fixture()
def make_message():
    return FakeMessage


@pytest.fixture()
def store() -> InMemoryKVStore:
    return InMemoryKVStore()


@pytest.fixture()
def reporter() -> ErrorReporter:
    return ErrorReporter()


@pytest.fixture()
def analytics() -> AsyncMock:
    mock = AsyncMock(spec=Analytics)
    mock.capture.return_value = True
    return mock


@pytest.fixture()
def notifier() -> MagicMock:
    mock = MagicMock(spec=EmailNotifier)
    mock.is_configured = True
    mock.send = AsyncMock(return_value=SendResult(success=True, response_id="em_1"))
    return mock
