"""Shared pytest fixtures for the log tailer test suite."""

import asyncio

import jwt
import pytest

from log_tailer.models import Identity
from log_tailer.sink import SinkResult


class FakeSink:
    """In-memory sink that can be told to fail its first N inserts."""

    def __init__(self, fail_first: int = 0, always_fail: bool = False):
        self.fail_first = fail_first
        self.always_fail = always_fail
        self.calls: list[tuple[str, dict]] = []
        self.rows: list[dict] = []
        self.call_times: list[float] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def insert(self, table: str, row: dict) -> SinkResult:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            self.calls.append((table, row))
            self.call_times.append(asyncio.get_running_loop().time())
            if self.always_fail or len(self.calls) <= self.fail_first:
                return SinkResult(error="boom")
            self.rows.append(row)
            return SinkResult(data=[row])
        finally:
            self.in_flight -= 1


async def wait_for_rows(sink: FakeSink, count: int, timeout: float = 5.0):
    """Poll until the sink holds at least `count` rows."""
    async def _poll():
        while len(sink.rows) < count:
            await asyncio.sleep(0.02)
    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def identity() -> Identity:
    return Identity(user_id="user-123", agent_id="agent-7")


def make_token(**claims) -> str:
    return jwt.encode(claims, "test-secret-at-least-thirty-two-bytes-long", algorithm="HS256")
