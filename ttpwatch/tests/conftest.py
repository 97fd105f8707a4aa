from __future__ import annotations

import datetime as dt
from typing import Any

import pytest

from ttpwatch.domain import StoreError, Subscription
from ttpwatch.store import expiry_window


class SleepRecorder:
    """Stands in for asyncio.sleep so retry backoff is recorded, not waited."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeStore:
    """In-memory SubscriptionStore with the same async surface."""

    def __init__(self, subscriptions: list[Subscription] | None = None):
        self.subscriptions: list[Subscription] = list(subscriptions or [])
        self.fail_on: set[str] = set()
        self.closed = False
        self._next_id = 1000

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise StoreError(f"failed to {operation}: boom")

    async def close(self) -> None:
        self.closed = True

    async def location_topics(self) -> dict[str, list[str]]:
        self._maybe_fail("location_topics")
        result: dict[str, list[str]] = {}
        for sub in self.subscriptions:
            result.setdefault(sub.location, []).append(sub.ntfy_topic)
        return result

    async def expiring(self, now: dt.datetime) -> list[Subscription]:
        self._maybe_fail("expiring")
        start, end = expiry_window(now)
        return [s for s in self.subscriptions if start <= s.created_at < end]

    async def delete(self, subscription_id: Any) -> None:
        self._maybe_fail("delete")
        self.subscriptions = [s for s in self.subscriptions if s.id != subscription_id]

    async def exists(self, location: str, topic: str) -> bool:
        self._maybe_fail("exists")
        return any(s.location == location and s.ntfy_topic == topic for s in self.subscriptions)

    async def subscribe(self, location: str, topic: str, now: dt.datetime) -> None:
        self._maybe_fail("subscribe")
        self._next_id += 1
        self.subscriptions.append(Subscription(self._next_id, location, topic, now))

    async def unsubscribe(self, location: str, topic: str) -> bool:
        self._maybe_fail("unsubscribe")
        before = len(self.subscriptions)
        self.subscriptions = [
            s for s in self.subscriptions if not (s.location == location and s.ntfy_topic == topic)
        ]
        return len(self.subscriptions) < before


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()
