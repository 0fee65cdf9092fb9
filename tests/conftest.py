"""Root-level test configuration for sluice.

Provides fixtures shared by unit and integration tests: a deterministic
clock, an in-memory promotion store and helpers for building events.
"""

from __future__ import annotations

import itertools
import threading
import time
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from sluice.config import RetryConfig
from sluice.resilience import RetryPolicy
from sluice.schemas.events import ChangeEvent, EventType
from sluice.store import PromotionStore


class FakeClock:
    """Monotonic clock advancing one second per reading."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            self._now += timedelta(seconds=1)
            return self._now


def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll ``predicate`` until it holds; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail("condition not reached before timeout")
        time.sleep(0.01)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Iterator[PromotionStore]:
    """In-memory SQLite promotion store."""
    store = PromotionStore.from_url("sqlite://")
    yield store
    store.close()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry policy with two attempts and no delay."""
    return RetryPolicy(
        RetryConfig(max_attempts=2, initial_delay_ms=0, jitter=False),
        sleep=lambda _: None,
    )


@pytest.fixture
def make_event() -> Callable[..., ChangeEvent]:
    """Factory for ChangeEvents with unique ids.

    Usage:
        def test_open(make_event):
            event = make_event(EventType.PR_OPENED, "PR-1", commits=[...])
    """
    counter = itertools.count(1)

    def _make(
        type: EventType,
        change_id: str,
        *,
        event_id: str | None = None,
        **payload: Any,
    ) -> ChangeEvent:
        return ChangeEvent(
            event_id=event_id or f"evt-{next(counter)}",
            type=type,
            change_id=change_id,
            payload=payload,
        )

    return _make


@pytest.fixture
def wait_until() -> Callable[..., None]:
    return _wait_until
