"""Production lane.

Production is a singleton target: at most one release may be deploying at any
instant. The lane is a FIFO queue persisted in the PromotionStore, so every
process sharing the database sees the same holder and the same wait list;
requests are served in the order they were made, whether they come from the
standard path or a fast-track run.

Waiters in this process are woken as soon as the lane is released here;
releases made by other processes are picked up by polling.

Example:
    >>> lane = ProductionLane(PromotionStore.from_url("sqlite://"))
    >>> lane.acquire("1.2.0")
    >>> lane.holder
    '1.2.0'
    >>> lane.release("1.2.0")
    True
"""

from __future__ import annotations

import threading
import time

import structlog

from sluice.errors import ConflictError
from sluice.store import PromotionStore

logger = structlog.get_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 0.5


class ProductionLane:
    """Single-slot FIFO lock for production deployments.

    Attributes:
        name: Lane name used in logs, errors and the store.
        poll_interval: Seconds between store checks while waiting.
    """

    def __init__(
        self,
        store: PromotionStore,
        name: str = "production",
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.name = name
        self.poll_interval = poll_interval
        self._store = store
        self._cond = threading.Condition()
        self._in_flight: set[str] = set()
        self._log = logger.bind(component="production_lane", lane=name)

    @property
    def holder(self) -> str | None:
        return self._store.lane_holder(self.name)

    def waiting(self) -> list[str]:
        """Queued release ids in service order."""
        return self._store.lane_waiting(self.name)

    def acquire(self, release_id: str, timeout: float | None = None) -> None:
        """Block until ``release_id`` holds the lane.

        Re-acquiring a lane already held by ``release_id`` returns at once, and
        a request left queued by an interrupted process is rejoined in place.

        Args:
            release_id: Identifier of the requesting release.
            timeout: Maximum wait in seconds; None waits indefinitely.

        Raises:
            ConflictError: If the request is already waiting in this process,
                or the wait timed out.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            if release_id in self._in_flight:
                raise ConflictError(self.name, release_id, "request already queued")
            self._in_flight.add(release_id)

        try:
            if self._store.enqueue_lane(self.name, release_id):
                self._log.info(
                    "lane_queued",
                    release_id=release_id,
                    position=len(self.waiting()),
                    holder=self.holder,
                )
            while not self._store.try_acquire_lane(self.name, release_id):
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise ConflictError(
                        self.name,
                        self.holder or "queue",
                        f"lane wait timed out after {timeout}s",
                    )
                pause = self.poll_interval
                if remaining is not None:
                    pause = min(pause, remaining)
                with self._cond:
                    self._cond.wait(pause)
        except BaseException:
            self._store.withdraw_lane(self.name, release_id)
            with self._cond:
                self._cond.notify_all()
            raise
        finally:
            with self._cond:
                self._in_flight.discard(release_id)

        self._log.info("lane_acquired", release_id=release_id)

    def release(self, release_id: str) -> bool:
        """Release the lane if ``release_id`` holds it.

        Returns:
            True if the lane was released, False if ``release_id`` was not the holder.
        """
        if not self._store.release_lane(self.name, release_id):
            self._log.warning(
                "lane_release_ignored",
                release_id=release_id,
                holder=self.holder,
            )
            return False
        with self._cond:
            self._cond.notify_all()
        self._log.info("lane_released", release_id=release_id)
        return True


__all__ = ["DEFAULT_POLL_INTERVAL_SECONDS", "ProductionLane"]
