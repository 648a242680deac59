"""Per-job broadcast of snapshots to live subscribers."""

import asyncio
import logging
from typing import Optional

from flasher.models.job import FlashJobSnapshot

_CLOSED = object()


class JobSubscription:
    """Async iterator over snapshots published after subscription.

    Ends when the job's topic is closed (the job was evicted) or when
    ``close()`` is called.
    """

    def __init__(self, bus: "JobUpdateBus", job_id: str):
        self.bus = bus
        self.job_id = job_id
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def __aiter__(self) -> "JobSubscription":
        return self

    async def __anext__(self) -> FlashJobSnapshot:
        if self.closed and self.queue.empty():
            raise StopAsyncIteration
        item = await self.queue.get()
        if item is _CLOSED:
            self.closed = True
            raise StopAsyncIteration
        return item

    async def next(self, timeout: Optional[float] = None) -> FlashJobSnapshot:
        """Wait for the next snapshot, optionally bounded by ``timeout``."""
        return await asyncio.wait_for(self.__anext__(), timeout)

    def close(self) -> None:
        if not self.closed:
            self.bus._unsubscribe(self)
            self.closed = True
            self.queue.put_nowait(_CLOSED)

    async def __aenter__(self) -> "JobSubscription":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()


class JobUpdateBus:
    """Fan-out of full job snapshots, keyed by job id. No replay."""

    def __init__(self):
        self.logger = logging.getLogger("flasher.job_bus")
        self._subscribers: dict[str, set[JobSubscription]] = {}

    def subscribe(self, job_id: str) -> JobSubscription:
        subscription = JobSubscription(self, job_id)
        self._subscribers.setdefault(job_id, set()).add(subscription)
        self.logger.debug(f"New subscriber for job {job_id}")
        return subscription

    def publish(self, job_id: str, snapshot: FlashJobSnapshot) -> int:
        """Deliver ``snapshot`` to current subscribers; returns how many."""
        subscribers = self._subscribers.get(job_id, ())
        for subscription in subscribers:
            subscription.queue.put_nowait(snapshot)
        return len(subscribers)

    def close_topic(self, job_id: str) -> None:
        """End every subscription of ``job_id``."""
        for subscription in self._subscribers.pop(job_id, set()):
            subscription.closed = True
            subscription.queue.put_nowait(_CLOSED)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))

    def _unsubscribe(self, subscription: JobSubscription) -> None:
        subscribers = self._subscribers.get(subscription.job_id)
        if subscribers is not None:
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.job_id]
