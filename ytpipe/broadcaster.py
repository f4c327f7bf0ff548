"""Fans job state snapshots out to every attached observer."""
import asyncio
import logging
from typing import Any, Dict, Set

from .jobs import DownloadJob, TERMINAL_STATUSES

_CLOSED = object()


class Subscription:
    """
    One observer's ordered view of a job's state transitions.

    Iterate with `async for`; iteration ends after the terminal snapshot, when
    the job is cleaned up, or after `detach()`.
    """
    def __init__(self, broadcaster: 'Broadcaster', job_id: str, initial_snapshot: Dict[str, Any]):
        self.job_id = job_id
        self.closed = False
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue = asyncio.Queue()
        self._exhausted = False
        self._queue.put_nowait(initial_snapshot)

    def deliver(self, snapshot: Dict[str, Any]):
        if not self.closed:
            self._queue.put_nowait(snapshot)

    def close(self):
        """Ends the subscription after everything already delivered."""
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_CLOSED)

    def detach(self):
        """Stops receiving updates without affecting the job or other observers."""
        self._broadcaster.remove(self)
        self.close()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        if self._exhausted:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._exhausted = True
            raise StopAsyncIteration
        return item


class Broadcaster:
    """Keeps the set of subscriptions for every job and publishes snapshots to them."""
    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._subscriptions: Dict[str, Set[Subscription]] = {}

    def subscribe(self, job: DownloadJob) -> Subscription:
        """
        Attaches a new observer to `job`.

        The current snapshot is queued first, in the same step that attaches the
        observer, so no later transition can be missed. A terminal job yields its
        snapshot and ends.
        """
        subscription = Subscription(self, job.job_id, job.snapshot())
        if job.is_terminal:
            subscription.close()
        else:
            self._subscriptions.setdefault(job.job_id, set()).add(subscription)
            self.logger.debug(f"[{job.job_id}] observer attached ({self.observer_count(job.job_id)} total)")
        return subscription

    def publish(self, job_id: str, snapshot: Dict[str, Any]):
        """Delivers `snapshot` to every observer; a terminal snapshot also ends their streams."""
        terminal = snapshot.get('status') in TERMINAL_STATUSES
        subscriptions = self._subscriptions.pop(job_id, set()) if terminal else self._subscriptions.get(job_id, set())
        for subscription in list(subscriptions):
            subscription.deliver(snapshot)
            if terminal:
                subscription.close()

    def remove(self, subscription: Subscription):
        subscriptions = self._subscriptions.get(subscription.job_id)
        if subscriptions is None:
            return
        subscriptions.discard(subscription)
        if not subscriptions:
            del self._subscriptions[subscription.job_id]
        self.logger.debug(f"[{subscription.job_id}] observer detached")

    def close_job(self, job_id: str):
        """Ends and forgets every subscription of a job."""
        for subscription in self._subscriptions.pop(job_id, set()):
            subscription.close()

    def observer_count(self, job_id: str) -> int:
        return len(self._subscriptions.get(job_id, ()))
