"""
Per-job progress publish/subscribe channel.

One publisher (the worker that owns a job) and any number of subscribers
per job. Delivery is best-effort:

- publish() never awaits; each subscriber has its own bounded queue
- a subscriber whose queue is full is dropped, the others are unaffected
- there is no replay, a late subscriber only sees later events

The registry is owned by the event loop. Subscribing, unsubscribing and
publishing never await while touching it, so a job's subscriber set is
mutated atomically with respect to every other coroutine and unrelated
jobs never wait on each other.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional, Set
from uuid import UUID
import asyncio
import logging

logger = logging.getLogger(__name__)

# Event names published by the pipeline
EVENT_STATUS = "status"
EVENT_STEP = "step"
EVENT_VALIDATION = "validation"
EVENT_VALIDATION_COMPLETE = "validation.complete"
EVENT_UPDATING = "updating"
EVENT_UPDATING_CHUNK = "updating.chunk"

_END_OF_STREAM = object()


@dataclass
class ProgressEvent:
    """A named, timestamped progress notification for one job."""
    job_id: UUID
    event: str
    payload: Any
    published_at: datetime = field(default_factory=datetime.utcnow)


class Subscription:
    """
    One observer attached to one job's event stream.

    Iterate with ``async for event in subscription`` until the stream
    ends (job finished, subscriber dropped or unsubscribed).
    """

    def __init__(self, channel: "ProgressChannel", job_id: UUID, queue_size: int):
        self.channel = channel
        self.job_id = job_id
        self.queue_size = queue_size
        # One extra slot is reserved for the end-of-stream marker
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size + 1)
        self.closed = False
        self.dropped = False

    def _offer(self, event: ProgressEvent) -> bool:
        if self.closed or self._queue.qsize() >= self.queue_size:
            return False
        self._queue.put_nowait(event)
        return True

    def _end(self, discard_pending: bool = False) -> None:
        if self.closed:
            return
        self.closed = True
        if discard_pending:
            while not self._queue.empty():
                self._queue.get_nowait()
        self._queue.put_nowait(_END_OF_STREAM)

    async def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event, or None once the stream has ended."""
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _END_OF_STREAM:
            # Keep the marker so repeated reads also see the end
            self._queue.put_nowait(_END_OF_STREAM)
            return None
        return item

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        """Detach from the channel (idempotent)."""
        self.channel.unsubscribe(self)


class ProgressChannel:
    """Registry of job id -> subscriptions with fan-out publishing."""

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscribers: Dict[UUID, Set[Subscription]] = {}

    def subscribe(self, job_id: UUID) -> Subscription:
        subscription = Subscription(self, job_id, self.queue_size)
        self._subscribers.setdefault(job_id, set()).add(subscription)
        logger.debug(f"Subscriber attached to job {job_id}")
        return subscription

    def unsubscribe(self, subscription: Subscription, discard_pending: bool = False) -> None:
        subscribers = self._subscribers.get(subscription.job_id)
        if subscribers is not None:
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.job_id]
        subscription._end(discard_pending)

    def publish(self, job_id: UUID, event: str, payload: Any = None) -> int:
        """
        Deliver an event to every current subscriber of the job.

        Returns:
            Number of subscribers the event was delivered to
        """
        subscribers = self._subscribers.get(job_id)
        if not subscribers:
            return 0

        progress_event = ProgressEvent(job_id=job_id, event=event, payload=payload)
        delivered = 0

        for subscription in list(subscribers):
            if subscription._offer(progress_event):
                delivered += 1
            else:
                subscription.dropped = True
                self.unsubscribe(subscription, discard_pending=True)
                logger.warning(f"Dropped slow subscriber from job {job_id}")

        return delivered

    def close_job(self, job_id: UUID) -> None:
        """End every stream of a job after its terminal event."""
        for subscription in list(self._subscribers.get(job_id, ())):
            self.unsubscribe(subscription)

    def subscriber_count(self, job_id: UUID) -> int:
        return len(self._subscribers.get(job_id, ()))
