from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Optional, Set

from tacklebox.config import DEFAULT_EVENT_QUEUE_SIZE
from tacklebox.models import JobStatus, ProgressEvent

logger = logging.getLogger(__name__)


class Subscription:
    """
    A live consumer of progress events for one job (or every job when job_id is None).

    Registered with the channel as soon as it is created, so nothing published
    afterwards can be missed. Iterate it with `async for`; a per-job stream ends
    after the job's final event, after close(), or after the channel drops it.
    """

    def __init__(self, channel: "ProgressChannel", job_id: Optional[str], maxsize: int) -> None:
        self.job_id = job_id
        self.dropped = False
        self._channel = channel
        self._maxsize = maxsize
        # unbounded on purpose: _offer enforces maxsize so the close sentinel always fits
        self._queue: asyncio.Queue[Optional[ProgressEvent]] = asyncio.Queue()
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, event: ProgressEvent) -> bool:
        if self._closed:
            return False
        if self._queue.qsize() >= self._maxsize:
            return False
        self._queue.put_nowait(event)
        return True

    def _shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def close(self) -> None:
        self._channel.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._finished:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            self._finished = True
            raise StopAsyncIteration
        if event.final and self.job_id is not None:
            self._finished = True
            self.close()
        return event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class ProgressChannel:
    """
    Fan-out of ordered progress events to subscribers.

    publish() never awaits, so sequence counters and the subscriber registry are
    only touched between suspension points of the event loop. Once a job's final
    event is out, further publishes for it are ignored.
    """

    def __init__(self, *, queue_size: int = DEFAULT_EVENT_QUEUE_SIZE) -> None:
        self._queue_size = int(queue_size)
        self._sequences: Dict[str, int] = {}
        self._subscribers: Dict[str, Set[Subscription]] = {}
        self._wildcard: Set[Subscription] = set()
        self._finished: Set[str] = set()

    def subscribe(self, job_id: Optional[str] = None) -> Subscription:
        sub = Subscription(self, job_id, self._queue_size)
        if job_id is None:
            self._wildcard.add(sub)
        else:
            self._subscribers.setdefault(job_id, set()).add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub.job_id is None:
            self._wildcard.discard(sub)
        else:
            subs = self._subscribers.get(sub.job_id)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    del self._subscribers[sub.job_id]
        sub._shutdown()

    def subscriber_count(self, job_id: Optional[str] = None) -> int:
        if job_id is None:
            return len(self._wildcard)
        return len(self._subscribers.get(job_id, ()))

    def publish(
        self,
        job_id: str,
        message: str,
        *,
        status: Optional[JobStatus] = None,
        final: bool = False,
    ) -> Optional[ProgressEvent]:
        if job_id in self._finished:
            logger.debug("Ignoring event for finished job %s: %s", job_id, message)
            return None
        sequence = self._sequences.get(job_id, 0) + 1
        self._sequences[job_id] = sequence
        event = ProgressEvent(
            job_id=job_id,
            sequence=sequence,
            message=message,
            timestamp=time.time(),
            status=status,
            final=final,
        )

        targets = list(self._subscribers.get(job_id, ())) + list(self._wildcard)
        for sub in targets:
            if not sub._offer(event):
                # slow consumer: drop it rather than stall the job
                logger.warning("Dropping backpressured subscriber for job %s", sub.job_id or "*")
                sub.dropped = True
                self.unsubscribe(sub)

        if final:
            self._sequences.pop(job_id, None)
            self._finished.add(job_id)
            # consumers still have the final event buffered and finish on reading it
            self._subscribers.pop(job_id, None)

        return event
