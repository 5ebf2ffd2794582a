from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from typing import Callable, Deque, Dict, List

from testhub.schemas import JobEvent, JobSnapshot
from testhub.services.storage import JobStore

LOGGER = logging.getLogger("testhub.broadcaster")

Sink = Callable[[JobEvent], None]


class SubscriberDeliveryError(RuntimeError):
    """A sink raised while receiving an event."""


class QueueSink:
    """Sink that buffers events for one asyncio consumer, holding at most ``maxsize``.

    When the consumer falls behind, queued ``update`` events are collapsed to
    the newest one (each snapshot supersedes the previous), then the oldest
    events are discarded. ``complete`` is the last event of a job, so it is
    never discarded.
    """

    def __init__(self, maxsize: int = 256) -> None:
        if maxsize < 2:
            raise ValueError("Subscriber queue must hold at least two events.")
        self._maxsize = maxsize
        self._events: Deque[JobEvent] = deque()
        self._ready = asyncio.Event()
        self.discarded = 0

    def __len__(self) -> int:
        return len(self._events)

    def __call__(self, event: JobEvent) -> None:
        if len(self._events) >= self._maxsize:
            self._make_room()
        self._events.append(event)
        self._ready.set()

    def _make_room(self) -> None:
        already_behind = self.discarded > 0
        kept: Deque[JobEvent] = deque()
        newest_update_seen = False
        for queued in reversed(self._events):
            if queued.event == "update":
                if newest_update_seen:
                    self.discarded += 1
                    continue
                newest_update_seen = True
            kept.appendleft(queued)
        while len(kept) >= self._maxsize:
            kept.popleft()
            self.discarded += 1
        if self.discarded and not already_behind:
            LOGGER.warning("Subscriber fell behind; discarding superseded and oldest events")
        self._events = kept

    async def get(self) -> JobEvent:
        while not self._events:
            self._ready.clear()
            await self._ready.wait()
        return self._events.popleft()

    def get_nowait(self) -> JobEvent:
        if not self._events:
            raise asyncio.QueueEmpty
        return self._events.popleft()

    def empty(self) -> bool:
        return not self._events


class Broadcaster:
    """Fan job snapshots out to every subscriber of a job.

    Snapshots for late joiners are read from the same ``JobStore`` that
    pollers use, so both views always agree.
    """

    def __init__(self, store: JobStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._sinks: Dict[str, List[Sink]] = {}

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._sinks.get(job_id, ()))

    def subscribe(self, job_id: str, sink: Sink) -> bool:
        snapshot = self._store.get(job_id)
        if snapshot is None:
            return False
        if snapshot.is_terminal:
            self._deliver(job_id, sink, JobEvent(event="complete", job_id=job_id, snapshot=snapshot))
            return True
        if not self._deliver(job_id, sink, JobEvent(event="update", job_id=job_id, snapshot=snapshot)):
            return True
        with self._lock:
            sinks = self._sinks.setdefault(job_id, [])
            if sink not in sinks:
                sinks.append(sink)
        LOGGER.debug("Subscriber attached to job %s (%d total)", job_id, self.subscriber_count(job_id))
        return True

    def unsubscribe(self, job_id: str, sink: Sink) -> None:
        with self._lock:
            sinks = self._sinks.get(job_id)
            if not sinks:
                return
            try:
                sinks.remove(sink)
            except ValueError:
                return
            if not sinks:
                del self._sinks[job_id]
        LOGGER.debug("Subscriber detached from job %s", job_id)

    def publish(self, job_id: str, snapshot: JobSnapshot) -> None:
        self._fan_out(job_id, JobEvent(event="update", job_id=job_id, snapshot=snapshot))

    def publish_output(self, job_id: str, stream: str, text: str) -> None:
        self._fan_out(job_id, JobEvent(event="output", job_id=job_id, stream=stream, output=text))

    def complete(self, job_id: str, snapshot: JobSnapshot) -> None:
        """Send the final snapshot and release every sink of the job."""
        event = JobEvent(event="complete", job_id=job_id, snapshot=snapshot)
        with self._lock:
            sinks = self._sinks.pop(job_id, [])
        for sink in sinks:
            self._deliver(job_id, sink, event)

    def _fan_out(self, job_id: str, event: JobEvent) -> None:
        with self._lock:
            sinks = list(self._sinks.get(job_id, ()))
        for sink in sinks:
            if not self._deliver(job_id, sink, event):
                self.unsubscribe(job_id, sink)

    @staticmethod
    def _deliver(job_id: str, sink: Sink, event: JobEvent) -> bool:
        try:
            sink(event)
        except Exception as exc:
            error = SubscriberDeliveryError(f"Delivery of {event.event} for job {job_id} failed: {exc}")
            LOGGER.warning("%s; dropping subscriber", error)
            return False
        return True
