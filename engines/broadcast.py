"""Live fan-out of events to connected subscribers.

Each subscriber owns a bounded asyncio queue drained by its own delivery
task, so a slow connection only ever delays itself. ``publish`` may be called
from any thread; it schedules enqueueing on each subscriber's event loop and
returns without waiting for delivery. A subscriber whose queue overflows or
whose sender raises is unregistered. Nothing is redelivered.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import threading
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from schemas import BroadcastEvent

logger = logging.getLogger(__name__)

Sender = Callable[[BroadcastEvent], Awaitable[None]]


@dataclass
class Subscriber:
    connection_id: str
    identity_subject_id: str
    channel_filter: str
    sender: Sender = field(repr=False)
    loop: asyncio.AbstractEventLoop = field(repr=False)
    queue: asyncio.Queue = field(repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    closed: bool = False
    delivered: int = 0

    def matches(self, routing_key: str) -> bool:
        return fnmatch.fnmatchcase(routing_key, self.channel_filter)


class BroadcastHub:
    def __init__(self, queue_size: int = 100):
        self._subscribers: Dict[str, Subscriber] = {}
        self._lock = threading.Lock()
        self._queue_size = max(1, int(queue_size))
        self._published = 0
        self._dropped = 0

    def subscribe(
        self,
        connection_id: str,
        identity_subject_id: str,
        channel_filter: str,
        sender: Sender,
    ) -> Subscriber:
        """Register a connection. Must be called from the connection's event loop.

        Re-subscribing an existing connection only replaces its filter.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            existing = self._subscribers.get(connection_id)
            if existing is not None and not existing.closed:
                existing.channel_filter = channel_filter
                logger.debug("Subscriber %s filter -> %s", connection_id, channel_filter)
                return existing
            subscriber = Subscriber(
                connection_id=connection_id,
                identity_subject_id=identity_subject_id,
                channel_filter=channel_filter,
                sender=sender,
                loop=loop,
                queue=asyncio.Queue(maxsize=self._queue_size),
            )
            self._subscribers[connection_id] = subscriber
        subscriber.task = loop.create_task(self._drain(subscriber), name=f"broadcast:{connection_id}")
        logger.info("Subscriber %s registered for %s", connection_id, channel_filter)
        return subscriber

    def unsubscribe(self, connection_id: str) -> None:
        with self._lock:
            subscriber = self._subscribers.pop(connection_id, None)
        if subscriber is None:
            return
        self._close(subscriber)
        logger.info("Subscriber %s unregistered", connection_id)

    def publish(self, event: BroadcastEvent) -> int:
        """Schedule delivery of ``event`` to every matching subscriber.

        Returns the number of subscribers the event was scheduled for.
        """
        stale: List[Subscriber] = []
        scheduled = 0
        # Scheduling under the lock keeps each subscriber's queue in publish order.
        with self._lock:
            self._published += 1
            for subscriber in self._subscribers.values():
                if subscriber.closed or not subscriber.matches(event.routing_key):
                    continue
                try:
                    subscriber.loop.call_soon_threadsafe(self._enqueue, subscriber, event)
                except RuntimeError:
                    stale.append(subscriber)
                    continue
                scheduled += 1
        for subscriber in stale:
            logger.info("Subscriber %s loop closed; dropping", subscriber.connection_id)
            self._discard(subscriber)
        return scheduled

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def get(self, connection_id: str) -> Optional[Subscriber]:
        with self._lock:
            return self._subscribers.get(connection_id)

    def prune_dead(self) -> int:
        """Unregister subscribers whose delivery task is no longer running."""
        with self._lock:
            dead = [
                subscriber
                for subscriber in self._subscribers.values()
                if subscriber.task is not None and subscriber.task.done()
            ]
        for subscriber in dead:
            self._discard(subscriber)
        return len(dead)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "subscribers": len(self._subscribers),
                "published": self._published,
                "dropped": self._dropped,
            }

    async def flush(self, timeout: float = 1.0) -> None:
        """Wait until every subscriber on the running loop has drained its queue."""
        loop = asyncio.get_running_loop()
        # Let callbacks queued by publish() run first.
        await asyncio.sleep(0)
        with self._lock:
            pending = [s for s in self._subscribers.values() if s.loop is loop and not s.closed]
        if pending:
            await asyncio.wait_for(asyncio.gather(*(s.queue.join() for s in pending)), timeout)

    def close(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers.values())
            self._subscribers.clear()
        for subscriber in subscribers:
            self._close(subscriber)

    # -- event-loop side --
    def _enqueue(self, subscriber: Subscriber, event: BroadcastEvent) -> None:
        if subscriber.closed:
            return
        try:
            subscriber.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Subscriber %s queue full; unregistering", subscriber.connection_id)
            self._discard(subscriber)

    async def _drain(self, subscriber: Subscriber) -> None:
        while True:
            event = await subscriber.queue.get()
            try:
                await subscriber.sender(event)
            except asyncio.CancelledError:
                subscriber.queue.task_done()
                raise
            except Exception as exc:
                subscriber.queue.task_done()
                logger.info("Delivery to %s failed (%s); unregistering", subscriber.connection_id, exc)
                self._discard(subscriber, cancel_task=False)
                return
            subscriber.delivered += 1
            subscriber.queue.task_done()

    def _discard(self, subscriber: Subscriber, cancel_task: bool = True) -> None:
        with self._lock:
            if self._subscribers.get(subscriber.connection_id) is subscriber:
                del self._subscribers[subscriber.connection_id]
                self._dropped += 1
        self._close(subscriber, cancel_task=cancel_task)

    def _close(self, subscriber: Subscriber, cancel_task: bool = True) -> None:
        # Marked closed immediately; queued callbacks from publish() see it and bail.
        subscriber.closed = True
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is subscriber.loop:
            self._shutdown(subscriber, cancel_task)
        elif not subscriber.loop.is_closed():
            subscriber.loop.call_soon_threadsafe(self._shutdown, subscriber, cancel_task)

    @staticmethod
    def _shutdown(subscriber: Subscriber, cancel_task: bool) -> None:
        # Release anything still queued so flush() never waits on it.
        while True:
            try:
                subscriber.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            subscriber.queue.task_done()
        task = subscriber.task
        if cancel_task and task is not None and not task.done():
            task.cancel()
