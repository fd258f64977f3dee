"""Tests for the broadcast hub."""

import asyncio
import threading

from engines.broadcast import BroadcastHub
from schemas import BroadcastEvent


def _event(key: str, n: int = 0) -> BroadcastEvent:
    return BroadcastEvent(type="progress_update", routing_key=key, payload={"n": n})


class Recorder:
    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)


def test_publish_routes_by_filter():
    async def scenario():
        hub = BroadcastHub()
        alice, staff, bob = Recorder(), Recorder(), Recorder()
        hub.subscribe("c1", "alice", "student:alice", alice)
        hub.subscribe("c2", "teacher", "student:*", staff)
        hub.subscribe("c3", "bob", "student:bob", bob)

        scheduled = hub.publish(_event("student:alice"))
        await hub.flush()

        assert scheduled == 2
        assert [e.routing_key for e in alice.events] == ["student:alice"]
        assert [e.routing_key for e in staff.events] == ["student:alice"]
        assert bob.events == []
        hub.close()

    asyncio.run(scenario())


def test_per_subscriber_order_is_publish_order():
    async def scenario():
        hub = BroadcastHub(queue_size=500)
        recorder = Recorder()
        hub.subscribe("c1", "alice", "student:alice", recorder)
        for n in range(100):
            hub.publish(_event("student:alice", n))
        await hub.flush()
        assert [e.payload["n"] for e in recorder.events] == list(range(100))
        hub.close()

    asyncio.run(scenario())


def test_publish_from_worker_threads_keeps_order():
    async def scenario():
        hub = BroadcastHub(queue_size=500)
        recorder = Recorder()
        hub.subscribe("c1", "alice", "student:alice", recorder)

        def worker():
            for n in range(50):
                hub.publish(_event("student:alice", n))

        await asyncio.get_running_loop().run_in_executor(None, worker)
        await hub.flush()
        assert [e.payload["n"] for e in recorder.events] == list(range(50))
        hub.close()

    asyncio.run(scenario())


def test_resubscribe_replaces_filter():
    async def scenario():
        hub = BroadcastHub()
        recorder = Recorder()
        first = hub.subscribe("c1", "teacher", "student:alice", recorder)
        second = hub.subscribe("c1", "teacher", "alerts", recorder)

        assert first is second
        assert hub.subscriber_count() == 1
        hub.publish(_event("student:alice"))
        hub.publish(_event("alerts"))
        await hub.flush()
        assert [e.routing_key for e in recorder.events] == ["alerts"]
        hub.close()

    asyncio.run(scenario())


def test_unsubscribed_connection_gets_nothing_and_publish_is_safe():
    async def scenario():
        hub = BroadcastHub()
        recorder = Recorder()
        hub.subscribe("c1", "alice", "student:alice", recorder)
        hub.unsubscribe("c1")
        hub.unsubscribe("c1")
        hub.unsubscribe("never-registered")

        assert hub.publish(_event("student:alice")) == 0
        await hub.flush()
        assert recorder.events == []

    asyncio.run(scenario())


def test_failing_sender_is_unregistered_without_affecting_others():
    async def scenario():
        hub = BroadcastHub()
        healthy = Recorder()

        async def broken(event):
            raise ConnectionError("socket closed")

        hub.subscribe("bad", "x", "student:*", broken)
        hub.subscribe("good", "y", "student:*", healthy)
        hub.publish(_event("student:a", 1))
        await hub.flush()
        await asyncio.sleep(0)

        assert hub.get("bad") is None
        hub.publish(_event("student:a", 2))
        await hub.flush()
        assert [e.payload["n"] for e in healthy.events] == [1, 2]
        hub.close()

    asyncio.run(scenario())


def test_slow_subscriber_does_not_block_publish_or_others():
    async def scenario():
        hub = BroadcastHub(queue_size=2)
        release = asyncio.Event()
        fast = Recorder()

        async def slow(event):
            await release.wait()

        hub.subscribe("slow", "s", "student:*", slow)
        hub.subscribe("fast", "f", "student:*", fast)
        for n in range(5):
            hub.publish(_event("student:a", n))
            await asyncio.sleep(0.01)

        # The slow queue overflowed and was dropped; the fast one saw everything.
        assert [e.payload["n"] for e in fast.events] == [0, 1, 2, 3, 4]
        assert hub.get("slow") is None
        assert hub.stats()["dropped"] == 1
        release.set()
        hub.close()

    asyncio.run(scenario())


def test_prune_dead_removes_finished_tasks():
    async def scenario():
        hub = BroadcastHub()
        subscriber = hub.subscribe("c1", "alice", "student:alice", Recorder())
        subscriber.task.cancel()
        await asyncio.sleep(0)
        assert hub.prune_dead() == 1
        assert hub.subscriber_count() == 0

    asyncio.run(scenario())


def test_unsubscribe_from_other_thread():
    async def scenario():
        hub = BroadcastHub()
        recorder = Recorder()
        hub.subscribe("c1", "alice", "student:alice", recorder)
        thread = threading.Thread(target=hub.unsubscribe, args=("c1",))
        thread.start()
        thread.join()
        await asyncio.sleep(0)
        hub.publish(_event("student:alice"))
        await hub.flush()
        assert recorder.events == []

    asyncio.run(scenario())
