import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

import db
from auth import ExpiredCredential
from engines.broadcast import BroadcastHub
from engines.caching import Cache
from engines.progress_tracker import AccessDenied, ProgressTracker, summary_key
from engines.security_monitor import SecurityAlertMonitor


@pytest.fixture
def tracker(temp_db):
    alerts = []
    monitor = SecurityAlertMonitor(window_seconds=60, store=alerts.append)
    tracker = ProgressTracker(Cache(), BroadcastHub(), monitor=monitor, default_passing_score=0.8)
    tracker.alerts = alerts
    yield tracker
    tracker.hub.close()
    monitor.close()


def test_best_score_kept_and_attempts_counted(tracker, make_identity):
    alice = make_identity("alice")
    tracker.record_attempt(alice, "alice", "ex-1", 0.4)
    tracker.record_attempt(alice, "alice", "ex-1", 0.9)
    record = tracker.record_attempt(alice, "alice", "ex-1", 0.6, time_spent=12)

    assert record.score == pytest.approx(0.9)
    assert record.attempts == 3
    assert record.completed_at is not None
    assert record.time_spent == pytest.approx(12)


def test_completed_at_only_set_when_passing(tracker, make_identity):
    alice = make_identity("alice")
    first = tracker.record_attempt(alice, "alice", "ex-2", 0.5)
    assert first.completed_at is None
    passed = tracker.record_attempt(alice, "alice", "ex-2", 0.85)
    assert passed.completed_at is not None
    later = tracker.record_attempt(alice, "alice", "ex-2", 0.1)
    assert later.completed_at == passed.completed_at


def test_per_attempt_passing_score_overrides_default(tracker, make_identity):
    alice = make_identity("alice")
    record = tracker.record_attempt(alice, "alice", "ex-3", 0.5, passing_score=0.5)
    assert record.completed_at is not None


def test_concurrent_attempts_lose_no_updates(tracker, make_identity):
    alice = make_identity("alice")
    scores = [0.1, 0.2, 0.95, 0.3, 0.4, 0.5, 0.6, 0.7]

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda s: tracker.record_attempt(alice, "alice", "ex-race", s), scores))

    stored = db.get_progress("alice", "ex-race")
    assert stored.attempts == len(scores)
    assert stored.score == pytest.approx(0.95)


def test_attempt_invalidates_cached_summary(tracker, make_identity):
    alice = make_identity("alice")
    tracker.record_attempt(alice, "alice", "ex-1", 0.5)
    before = tracker.student_summary(alice, "alice")
    assert tracker.cache.get(summary_key("alice")) is not None

    tracker.record_attempt(alice, "alice", "ex-2", 1.0)

    assert tracker.cache.get(summary_key("alice")) is None
    after = tracker.student_summary(alice, "alice")
    assert before.total_attempts == 1
    assert after.total_attempts == 2
    assert after.exercises == 2
    assert after.completed == 1


def test_subscriber_reading_summary_on_update_sees_new_value(tracker, make_identity):
    alice = make_identity("alice")
    teacher = make_identity("t-1", role="teacher")

    async def scenario():
        seen = []

        async def on_update(event):
            seen.append((event.type, tracker.student_summary(teacher, "alice").total_attempts))

        tracker.hub.subscribe("conn-1", "t-1", "student:alice", on_update)
        tracker.student_summary(teacher, "alice")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, tracker.record_attempt, alice, "alice", "ex-1", 0.7)
        await tracker.hub.flush()
        return seen

    assert asyncio.run(scenario()) == [("progress_update", 1)]


def test_update_is_routed_to_the_student_channel(tracker, make_identity):
    alice = make_identity("alice")

    async def scenario():
        own, other = [], []

        async def own_sender(event):
            own.append(event)

        async def other_sender(event):
            other.append(event)

        tracker.hub.subscribe("a", "alice", "student:alice", own_sender)
        tracker.hub.subscribe("b", "bob", "student:bob", other_sender)
        tracker.record_attempt(alice, "alice", "ex-1", 0.9)
        await tracker.hub.flush()
        return own, other

    own, other = asyncio.run(scenario())
    assert len(own) == 1
    assert own[0].payload["exercise_id"] == "ex-1"
    assert own[0].payload["attempts"] == 1
    assert other == []


def test_student_cannot_touch_another_student(tracker, make_identity):
    bob = make_identity("bob")
    with pytest.raises(AccessDenied):
        tracker.record_attempt(bob, "alice", "ex-1", 1.0)
    with pytest.raises(AccessDenied):
        tracker.student_summary(bob, "alice")

    tracker.monitor.flush()
    assert db.get_progress("alice", "ex-1") is None
    assert [alert.kind for alert in tracker.alerts] == ["privilege_violation", "privilege_violation"]
    assert tracker.alerts[0].subject_id == "bob"


def test_staff_may_record_for_students(tracker, make_identity):
    teacher = make_identity("t-1", role="teacher")
    record = tracker.record_attempt(teacher, "alice", "ex-1", 0.3)
    assert record.student_id == "alice"


def test_expired_identity_is_rejected(tracker):
    from schemas import IdentityContext

    past = datetime.now(timezone.utc) - timedelta(hours=1)
    identity = IdentityContext(
        subject_id="alice", role="student", issued_at=past - timedelta(hours=1), expires_at=past
    )
    with pytest.raises(ExpiredCredential):
        tracker.record_attempt(identity, "alice", "ex-1", 1.0)
    assert db.get_progress("alice", "ex-1") is None


def test_persistence_failure_surfaces_and_skips_broadcast(tracker, make_identity, monkeypatch):
    def broken(*args, **kwargs):
        raise db.PersistenceError("disk I/O error")

    monkeypatch.setattr(db, "record_progress_attempt", broken)
    tracker.cache.set(summary_key("alice"), "cached")

    with pytest.raises(db.PersistenceError):
        tracker.record_attempt(make_identity("alice"), "alice", "ex-1", 1.0)

    assert tracker.cache.get(summary_key("alice")) == "cached"
    assert tracker.hub.stats()["published"] == 0


def test_records_listing(tracker, make_identity):
    alice = make_identity("alice")
    tracker.record_attempt(alice, "alice", "ex-1", 0.2)
    tracker.record_attempt(alice, "alice", "ex-2", 0.4)
    records = tracker.student_records(alice, "alice")
    assert sorted(r.exercise_id for r in records) == ["ex-1", "ex-2"]
