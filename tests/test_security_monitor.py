"""Tests for the security alert monitor."""

import asyncio

import pytest

import db
from engines.broadcast import BroadcastHub
from engines.security_monitor import (
    ISOLATED_SEVERITY,
    AuthFailure,
    PrivilegeViolation,
    RateAnomaly,
    SecurityAlertMonitor,
)
from schemas import SEVERITY_LADDER


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _rank(severity: str) -> int:
    return SEVERITY_LADDER.index(severity)


@pytest.fixture
def stored():
    return []


@pytest.fixture
def monitor(stored):
    clock = FakeClock()
    mon = SecurityAlertMonitor(window_seconds=60, store=stored.append, clock=clock)
    mon.clock = clock
    yield mon
    mon.close()


def test_five_failures_from_one_source_raise_one_escalated_alert(monitor, stored):
    alerts = []
    for _ in range(5):
        monitor.clock.now += 1
        alerts.append(monitor.record_outcome(AuthFailure(kind="invalid", source="10.0.0.7")))
    monitor.flush()

    raised = [a for a in alerts if a is not None]
    assert len(raised) == 1
    assert alerts[-1] is raised[0]
    assert _rank(raised[0].severity) > _rank(ISOLATED_SEVERITY)
    assert raised[0].details["offender"] == "10.0.0.7"
    assert [a.id for a in stored] == [raised[0].id]


def test_failures_outside_window_do_not_accumulate(monitor):
    for _ in range(4):
        monitor.clock.now += 1
        assert monitor.record_outcome(AuthFailure(kind="invalid", source="10.0.0.7")) is None
    monitor.clock.now += 61
    assert monitor.record_outcome(AuthFailure(kind="invalid", source="10.0.0.7")) is None


def test_sources_are_counted_separately(monitor):
    for n in range(4):
        monitor.record_outcome(AuthFailure(kind="invalid", source="10.0.0.1"))
        monitor.record_outcome(AuthFailure(kind="invalid", source="10.0.0.2"))
    assert monitor.record_outcome(AuthFailure(kind="expired", source="10.0.0.3")) is None


def test_claimed_subject_does_not_change_the_key(monitor):
    results = [
        monitor.record_outcome(AuthFailure(kind="invalid", source="10.0.0.9", subject_id=f"user-{n}"))
        for n in range(5)
    ]
    assert results[-1] is not None
    assert results[-1].subject_id == "user-4"


def test_repeat_offenses_escalate(monitor):
    first = second = None
    for n in range(10):
        monitor.clock.now += 1
        alert = monitor.record_outcome(AuthFailure(kind="invalid", source="10.0.0.7"))
        if n == 4:
            first = alert
        if n == 9:
            second = alert
    assert first is not None and second is not None
    assert _rank(second.severity) == _rank(first.severity) + 1
    assert second.details["repeat_offense"] == 2


def test_privilege_violation_alerts_immediately(monitor):
    alert = monitor.record_outcome(PrivilegeViolation(subject_id="s1", resource="progress:s2"))
    assert alert is not None
    assert alert.severity == "high"
    again = monitor.record_outcome(PrivilegeViolation(subject_id="s1", resource="progress:s3"))
    assert again.severity == "critical"


def test_rate_observation_reports_anomaly(stored):
    clock = FakeClock()
    mon = SecurityAlertMonitor(
        window_seconds=60,
        thresholds={"rate_anomaly": 1},
        store=stored.append,
        rate_limit_per_minute=3,
        clock=clock,
    )
    try:
        results = [mon.observe_request("s1") for _ in range(4)]
        assert results[:3] == [None, None, None]
        assert results[3] is not None
        assert results[3].kind == "rate_anomaly"
        assert results[3].details["request_rate"] == 4.0
    finally:
        mon.close()


def test_idle_offenders_are_evicted(monitor):
    for n in range(200):
        monitor.record_outcome(AuthFailure(kind="invalid", source=f"10.1.0.{n}"))
    assert monitor.tracked_sources() == 200
    monitor.clock.now += 61
    assert monitor.tracked_sources() == 0


def test_persistence_failure_is_swallowed():
    def failing_store(alert):
        raise RuntimeError("disk full")

    mon = SecurityAlertMonitor(window_seconds=60, thresholds={"privilege_violation": 1}, store=failing_store)
    try:
        alert = mon.record_outcome(PrivilegeViolation(subject_id="s1", resource="x"))
        mon.flush()
        assert alert is not None
        assert mon.metrics()["persist_failures"] == 1
    finally:
        mon.close()


def test_alerts_persist_to_table(temp_db):
    mon = SecurityAlertMonitor(window_seconds=60)
    try:
        alert = mon.record_outcome(PrivilegeViolation(subject_id="s1", resource="progress:s2"))
        mon.flush()
    finally:
        mon.close()
    rows = db.list_security_alerts(kind="privilege_violation")
    assert [row.id for row in rows] == [alert.id]
    assert rows[0].details["resource"] == "progress:s2"


def test_alert_is_published_on_alert_channel():
    async def scenario():
        hub = BroadcastHub()
        received = []

        async def sender(event):
            received.append(event)

        hub.subscribe("admin-1", "admin", "alerts", sender)
        mon = SecurityAlertMonitor(window_seconds=60, store=lambda alert: None, hub=hub)
        try:
            alert = mon.record_outcome(PrivilegeViolation(subject_id="s1", resource="x"))
            await hub.flush()
        finally:
            mon.close()
            hub.close()
        assert [e.type for e in received] == ["security_alert"]
        assert received[0].payload["id"] == alert.id

    asyncio.run(scenario())


def test_rejects_bad_configuration():
    with pytest.raises(ValueError):
        SecurityAlertMonitor(window_seconds=0)
    with pytest.raises(ValueError):
        SecurityAlertMonitor(thresholds={"auth_failure": 0})


def test_metrics_summarise_alerts(monitor):
    for _ in range(5):
        monitor.record_outcome(AuthFailure(kind="invalid", source="10.0.0.7"))
    monitor.record_outcome(RateAnomaly(subject_id="s1", request_rate=500))
    metrics = monitor.metrics()
    assert metrics["events_by_kind"] == {"auth_failure": 5, "rate_anomaly": 1}
    assert metrics["alerts_by_kind"] == {"auth_failure": 1}
    assert metrics["top_offenders"][0] == {"offender": "auth_failure:10.0.0.7", "alerts": 1}
