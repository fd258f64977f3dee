"""Security outcome monitor.

Counts auth failures, rate anomalies and privilege violations per offender in
a rolling window. When an offender reaches the configured threshold one
SecurityAlert is raised; each further crossing inside the window raises
another one a severity step higher. Offenders idle for a full window are
forgotten. Alerts are persisted on a background writer thread so a slow or
failing store never reaches the request that triggered them.
"""

from __future__ import annotations

import logging
import time
from collections import Counter, deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Deque, Dict, Mapping, Optional, Set, Tuple, Union

import db
from schemas import SEVERITY_LADDER, BroadcastEvent, SecurityAlert, utcnow

_LOGGER = logging.getLogger(__name__)

_ALERT_LOGGER = logging.getLogger("progresshub.security")
if not _ALERT_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(asctime)s SECURITY %(message)s"))
    _ALERT_LOGGER.addHandler(_handler)
_ALERT_LOGGER.setLevel(logging.INFO)
_ALERT_LOGGER.propagate = False

AUTH_FAILURE = "auth_failure"
RATE_ANOMALY = "rate_anomaly"
PRIVILEGE_VIOLATION = "privilege_violation"

DEFAULT_THRESHOLDS: Dict[str, int] = {
    AUTH_FAILURE: 5,
    RATE_ANOMALY: 3,
    PRIVILEGE_VIOLATION: 1,
}

BASE_SEVERITY: Dict[str, str] = {
    AUTH_FAILURE: "medium",
    RATE_ANOMALY: "medium",
    PRIVILEGE_VIOLATION: "high",
}

# Severity a single sub-threshold event would carry; alerts always rank above it.
ISOLATED_SEVERITY = "low"


@dataclass(frozen=True)
class AuthFailure:
    kind: str
    source: Optional[str] = None
    subject_id: Optional[str] = None

    alert_kind = AUTH_FAILURE

    @property
    def offender(self) -> str:
        # Keyed by network origin: the claimed subject of a bad token is attacker-controlled.
        return self.source or "unknown"

    def details(self) -> Dict[str, Any]:
        return {"failure": self.kind, "source": self.source, "claimed_subject": self.subject_id}


@dataclass(frozen=True)
class RateAnomaly:
    subject_id: str
    request_rate: float

    alert_kind = RATE_ANOMALY

    @property
    def offender(self) -> str:
        return self.subject_id

    def details(self) -> Dict[str, Any]:
        return {"request_rate": self.request_rate}


@dataclass(frozen=True)
class PrivilegeViolation:
    subject_id: str
    resource: str

    alert_kind = PRIVILEGE_VIOLATION

    @property
    def offender(self) -> str:
        return self.subject_id

    def details(self) -> Dict[str, Any]:
        return {"resource": self.resource}


SecurityEvent = Union[AuthFailure, RateAnomaly, PrivilegeViolation]


@dataclass
class _Window:
    events: Deque[float] = field(default_factory=deque)
    offenses: Deque[float] = field(default_factory=deque)
    last_seen: float = 0.0


def escalate(base: str, steps: int) -> str:
    index = SEVERITY_LADDER.index(base) + max(0, steps)
    return SEVERITY_LADDER[min(index, len(SEVERITY_LADDER) - 1)]


class SecurityAlertMonitor:
    def __init__(
        self,
        window_seconds: float = 300.0,
        thresholds: Optional[Mapping[str, int]] = None,
        *,
        store: Optional[Callable[[SecurityAlert], None]] = None,
        hub: Any = None,
        rate_limit_per_minute: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.window_seconds = float(window_seconds)
        self.thresholds: Dict[str, int] = dict(DEFAULT_THRESHOLDS)
        if thresholds:
            for kind, value in thresholds.items():
                if int(value) < 1:
                    raise ValueError(f"threshold for {kind} must be >= 1")
                self.thresholds[kind] = int(value)
        self.rate_limit_per_minute = rate_limit_per_minute
        self._store = store or db.insert_security_alert
        self._hub = hub
        self._clock = clock
        self._lock = Lock()
        self._windows: Dict[Tuple[str, str], _Window] = {}
        self._requests: Dict[str, Deque[float]] = {}
        self._last_evict = clock()
        self._events_by_kind: Counter = Counter()
        self._alerts_by_kind: Counter = Counter()
        self._alerts_by_severity: Counter = Counter()
        self._persist_failures = 0
        self._pending: Set[Future] = set()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="alert-writer")

    def record_outcome(self, event: SecurityEvent) -> Optional[SecurityAlert]:
        """Count ``event``; return the SecurityAlert it raised, if any."""
        kind = event.alert_kind
        threshold = self.thresholds.get(kind, 1)
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            self._maybe_evict(now)
            self._events_by_kind[kind] += 1
            window = self._windows.setdefault((kind, event.offender), _Window())
            _trim(window.events, cutoff)
            _trim(window.offenses, cutoff)
            window.events.append(now)
            window.last_seen = now
            if len(window.events) < threshold:
                return None
            observed = len(window.events)
            window.events.clear()
            window.offenses.append(now)
            repeat = len(window.offenses)
            severity = escalate(BASE_SEVERITY.get(kind, "medium"), repeat - 1)
            self._alerts_by_kind[kind] += 1
            self._alerts_by_severity[severity] += 1

        details = event.details()
        details.update(
            {
                "offender": event.offender,
                "events_in_window": observed,
                "repeat_offense": repeat,
                "window_seconds": self.window_seconds,
            }
        )
        alert = SecurityAlert(
            id=db.new_alert_id(),
            subject_id=getattr(event, "subject_id", None),
            kind=kind,
            severity=severity,
            detected_at=utcnow(),
            details=details,
        )
        _ALERT_LOGGER.info(
            "alert=%s kind=%s severity=%s offender=%s repeat=%s",
            alert.id, kind, severity, event.offender, repeat,
        )
        self._persist_async(alert)
        self._notify(alert)
        return alert

    def on_auth_failure(self, error: Any, source: Optional[str]) -> None:
        """Failure listener for TokenAuthenticator."""
        self.record_outcome(
            AuthFailure(
                kind=getattr(error, "kind", "invalid"),
                source=source,
                subject_id=getattr(error, "subject_id", None),
            )
        )

    def observe_request(self, subject_id: str) -> Optional[SecurityAlert]:
        """Track per-subject request rate; report a RateAnomaly above the limit."""
        if not self.rate_limit_per_minute:
            return None
        now = self._clock()
        with self._lock:
            stamps = self._requests.setdefault(subject_id, deque())
            _trim(stamps, now - 60.0)
            stamps.append(now)
            if len(stamps) <= self.rate_limit_per_minute:
                return None
            rate = float(len(stamps))
            # Start a fresh minute so one burst is reported once.
            stamps.clear()
        return self.record_outcome(RateAnomaly(subject_id=subject_id, request_rate=rate))

    def tracked_sources(self) -> int:
        with self._lock:
            self._maybe_evict(self._clock(), force=True)
            return len(self._windows) + len(self._requests)

    def metrics(self, top: int = 10) -> Dict[str, Any]:
        with self._lock:
            offenders = Counter(
                {f"{kind}:{offender}": len(window.offenses) for (kind, offender), window in self._windows.items()
                 if window.offenses}
            )
            return {
                "window_seconds": self.window_seconds,
                "thresholds": dict(self.thresholds),
                "events_by_kind": dict(self._events_by_kind),
                "alerts_by_kind": dict(self._alerts_by_kind),
                "alerts_by_severity": dict(self._alerts_by_severity),
                "tracked_offenders": len(self._windows),
                "top_offenders": [{"offender": name, "alerts": count} for name, count in offenders.most_common(top)],
                "persist_failures": self._persist_failures,
            }

    def flush(self, timeout: Optional[float] = 5.0) -> None:
        """Block until queued alert writes have finished (tests, shutdown)."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    # -- internals --
    def _maybe_evict(self, now: float, force: bool = False) -> None:
        if not force and now - self._last_evict < min(self.window_seconds, 1.0):
            return
        self._last_evict = now
        cutoff = now - self.window_seconds
        for key in [k for k, w in self._windows.items() if w.last_seen <= cutoff]:
            del self._windows[key]
        minute_ago = now - 60.0
        for key in [k for k, stamps in self._requests.items() if not stamps or stamps[-1] <= minute_ago]:
            del self._requests[key]

    def _persist_async(self, alert: SecurityAlert) -> None:
        try:
            future = self._executor.submit(self._persist, alert)
        except RuntimeError:
            _LOGGER.error("Alert writer unavailable; alert %s not persisted", alert.id)
            return
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _persist(self, alert: SecurityAlert) -> None:
        try:
            self._store(alert)
        except Exception:
            with self._lock:
                self._persist_failures += 1
            _LOGGER.error("Failed to persist security alert %s", alert.id, exc_info=True)

    def _notify(self, alert: SecurityAlert) -> None:
        if self._hub is None:
            return
        try:
            self._hub.publish(
                BroadcastEvent(type="security_alert", routing_key="alerts", payload=alert.model_dump(mode="json"))
            )
        except Exception:
            _LOGGER.warning("Alert notification for %s failed", alert.id, exc_info=True)


def _trim(stamps: Deque[float], cutoff: float) -> None:
    while stamps and stamps[0] <= cutoff:
        stamps.popleft()
