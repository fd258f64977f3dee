"""Attempt recording with cache invalidation and live progress updates."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

import db
from auth import ExpiredCredential
from engines.broadcast import BroadcastHub
from engines.caching import Cache
from engines.security_monitor import PrivilegeViolation, SecurityAlertMonitor
from schemas import BroadcastEvent, IdentityContext, ProgressRecord, ProgressSummary, utcnow

_LOGGER = logging.getLogger(__name__)


class AccessDenied(Exception):
    """The identity may not act on the requested student's data."""


def summary_key(student_id: str) -> str:
    return f"progress:{student_id}:summary"


def student_views(student_id: str) -> str:
    return f"progress:{student_id}:*"


def student_channel(student_id: str) -> str:
    return f"student:{student_id}"


class ProgressTracker:
    """Writes attempts, then invalidates cached views, then broadcasts.

    The order matters: a subscriber that re-reads the summary on receipt of
    the update must miss the cache and see the new row.
    """

    def __init__(
        self,
        cache: Cache,
        hub: BroadcastHub,
        *,
        monitor: Optional[SecurityAlertMonitor] = None,
        default_passing_score: float = 0.8,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cache = cache
        self.hub = hub
        self.monitor = monitor
        self.default_passing_score = default_passing_score
        self._clock = clock

    def authorize(self, identity: IdentityContext, student_id: str, resource: str) -> None:
        if identity.is_expired(self._clock()):
            raise ExpiredCredential("credential expired during request", subject_id=identity.subject_id)
        if identity.is_staff or identity.subject_id == student_id:
            return
        if self.monitor is not None:
            self.monitor.record_outcome(PrivilegeViolation(subject_id=identity.subject_id, resource=resource))
        raise AccessDenied(f"{identity.subject_id} may not access {resource}")

    def record_attempt(
        self,
        identity: IdentityContext,
        student_id: str,
        exercise_id: str,
        score: float,
        time_spent: float = 0.0,
        passing_score: Optional[float] = None,
    ) -> ProgressRecord:
        """Record one attempt; raises db.PersistenceError if the write fails."""
        self.authorize(identity, student_id, f"progress:{student_id}")
        threshold = self.default_passing_score if passing_score is None else passing_score
        now = self._clock()

        record = db.record_progress_attempt(
            student_id,
            exercise_id,
            score,
            time_spent,
            passed=score >= threshold,
            now=now,
        )
        self.cache.invalidate(student_views(student_id))
        self.hub.publish(
            BroadcastEvent(
                type="progress_update",
                routing_key=student_channel(student_id),
                payload=record.model_dump(mode="json"),
                published_at=now,
            )
        )
        _LOGGER.debug(
            "Attempt recorded for %s/%s: score=%s attempts=%s", student_id, exercise_id, record.score, record.attempts
        )
        return record

    def student_summary(self, identity: IdentityContext, student_id: str) -> ProgressSummary:
        self.authorize(identity, student_id, f"progress:{student_id}")
        return self.cache.get_or_compute(summary_key(student_id), lambda: self._compute_summary(student_id))

    def student_records(self, identity: IdentityContext, student_id: str, limit: int = 100) -> list[ProgressRecord]:
        self.authorize(identity, student_id, f"progress:{student_id}")
        return db.list_progress(student_id, limit)

    def _compute_summary(self, student_id: str) -> ProgressSummary:
        data: dict[str, Any] = db.summarize_progress(student_id)
        return ProgressSummary(**data, computed_at=self._clock())
