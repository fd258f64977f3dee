"""Scheduled enforcement of data retention policies.

A sweep walks Idle -> Scanning -> Purging -> Idle. Scanning resolves each
active policy to a data category and a cutoff (``now - retention_days``);
Purging applies the category's action to rows older than the cutoff. Personal
categories are anonymized, operational ones hard-deleted. Every purge is
guarded by the cutoff itself, so rerunning a sweep after a crash only touches
rows that still qualify. A failing policy is logged and left for the next run;
it never stops the others.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import db
from schemas import RetentionPolicy, SweepReport, utcnow

_LOGGER = logging.getLogger(__name__)


class SweepState(str, enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    PURGING = "purging"


@dataclass(frozen=True)
class DataCategory:
    data_type: str
    action: str  # 'anonymize' | 'delete'
    purge: Callable[[datetime, datetime], int]
    # Cache keys derived from this data; dropped after rows change.
    cache_pattern: Optional[str] = None


def _anonymize_learning_data(cutoff: datetime, now: datetime) -> int:
    return db.anonymize_progress_before(cutoff, now)


def _delete_security_logs(cutoff: datetime, now: datetime) -> int:
    return db.delete_security_alerts_before(cutoff)


def _delete_audit_logs(cutoff: datetime, now: datetime) -> int:
    return db.delete_retention_runs_before(cutoff)


DATA_CATEGORIES: Dict[str, DataCategory] = {
    "learning_data": DataCategory(
        "learning_data", "anonymize", _anonymize_learning_data, cache_pattern="progress:*"
    ),
    "security_logs": DataCategory("security_logs", "delete", _delete_security_logs),
    "audit_logs": DataCategory("audit_logs", "delete", _delete_audit_logs),
}


class RetentionEnforcer:
    def __init__(
        self,
        interval_seconds: int = 86400,
        *,
        categories: Optional[Mapping[str, DataCategory]] = None,
        load_policies: Optional[Callable[[], List[RetentionPolicy]]] = None,
        record_run: Optional[Callable[[SweepReport], object]] = None,
        cache: Any = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if interval_seconds < 1:
            raise ValueError(f"Interval must be >= 1 second: {interval_seconds}")
        self.interval_seconds = interval_seconds
        self.categories: Dict[str, DataCategory] = dict(categories or DATA_CATEGORIES)
        self._load_policies = load_policies or (lambda: db.list_retention_policies(active_only=True))
        self._record_run = record_run or db.record_retention_run
        self._clock = clock
        self._cache = cache
        self._state = SweepState.IDLE
        self._state_lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_report: Optional[SweepReport] = None

    @property
    def state(self) -> SweepState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: SweepState) -> None:
        with self._state_lock:
            self._state = state

    def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Run one sweep. Concurrent callers queue behind the running sweep."""
        with self._run_lock:
            now = now or self._clock()
            report = SweepReport(started_at=now)
            _LOGGER.info("Retention sweep started at %s", now.isoformat())
            try:
                self._set_state(SweepState.SCANNING)
                plan = self._scan(now, report)
                self._set_state(SweepState.PURGING)
                self._purge(plan, now, report)
            finally:
                self._set_state(SweepState.IDLE)
                report.finished_at = self._clock()
                self.last_report = report
                try:
                    self._record_run(report)
                except Exception:
                    _LOGGER.error("Failed to record retention run", exc_info=True)
            _LOGGER.info(
                "Retention sweep finished: %s policies applied, %s failed, %s records processed",
                report.policies_executed, report.policies_failed, report.records_processed,
            )
            return report

    def _scan(self, now: datetime, report: SweepReport) -> List[Tuple[RetentionPolicy, DataCategory, datetime]]:
        try:
            policies = self._load_policies()
        except Exception as exc:
            _LOGGER.error("Could not load retention policies", exc_info=True)
            report.errors.append(f"load_policies: {exc}")
            return []

        plan: List[Tuple[RetentionPolicy, DataCategory, datetime]] = []
        for policy in policies:
            if not policy.is_active:
                continue
            category = self.categories.get(policy.data_type)
            if category is None:
                report.policies_failed += 1
                report.errors.append(f"{policy.policy_name}: unknown data type {policy.data_type!r}")
                _LOGGER.error("Retention policy %s targets unknown data type %s", policy.policy_name, policy.data_type)
                continue
            plan.append((policy, category, now - timedelta(days=policy.retention_days)))
        return plan

    def _purge(
        self,
        plan: List[Tuple[RetentionPolicy, DataCategory, datetime]],
        now: datetime,
        report: SweepReport,
    ) -> None:
        for policy, category, cutoff in plan:
            try:
                processed = int(category.purge(cutoff, now))
            except Exception as exc:
                report.policies_failed += 1
                report.errors.append(f"{policy.policy_name}: {exc}")
                _LOGGER.error("Retention policy %s failed; will retry next run", policy.policy_name, exc_info=True)
                continue
            report.policies_executed += 1
            report.records_processed += processed
            report.per_policy[policy.policy_name] = processed
            if processed and category.cache_pattern and self._cache is not None:
                self._cache.invalidate(category.cache_pattern)
            _LOGGER.info(
                "Retention policy %s (%s, %s) processed %s records older than %s",
                policy.policy_name, category.data_type, category.action, processed, cutoff.isoformat(),
            )

    # -- scheduling --
    def start(self, run_immediately: bool = True) -> None:
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("Retention enforcer already running")
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, args=(run_immediately,), name="retention-sweep", daemon=True
        )
        self._thread.start()
        _LOGGER.info("Retention enforcer scheduled every %ss", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self, run_immediately: bool) -> None:
        if not run_immediately and self._stop.wait(self.interval_seconds):
            return
        while not self._stop.is_set():
            try:
                self.run_sweep()
            except Exception:
                # Error isolation - the schedule survives a broken sweep
                _LOGGER.error("Retention sweep crashed", exc_info=True)
            if self._stop.wait(self.interval_seconds):
                break
