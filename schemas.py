"""Pydantic schemas for identities, persisted records and request payloads."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

__all__ = [
    "Role",
    "Severity",
    "SEVERITY_LADDER",
    "IdentityContext",
    "ProgressRecord",
    "ProgressSummary",
    "SecurityAlert",
    "RetentionPolicy",
    "BroadcastEvent",
    "AttemptBody",
    "SweepReport",
    "utcnow",
]

Role = Literal["student", "teacher", "admin"]
Severity = Literal["low", "medium", "high", "critical"]

SEVERITY_LADDER: tuple[str, ...] = ("low", "medium", "high", "critical")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdentityContext(BaseModel):
    """Verified caller identity attached to one request. Never persisted."""

    model_config = ConfigDict(frozen=True)

    subject_id: str
    role: Role
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    @property
    def is_staff(self) -> bool:
        return self.role in ("teacher", "admin")


class ProgressRecord(BaseModel):
    student_id: str | None
    exercise_id: str
    score: float
    attempts: int
    completed_at: datetime | None = None
    time_spent: float = 0.0
    updated_at: datetime | None = None


class ProgressSummary(BaseModel):
    student_id: str
    exercises: int
    completed: int
    total_attempts: int
    average_best_score: float
    total_time_spent: float
    computed_at: datetime = Field(default_factory=utcnow)


class SecurityAlert(BaseModel):
    """Append-only alert row."""

    model_config = ConfigDict(frozen=True)

    id: str
    subject_id: str | None = None
    kind: str
    severity: Severity
    detected_at: datetime
    details: Dict[str, Any] = Field(default_factory=dict)


class RetentionPolicy(BaseModel):
    policy_name: str
    data_type: str
    retention_days: int
    is_active: bool = True

    @model_validator(mode="after")
    def _active_requires_positive_days(self) -> "RetentionPolicy":
        if self.is_active and self.retention_days <= 0:
            raise ValueError("retention_days must be > 0 for an active policy")
        return self


class BroadcastEvent(BaseModel):
    type: str
    routing_key: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    published_at: datetime = Field(default_factory=utcnow)


class AttemptBody(BaseModel):
    student_id: str | None = None
    exercise_id: str = Field(min_length=1)
    score: float = Field(ge=0.0)
    time_spent: float = Field(default=0.0, ge=0.0)
    passing_score: float | None = Field(default=None, ge=0.0)

    @field_validator("exercise_id")
    @classmethod
    def _strip_exercise(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("exercise_id required")
        return value


class SweepReport(BaseModel):
    started_at: datetime
    finished_at: datetime | None = None
    policies_executed: int = 0
    policies_failed: int = 0
    records_processed: int = 0
    per_policy: Dict[str, int] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)
