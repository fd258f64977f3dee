import json
import os
import sqlite3
from uuid import uuid4
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from schemas import ProgressRecord, RetentionPolicy, SecurityAlert, SweepReport
from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

DEFAULT_RETENTION_POLICIES = (
    RetentionPolicy(policy_name="learning-data-3y", data_type="learning_data", retention_days=1095),
    RetentionPolicy(policy_name="security-logs-90d", data_type="security_logs", retention_days=90),
    RetentionPolicy(policy_name="audit-logs-1y", data_type="audit_logs", retention_days=365),
)


class PersistenceError(Exception):
    """A write did not durably succeed; the caller may retry."""


def configure(path: str) -> None:
    """Point the module at `path`, replacing the pool if the path changed."""
    global DB_PATH, _pool
    if path == DB_PATH:
        return
    old = _pool
    DB_PATH = path
    _pool = SQLiteConnectionPool(path, max_connections=old.max_connections)
    old.close_all()


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _tx():
    """Return a context manager wrapping one immediate write transaction."""
    return _pool.transaction()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS progress_tracking (
              id            INTEGER PRIMARY KEY AUTOINCREMENT,
              student_id    TEXT,
              exercise_id   TEXT NOT NULL,
              score         REAL NOT NULL DEFAULT 0,
              attempts      INTEGER NOT NULL DEFAULT 0,
              completed_at  TEXT,
              time_spent    REAL NOT NULL DEFAULT 0,
              created_at    TEXT NOT NULL,
              updated_at    TEXT NOT NULL,
              anonymized_at TEXT,
              UNIQUE(student_id, exercise_id)
            );

            CREATE INDEX IF NOT EXISTS idx_progress_student ON progress_tracking(student_id);

            CREATE TABLE IF NOT EXISTS security_alerts (
              id          TEXT PRIMARY KEY,
              subject_id  TEXT,
              kind        TEXT NOT NULL,
              severity    TEXT NOT NULL CHECK (severity IN ('low','medium','high','critical')),
              detected_at TEXT NOT NULL,
              details     TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_security_alerts_detected ON security_alerts(detected_at);

            CREATE TABLE IF NOT EXISTS data_retention_policies (
              policy_name    TEXT PRIMARY KEY,
              data_type      TEXT NOT NULL,
              retention_days INTEGER NOT NULL,
              is_active      INTEGER NOT NULL DEFAULT 1,
              CHECK (is_active = 0 OR retention_days > 0)
            );

            CREATE TABLE IF NOT EXISTS revoked_subjects (
              subject_id  TEXT PRIMARY KEY,
              reason      TEXT,
              revoked_at  TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS retention_runs (
              id                INTEGER PRIMARY KEY AUTOINCREMENT,
              started_at        TEXT NOT NULL,
              finished_at       TEXT NOT NULL,
              policies_executed INTEGER NOT NULL DEFAULT 0,
              policies_failed   INTEGER NOT NULL DEFAULT 0,
              records_processed INTEGER NOT NULL DEFAULT 0,
              per_policy        TEXT,
              errors            TEXT
            );
            """
        )
    seed_default_policies()


def ping() -> bool:
    try:
        _query("SELECT 1")
    except sqlite3.Error:
        return False
    return True


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str)


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _ts(dt: datetime) -> str:
    """Canonical timestamp text; fixed width so string order matches time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def utc_timestamp() -> str:
    return _ts(datetime.now(timezone.utc))


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# -------------- progress tracking --------------
_PROGRESS_COLUMNS = "student_id, exercise_id, score, attempts, completed_at, time_spent, updated_at"


def _row_to_progress(row: sqlite3.Row) -> ProgressRecord:
    return ProgressRecord(
        student_id=row["student_id"],
        exercise_id=row["exercise_id"],
        score=float(row["score"]),
        attempts=int(row["attempts"]),
        completed_at=_parse_timestamp(row["completed_at"]),
        time_spent=float(row["time_spent"] or 0.0),
        updated_at=_parse_timestamp(row["updated_at"]),
    )


def record_progress_attempt(
    student_id: str,
    exercise_id: str,
    score: float,
    time_spent: float,
    *,
    passed: bool,
    now: datetime,
) -> ProgressRecord:
    """Apply one attempt atomically: best score wins, attempts always increment.

    The upsert and the read-back run in one immediate transaction so two
    concurrent attempts on the same row cannot both observe the same count.
    """
    stamp = _ts(now)
    completed_at = stamp if passed else None
    try:
        with _tx() as con:
            con.execute(
                """
                INSERT INTO progress_tracking(
                  student_id, exercise_id, score, attempts, completed_at, time_spent, created_at, updated_at
                )
                VALUES (?,?,?,1,?,?,?,?)
                ON CONFLICT(student_id, exercise_id) DO UPDATE SET
                  score=MAX(progress_tracking.score, excluded.score),
                  attempts=progress_tracking.attempts + 1,
                  completed_at=COALESCE(excluded.completed_at, progress_tracking.completed_at),
                  time_spent=progress_tracking.time_spent + excluded.time_spent,
                  updated_at=excluded.updated_at
                """,
                (student_id, exercise_id, float(score), completed_at, float(time_spent), stamp, stamp),
            )
            row = con.execute(
                f"SELECT {_PROGRESS_COLUMNS} FROM progress_tracking WHERE student_id = ? AND exercise_id = ?",
                (student_id, exercise_id),
            ).fetchone()
    except sqlite3.Error as exc:
        raise PersistenceError(f"progress write failed for {student_id}/{exercise_id}: {exc}") from exc
    if row is None:
        raise PersistenceError(f"progress row missing after write for {student_id}/{exercise_id}")
    return _row_to_progress(row)


def get_progress(student_id: str, exercise_id: str) -> Optional[ProgressRecord]:
    rows = _query(
        f"SELECT {_PROGRESS_COLUMNS} FROM progress_tracking WHERE student_id = ? AND exercise_id = ?",
        (student_id, exercise_id),
    )
    return _row_to_progress(rows[0]) if rows else None


def list_progress(student_id: str, limit: int = 100) -> list[ProgressRecord]:
    rows = _query(
        f"""
        SELECT {_PROGRESS_COLUMNS}
        FROM progress_tracking
        WHERE student_id = ?
        ORDER BY updated_at DESC
        LIMIT ?
        """,
        (student_id, int(limit)),
    )
    return [_row_to_progress(row) for row in rows]


def summarize_progress(student_id: str) -> Dict[str, Any]:
    rows = _query(
        """
        SELECT COUNT(*) AS exercises,
               SUM(CASE WHEN completed_at IS NOT NULL THEN 1 ELSE 0 END) AS completed,
               COALESCE(SUM(attempts), 0) AS total_attempts,
               COALESCE(AVG(score), 0.0) AS average_best_score,
               COALESCE(SUM(time_spent), 0.0) AS total_time_spent
        FROM progress_tracking
        WHERE student_id = ?
        """,
        (student_id,),
    )
    row = rows[0]
    return {
        "student_id": student_id,
        "exercises": int(row["exercises"] or 0),
        "completed": int(row["completed"] or 0),
        "total_attempts": int(row["total_attempts"] or 0),
        "average_best_score": float(row["average_best_score"] or 0.0),
        "total_time_spent": float(row["total_time_spent"] or 0.0),
    }


def anonymize_progress_before(cutoff: datetime, now: datetime) -> int:
    """Null the student reference on rows older than cutoff; keep aggregates."""
    with _tx() as con:
        cur = con.execute(
            """
            UPDATE progress_tracking
            SET student_id = NULL, anonymized_at = ?
            WHERE student_id IS NOT NULL
              AND COALESCE(completed_at, updated_at) < ?
            """,
            (_ts(now), _ts(cutoff)),
        )
        return cur.rowcount


def count_anonymized_progress() -> int:
    rows = _query("SELECT COUNT(*) AS n FROM progress_tracking WHERE student_id IS NULL")
    return int(rows[0]["n"])


# -------------- security alerts --------------
def insert_security_alert(alert: SecurityAlert) -> None:
    _exec(
        """
        INSERT INTO security_alerts(id, subject_id, kind, severity, detected_at, details)
        VALUES (?,?,?,?,?,?)
        """,
        (
            alert.id,
            alert.subject_id,
            alert.kind,
            alert.severity,
            _ts(alert.detected_at),
            json_dumps(alert.details),
        ),
    )


def list_security_alerts(
    *,
    kind: Optional[str] = None,
    severity: Optional[str] = None,
    subject_id: Optional[str] = None,
    limit: int = 100,
) -> list[SecurityAlert]:
    clauses = []
    params: list[Any] = []
    if kind:
        clauses.append("kind = ?")
        params.append(kind)
    if severity:
        clauses.append("severity = ?")
        params.append(severity)
    if subject_id:
        clauses.append("subject_id = ?")
        params.append(subject_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(int(limit))
    rows = _query(
        f"""
        SELECT id, subject_id, kind, severity, detected_at, details
        FROM security_alerts
        {where}
        ORDER BY detected_at DESC
        LIMIT ?
        """,
        params,
    )
    return [
        SecurityAlert(
            id=row["id"],
            subject_id=row["subject_id"],
            kind=row["kind"],
            severity=row["severity"],
            detected_at=_parse_timestamp(row["detected_at"]),
            details=_decode_json_field(row["details"]) or {},
        )
        for row in rows
    ]


def delete_security_alerts_before(cutoff: datetime) -> int:
    with _tx() as con:
        cur = con.execute("DELETE FROM security_alerts WHERE detected_at < ?", (_ts(cutoff),))
        return cur.rowcount


# -------------- revocation (administrative) --------------
def revoke_subject(subject_id: str, reason: Optional[str] = None) -> None:
    _exec(
        """
        INSERT INTO revoked_subjects(subject_id, reason, revoked_at) VALUES (?,?,?)
        ON CONFLICT(subject_id) DO UPDATE SET reason=excluded.reason, revoked_at=excluded.revoked_at
        """,
        (subject_id, reason, utc_timestamp()),
    )


def restore_subject(subject_id: str) -> None:
    _exec("DELETE FROM revoked_subjects WHERE subject_id = ?", (subject_id,))


def is_subject_revoked(subject_id: str) -> bool:
    rows = _query("SELECT 1 FROM revoked_subjects WHERE subject_id = ?", (subject_id,))
    return bool(rows)


# -------------- retention --------------
def seed_default_policies() -> None:
    rows = _query("SELECT COUNT(*) AS n FROM data_retention_policies")
    if rows[0]["n"]:
        return
    for policy in DEFAULT_RETENTION_POLICIES:
        upsert_retention_policy(policy)


def upsert_retention_policy(policy: RetentionPolicy) -> None:
    _exec(
        """
        INSERT INTO data_retention_policies(policy_name, data_type, retention_days, is_active)
        VALUES (?,?,?,?)
        ON CONFLICT(policy_name) DO UPDATE SET
          data_type=excluded.data_type,
          retention_days=excluded.retention_days,
          is_active=excluded.is_active
        """,
        (policy.policy_name, policy.data_type, int(policy.retention_days), 1 if policy.is_active else 0),
    )


def list_retention_policies(active_only: bool = False) -> list[RetentionPolicy]:
    sql = "SELECT policy_name, data_type, retention_days, is_active FROM data_retention_policies"
    if active_only:
        sql += " WHERE is_active = 1"
    sql += " ORDER BY policy_name"
    return [
        RetentionPolicy(
            policy_name=row["policy_name"],
            data_type=row["data_type"],
            retention_days=int(row["retention_days"]),
            is_active=bool(row["is_active"]),
        )
        for row in _query(sql)
    ]


def record_retention_run(report: SweepReport) -> int:
    cur = _exec(
        """
        INSERT INTO retention_runs(
          started_at, finished_at, policies_executed, policies_failed, records_processed, per_policy, errors
        ) VALUES (?,?,?,?,?,?,?)
        """,
        (
            _ts(report.started_at),
            _ts(report.finished_at or report.started_at),
            report.policies_executed,
            report.policies_failed,
            report.records_processed,
            json_dumps(report.per_policy),
            json_dumps(report.errors),
        ),
    )
    return int(cur.lastrowid)


def list_retention_runs(limit: int = 20) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, started_at, finished_at, policies_executed, policies_failed, records_processed, per_policy, errors
        FROM retention_runs
        ORDER BY id DESC
        LIMIT ?
        """,
        (int(limit),),
    )
    data: list[Dict[str, Any]] = []
    for row in rows:
        entry = dict(row)
        entry["per_policy"] = _decode_json_field(row["per_policy"]) or {}
        entry["errors"] = _decode_json_field(row["errors"]) or []
        data.append(entry)
    return data


def delete_retention_runs_before(cutoff: datetime) -> int:
    with _tx() as con:
        cur = con.execute("DELETE FROM retention_runs WHERE finished_at < ?", (_ts(cutoff),))
        return cur.rowcount


def new_alert_id() -> str:
    return uuid4().hex
