import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

TEST_SECRET = "unit-test-secret-with-enough-length-for-hs256"


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Fresh connection pool for each test
    old_pool = db._pool
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    db.init()
    yield str(db_path)
    db._pool.close_all()
    db._pool = old_pool


@pytest.fixture
def make_identity():
    from schemas import IdentityContext

    def _make(subject_id: str = "student-1", role: str = "student", ttl: int = 3600) -> IdentityContext:
        now = datetime.now(timezone.utc)
        return IdentityContext(
            subject_id=subject_id,
            role=role,
            issued_at=now - timedelta(seconds=1),
            expires_at=now + timedelta(seconds=ttl),
        )

    return _make


@pytest.fixture
def settings(monkeypatch):
    monkeypatch.setenv("AUTH_SECRET", TEST_SECRET)
    monkeypatch.setenv("RETENTION_ENABLED", "false")
    from env_validation import load_settings

    return load_settings()


@pytest.fixture
def services(temp_db, settings):
    import app

    built = app.build_services(settings)
    app.app.state.services = built
    yield built
    built.close()
    app.app.state.services = None
