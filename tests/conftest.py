import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    db.init()
    yield str(db_path)
    db._pool.close_all()


@pytest.fixture
def make_evidence():
    """Factory for complete evidence records, one minute apart by ``index``."""
    from schemas import Evidence

    def _make(
        thinking: str = "correct",
        application: str | None = None,
        *,
        confidence: int = 3,
        index: int = 0,
        student_id: str = "stu-1",
        concept_id: str = "addition",
        thinking_answer: str = "",
        application_answer: str = "",
        thinking_time: float = 30.0,
        application_time: float = 30.0,
    ) -> Evidence:
        return Evidence(
            student_id=student_id,
            concept_id=concept_id,
            session_id=f"{student_id}-{concept_id}-{index}",
            recorded_at=BASE_TIME + timedelta(minutes=index),
            thinking_answer=thinking_answer,
            thinking_time_seconds=thinking_time,
            thinking_correctness=thinking,
            confidence=confidence,
            application_answer=application_answer,
            application_time_seconds=application_time,
            application_correctness=application or thinking,
        )

    return _make
