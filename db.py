import json
import logging
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from concept_graph import ConceptGraph, ConceptNode
from db_pool import SQLiteConnectionPool
from engines.validation import InvalidInputError
from schemas import Concept, ConceptMastery, Evidence, GapInsight

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=int(os.getenv("DB_MAX_CONNECTIONS", "10") or 10))


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _coerce_to_utc(dt: Optional[datetime], fallback: Optional[datetime] = None) -> datetime:
    if dt is None:
        dt = fallback or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _ts(dt: Optional[datetime]) -> str:
    """Timestamps are stored as UTC ISO-8601 text so they sort lexically."""
    return _coerce_to_utc(dt).isoformat(timespec="microseconds")


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return _coerce_to_utc(datetime.fromisoformat(text))
    except ValueError:
        return _coerce_to_utc(datetime.strptime(text, "%Y-%m-%d %H:%M:%S"))


# -------------- schema --------------
def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS concepts (
              concept_id   TEXT PRIMARY KEY,
              name         TEXT NOT NULL,
              subject_id   TEXT NOT NULL DEFAULT 'general',
              description  TEXT,
              created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS concept_prerequisites (
              concept_id      TEXT NOT NULL,
              prerequisite_id TEXT NOT NULL,
              PRIMARY KEY (concept_id, prerequisite_id),
              CHECK (concept_id <> prerequisite_id),
              FOREIGN KEY(concept_id) REFERENCES concepts(concept_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS class_enrollments (
              class_id    TEXT NOT NULL,
              student_id  TEXT NOT NULL,
              enrolled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (class_id, student_id)
            );

            CREATE TABLE IF NOT EXISTS evidence (
              id                        INTEGER PRIMARY KEY AUTOINCREMENT,
              student_id                TEXT NOT NULL,
              concept_id                TEXT NOT NULL,
              session_id                TEXT NOT NULL UNIQUE,
              recorded_at               TEXT NOT NULL,
              thinking_answer           TEXT NOT NULL DEFAULT '',
              thinking_time_seconds     REAL NOT NULL CHECK (thinking_time_seconds >= 0),
              thinking_attempts         INTEGER NOT NULL CHECK (thinking_attempts >= 1),
              thinking_correctness      TEXT NOT NULL CHECK (thinking_correctness IN ('correct','partial','incorrect')),
              confusion                 TEXT NOT NULL DEFAULT '',
              mistake                   TEXT NOT NULL DEFAULT '',
              confidence                INTEGER NOT NULL CHECK (confidence BETWEEN 1 AND 5),
              application_answer        TEXT NOT NULL DEFAULT '',
              application_time_seconds  REAL NOT NULL CHECK (application_time_seconds >= 0),
              application_correctness   TEXT NOT NULL CHECK (application_correctness IN ('correct','partial','incorrect')),
              created_at                TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            CREATE INDEX IF NOT EXISTS idx_evidence_pair ON evidence(student_id, concept_id, recorded_at);

            CREATE TRIGGER IF NOT EXISTS trg_evidence_immutable_update
            BEFORE UPDATE ON evidence
            BEGIN
              SELECT RAISE(ABORT, 'evidence records are immutable');
            END;

            CREATE TRIGGER IF NOT EXISTS trg_evidence_immutable_delete
            BEFORE DELETE ON evidence
            BEGIN
              SELECT RAISE(ABORT, 'evidence records are immutable');
            END;

            CREATE TABLE IF NOT EXISTS concept_mastery (
              student_id     TEXT NOT NULL,
              concept_id     TEXT NOT NULL,
              score          INTEGER NOT NULL CHECK (score BETWEEN 0 AND 100),
              level          TEXT NOT NULL,
              trend          TEXT NOT NULL,
              evidence_count INTEGER NOT NULL DEFAULT 0,
              updated_at     TEXT NOT NULL,
              PRIMARY KEY (student_id, concept_id)
            );

            CREATE TABLE IF NOT EXISTS gap_insights (
              id               INTEGER PRIMARY KEY AUTOINCREMENT,
              student_id       TEXT NOT NULL,
              concept_id       TEXT NOT NULL,
              gap_type         TEXT NOT NULL CHECK (gap_type IN ('fragile_understanding','misconception','missing_prerequisite','false_confidence')),
              description      TEXT NOT NULL,
              severity         TEXT NOT NULL CHECK (severity IN ('low','medium','high')),
              suggested_action TEXT NOT NULL,
              details          TEXT,
              detected_at      TEXT NOT NULL,
              resolved_at      TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_gap_insights_student ON gap_insights(student_id, concept_id);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_gap_insights_open
              ON gap_insights(student_id, concept_id, gap_type)
              WHERE resolved_at IS NULL;
            """
        )
        con.commit()


# -------------- concept catalog --------------
def _load_concept_graph(con: sqlite3.Connection) -> ConceptGraph:
    prereqs: Dict[str, List[str]] = {}
    for row in con.execute(
        "SELECT concept_id, prerequisite_id FROM concept_prerequisites ORDER BY concept_id, prerequisite_id"
    ):
        prereqs.setdefault(row["concept_id"], []).append(row["prerequisite_id"])
    nodes = [
        ConceptNode(
            concept_id=row["concept_id"],
            name=row["name"],
            subject_id=row["subject_id"],
            description=row["description"],
            prerequisites=prereqs.get(row["concept_id"], []),
        )
        for row in con.execute("SELECT concept_id, name, subject_id, description FROM concepts")
    ]
    return ConceptGraph.from_concepts(nodes)


def load_concept_graph() -> ConceptGraph:
    with _conn() as con:
        return _load_concept_graph(con)


def upsert_concept(concept: Concept) -> Concept:
    """Create or replace a concept and its prerequisite list.

    Raises ConceptGraphError when the prerequisites would form a cycle.
    """
    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        graph = _load_concept_graph(con)
        graph.add_concept(concept)
        con.execute(
            """
            INSERT INTO concepts(concept_id, name, subject_id, description) VALUES (?,?,?,?)
            ON CONFLICT(concept_id) DO UPDATE SET
              name=excluded.name,
              subject_id=excluded.subject_id,
              description=excluded.description
            """,
            (concept.concept_id, concept.name, concept.subject_id, concept.description),
        )
        con.execute("DELETE FROM concept_prerequisites WHERE concept_id = ?", (concept.concept_id,))
        con.executemany(
            "INSERT INTO concept_prerequisites(concept_id, prerequisite_id) VALUES (?,?)",
            [(concept.concept_id, prereq) for prereq in concept.prerequisites],
        )
        con.commit()
    return concept


def list_concepts() -> List[Concept]:
    return [node.to_concept() for node in load_concept_graph().concepts()]


# -------------- class rosters --------------
def enroll_student(class_id: str, student_id: str) -> None:
    _exec(
        "INSERT OR IGNORE INTO class_enrollments(class_id, student_id) VALUES (?,?)",
        (class_id, student_id),
    )


def list_class_students(class_id: str) -> List[str]:
    rows = _query(
        "SELECT student_id FROM class_enrollments WHERE class_id = ? ORDER BY student_id",
        (class_id,),
    )
    return [row["student_id"] for row in rows]


# -------------- evidence --------------
_EVIDENCE_COLUMNS = (
    "student_id",
    "concept_id",
    "session_id",
    "recorded_at",
    "thinking_answer",
    "thinking_time_seconds",
    "thinking_attempts",
    "thinking_correctness",
    "confusion",
    "mistake",
    "confidence",
    "application_answer",
    "application_time_seconds",
    "application_correctness",
)


def _row_to_evidence(row: sqlite3.Row) -> Evidence:
    payload = {column: row[column] for column in _EVIDENCE_COLUMNS}
    payload["recorded_at"] = _parse_timestamp(row["recorded_at"])
    return Evidence.model_validate(payload)


def insert_evidence(evidence: Evidence) -> int:
    """Append an evidence record. A session can only be recorded once."""
    values = [getattr(evidence, column) for column in _EVIDENCE_COLUMNS]
    values[_EVIDENCE_COLUMNS.index("recorded_at")] = _ts(evidence.recorded_at)
    placeholders = ",".join("?" for _ in _EVIDENCE_COLUMNS)
    try:
        cur = _exec(
            f"INSERT INTO evidence({', '.join(_EVIDENCE_COLUMNS)}) VALUES ({placeholders})",
            values,
        )
    except sqlite3.IntegrityError as exc:
        if "evidence.session_id" not in str(exc):
            raise
        raise InvalidInputError(
            f"Session {evidence.session_id} already has an evidence record",
            student_id=evidence.student_id,
            concept_id=evidence.concept_id,
        ) from exc
    return int(cur.lastrowid)


def list_evidence(student_id: str, concept_id: Optional[str] = None) -> List[Evidence]:
    """Evidence for a student (optionally one concept), oldest first."""
    columns = ", ".join(_EVIDENCE_COLUMNS)
    if concept_id is not None:
        rows = _query(
            f"SELECT {columns} FROM evidence WHERE student_id = ? AND concept_id = ? ORDER BY recorded_at, id",
            (student_id, concept_id),
        )
    else:
        rows = _query(
            f"SELECT {columns} FROM evidence WHERE student_id = ? ORDER BY recorded_at, id",
            (student_id,),
        )
    return [_row_to_evidence(row) for row in rows]


def list_evidence_for_students(student_ids: Sequence[str]) -> Dict[str, List[Evidence]]:
    grouped: Dict[str, List[Evidence]] = {student_id: [] for student_id in student_ids}
    if not grouped:
        return grouped
    placeholders = ",".join("?" for _ in grouped)
    rows = _query(
        f"SELECT {', '.join(_EVIDENCE_COLUMNS)} FROM evidence WHERE student_id IN ({placeholders}) "
        "ORDER BY student_id, recorded_at, id",
        list(grouped),
    )
    for row in rows:
        grouped[row["student_id"]].append(_row_to_evidence(row))
    return grouped


def list_evidence_pairs(student_ids: Optional[Sequence[str]] = None) -> List[Tuple[str, str]]:
    if student_ids:
        placeholders = ",".join("?" for _ in student_ids)
        rows = _query(
            f"SELECT DISTINCT student_id, concept_id FROM evidence WHERE student_id IN ({placeholders}) "
            "ORDER BY student_id, concept_id",
            list(student_ids),
        )
    else:
        rows = _query(
            "SELECT DISTINCT student_id, concept_id FROM evidence ORDER BY student_id, concept_id"
        )
    return [(row["student_id"], row["concept_id"]) for row in rows]


# -------------- mastery --------------
def _row_to_mastery(row: sqlite3.Row) -> ConceptMastery:
    return ConceptMastery(
        student_id=row["student_id"],
        concept_id=row["concept_id"],
        score=row["score"],
        level=row["level"],
        trend=row["trend"],
        evidence_count=row["evidence_count"],
        updated_at=_parse_timestamp(row["updated_at"]),
    )


def upsert_concept_mastery(mastery: ConceptMastery) -> None:
    _exec(
        """
        INSERT INTO concept_mastery(student_id, concept_id, score, level, trend, evidence_count, updated_at)
        VALUES (?,?,?,?,?,?,?)
        ON CONFLICT(student_id, concept_id) DO UPDATE SET
          score=excluded.score,
          level=excluded.level,
          trend=excluded.trend,
          evidence_count=excluded.evidence_count,
          updated_at=excluded.updated_at
        """,
        (
            mastery.student_id,
            mastery.concept_id,
            mastery.score,
            mastery.level,
            mastery.trend,
            mastery.evidence_count,
            _ts(mastery.updated_at),
        ),
    )


def get_concept_mastery(student_id: str, concept_id: str) -> Optional[ConceptMastery]:
    rows = _query(
        "SELECT * FROM concept_mastery WHERE student_id = ? AND concept_id = ?",
        (student_id, concept_id),
    )
    return _row_to_mastery(rows[0]) if rows else None


def list_concept_mastery(
    student_id: Optional[str] = None,
    student_ids: Optional[Sequence[str]] = None,
) -> List[ConceptMastery]:
    if student_id is not None:
        rows = _query(
            "SELECT * FROM concept_mastery WHERE student_id = ? ORDER BY concept_id",
            (student_id,),
        )
    elif student_ids is not None:
        if not student_ids:
            return []
        placeholders = ",".join("?" for _ in student_ids)
        rows = _query(
            f"SELECT * FROM concept_mastery WHERE student_id IN ({placeholders}) ORDER BY student_id, concept_id",
            list(student_ids),
        )
    else:
        rows = _query("SELECT * FROM concept_mastery ORDER BY student_id, concept_id")
    return [_row_to_mastery(row) for row in rows]


def mastery_scores_for_student(student_id: str) -> Dict[str, int]:
    rows = _query(
        "SELECT concept_id, score FROM concept_mastery WHERE student_id = ?",
        (student_id,),
    )
    return {row["concept_id"]: int(row["score"]) for row in rows}


# -------------- gap insights --------------
def _row_to_insight(row: sqlite3.Row) -> GapInsight:
    return GapInsight(
        insight_id=row["id"],
        student_id=row["student_id"],
        concept_id=row["concept_id"],
        gap_type=row["gap_type"],
        description=row["description"],
        severity=row["severity"],
        suggested_action=row["suggested_action"],
        details=_decode_json_field(row["details"]) or {},
        detected_at=_parse_timestamp(row["detected_at"]),
        resolved_at=_parse_timestamp(row["resolved_at"]),
    )


def insert_gap_insight(insight: GapInsight) -> Optional[GapInsight]:
    """Insert ``insight`` unless an open insight of the same type exists for the pair.

    The partial unique index on open insights makes this a single conditional
    insert. Returns the stored insight, or None when it was suppressed.
    """
    cur = _exec(
        """
        INSERT OR IGNORE INTO gap_insights
          (student_id, concept_id, gap_type, description, severity, suggested_action, details, detected_at)
        VALUES (?,?,?,?,?,?,?,?)
        """,
        (
            insight.student_id,
            insight.concept_id,
            insight.gap_type,
            insight.description,
            insight.severity,
            insight.suggested_action,
            json_dumps(insight.details),
            _ts(insight.detected_at),
        ),
    )
    if cur.rowcount != 1:
        logger.debug(
            "Open %s insight already stored for student %s concept %s",
            insight.gap_type,
            insight.student_id,
            insight.concept_id,
        )
        return None
    return insight.model_copy(update={"insight_id": int(cur.lastrowid)})


def get_gap_insight(insight_id: int) -> Optional[GapInsight]:
    rows = _query("SELECT * FROM gap_insights WHERE id = ?", (int(insight_id),))
    return _row_to_insight(rows[0]) if rows else None


def list_gap_insights(
    student_id: Optional[str] = None,
    concept_id: Optional[str] = None,
    *,
    include_resolved: bool = False,
    student_ids: Optional[Sequence[str]] = None,
) -> List[GapInsight]:
    clauses: List[str] = []
    params: List[Any] = []
    if student_id is not None:
        clauses.append("student_id = ?")
        params.append(student_id)
    if concept_id is not None:
        clauses.append("concept_id = ?")
        params.append(concept_id)
    if student_ids is not None:
        if not student_ids:
            return []
        clauses.append(f"student_id IN ({','.join('?' for _ in student_ids)})")
        params.extend(student_ids)
    if not include_resolved:
        clauses.append("resolved_at IS NULL")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = _query(f"SELECT * FROM gap_insights {where} ORDER BY detected_at, id", params)
    return [_row_to_insight(row) for row in rows]


def resolve_gap_insight(insight_id: int, resolved_at: Optional[datetime] = None) -> bool:
    cur = _exec(
        "UPDATE gap_insights SET resolved_at = ? WHERE id = ? AND resolved_at IS NULL",
        (_ts(resolved_at), int(insight_id)),
    )
    return cur.rowcount == 1


def resolve_gap_insights(
    student_id: str,
    concept_id: str,
    gap_types: Iterable[str],
    resolved_at: Optional[datetime] = None,
) -> List[int]:
    """Resolve the open insights of ``gap_types`` for a pair; returns their ids."""
    types = sorted(set(gap_types))
    if not types:
        return []
    placeholders = ",".join("?" for _ in types)
    with _conn() as con:
        rows = con.execute(
            f"SELECT id FROM gap_insights WHERE student_id = ? AND concept_id = ? "
            f"AND resolved_at IS NULL AND gap_type IN ({placeholders})",
            [student_id, concept_id, *types],
        ).fetchall()
        ids = [int(row["id"]) for row in rows]
        if ids:
            con.executemany(
                "UPDATE gap_insights SET resolved_at = ? WHERE id = ? AND resolved_at IS NULL",
                [(_ts(resolved_at), insight_id) for insight_id in ids],
            )
        con.commit()
    return ids
