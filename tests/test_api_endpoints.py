import asyncio
import json
import sqlite3
from unittest.mock import patch

import pytest

import app
import db
from schemas import Concept

REASONING = "Line up the columns first because carrying moves a ten into the next place value"


def _request(method: str, path: str, payload: dict | None = None) -> tuple[int, object]:
    raw_path, _, query = path.partition("?")

    async def _call():
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        received_once = False

        async def receive():
            nonlocal received_once
            if not received_once:
                received_once = True
                return {"type": "http.request", "body": body, "more_body": False}
            return {"type": "http.disconnect"}

        messages = []

        async def send(message):
            messages.append(message)

        headers = [(b"host", b"testserver")]
        if payload is not None:
            headers += [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "path": raw_path,
            "raw_path": raw_path.encode(),
            "root_path": "",
            "scheme": "http",
            "query_string": query.encode(),
            "headers": headers,
            "client": ("testclient", 12345),
            "server": ("testserver", 80),
            "state": {},
        }

        await app.app(scope, receive, send)
        return messages

    messages = asyncio.run(_call())
    status = 500
    body_bytes = b""

    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")

    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


def _evidence(index: int, correctness: str, confidence: int, *, student_id: str = "stu-1", **extra) -> dict:
    payload = {
        "student_id": student_id,
        "concept_id": "addition",
        "session_id": f"{student_id}-{index}",
        "recorded_at": f"2024-03-01T09:{index:02d}:00+00:00",
        "thinking_answer": "",
        "thinking_time_seconds": 30,
        "thinking_correctness": correctness,
        "confidence": confidence,
        "application_answer": "",
        "application_time_seconds": 30,
        "application_correctness": correctness,
    }
    payload.update(extra)
    return payload


def test_health():
    assert _request("GET", "/health") == (200, {"status": "ok"})


def test_concept_catalog_endpoints(temp_db):
    status, _ = _request("POST", "/concepts", {"concept_id": "counting", "name": "Counting", "subject_id": "math"})
    assert status == 200
    status, body = _request(
        "POST",
        "/concepts",
        {"concept_id": "addition", "name": "Addition", "subject_id": "math", "prerequisites": ["counting"]},
    )
    assert status == 200
    assert body["prerequisites"] == ["counting"]

    status, body = _request("GET", "/concepts")
    assert status == 200
    assert {item["concept_id"] for item in body} == {"counting", "addition"}


@pytest.mark.parametrize(
    "payload",
    [
        {"concept_id": "addition", "name": "Addition", "prerequisites": ["addition"]},
        {"concept_id": "counting", "name": "Counting", "prerequisites": ["addition"]},
        {"name": "No id"},
    ],
)
def test_invalid_concepts_return_400(temp_db, payload):
    db.upsert_concept(Concept(concept_id="counting", name="Counting"))
    db.upsert_concept(Concept(concept_id="addition", name="Addition", prerequisites=["counting"]))

    status, _ = _request("POST", "/concepts", payload)

    assert status == 400


def test_capture_and_resolve_flow(temp_db):
    status, body = _request("POST", "/evidence", _evidence(0, "incorrect", 5))
    assert status == 200
    assert body["mastery"]["score"] == 14
    assert body["mastery"]["level"] == "novice"
    assert [gap["gap_type"] for gap in body["new_insights"]] == ["false_confidence"]
    insight_id = body["new_insights"][0]["insight_id"]

    status, body = _request("GET", "/students/stu-1/mastery")
    assert status == 200
    assert [row["concept_id"] for row in body] == ["addition"]

    status, body = _request("GET", "/students/stu-1/gaps")
    assert status == 200
    assert [gap["insight_id"] for gap in body] == [insight_id]

    status, body = _request("POST", f"/gaps/{insight_id}/resolve")
    assert status == 200
    assert body["resolved_at"] is not None

    assert _request("GET", "/students/stu-1/gaps") == (200, [])
    status, body = _request("GET", "/students/stu-1/gaps?include_resolved=true")
    assert [gap["insight_id"] for gap in body] == [insight_id]


def test_resolve_unknown_insight_returns_404(temp_db):
    status, body = _request("POST", "/gaps/999/resolve")

    assert status == 404
    assert body["detail"] == "Gap insight not found"


@pytest.mark.parametrize(
    "overrides",
    [
        {"confidence": 9},
        {"thinking_time_seconds": -3},
        {"application_correctness": "maybe"},
        {"thinking_correctness": None},
    ],
)
def test_invalid_evidence_returns_400(temp_db, overrides):
    payload = _evidence(0, "correct", 3)
    payload.update(overrides)

    status, body = _request("POST", "/evidence", payload)

    assert status == 400
    assert "detail" in body
    assert db.list_evidence("stu-1") == []


def test_duplicate_session_returns_400(temp_db):
    assert _request("POST", "/evidence", _evidence(0, "correct", 3))[0] == 200

    status, _ = _request("POST", "/evidence", _evidence(0, "correct", 3))

    assert status == 400


def test_storage_failure_returns_500(temp_db):
    with patch.object(app.PIPELINE, "capture", side_effect=sqlite3.OperationalError("disk I/O error")):
        status, body = _request("POST", "/evidence", _evidence(0, "correct", 3))

    assert status == 500
    assert body["detail"] == "Internal server error"


def test_sweep_endpoint(temp_db):
    _request("POST", "/evidence", _evidence(0, "incorrect", 5))

    status, body = _request("POST", "/gaps/sweep", {"max_workers": 2})

    assert status == 200
    assert body["pairs_processed"] == 1
    assert body["insights_created"] == 0
    assert body["failures"] == []


def test_class_analytics_and_subjects(temp_db):
    db.upsert_concept(Concept(concept_id="addition", name="Addition", subject_id="math"))
    for student_id in ("a", "b"):
        assert _request("POST", f"/classes/c1/students/{student_id}")[0] == 200

    _request("POST", "/evidence", _evidence(0, "incorrect", 5, student_id="a"))
    _request(
        "POST",
        "/evidence",
        _evidence(
            1,
            "correct",
            5,
            student_id="b",
            thinking_answer=REASONING,
            thinking_time_seconds=60,
            application_time_seconds=60,
        ),
    )

    status, report = _request("GET", "/classes/c1/analytics")
    assert status == 200
    assert report["student_count"] == 2
    assert report["class_average_time_seconds"] == 90.0
    assert report["gap_counts"]["false_confidence"] == 1
    assert report["weakest_concepts"] == [
        {"concept_id": "addition", "concept_name": "Addition", "mean_mastery": 54.0, "student_count": 2}
    ]
    students = {entry["student_id"]: entry for entry in report["students"]}
    assert students["a"]["calibration"] == "overconfident"
    assert students["a"]["quadrant"] == "low_effort_low_performance"
    assert students["a"]["open_gaps"] == 1
    assert students["b"]["calibration"] == "well_calibrated"
    assert students["b"]["quadrant"] == "high_effort_high_performance"

    status, subjects = _request("GET", "/classes/c1/subjects")
    assert status == 200
    assert subjects == [
        {
            "subject_id": "math",
            "mean_mastery": 54.0,
            "concept_count": 1,
            "student_count": 2,
            "weakest_concept": "addition",
            "open_gaps": 1,
        }
    ]


def test_unknown_class_returns_404(temp_db):
    assert _request("GET", "/classes/nobody/analytics")[0] == 404
    assert _request("GET", "/classes/nobody/subjects")[0] == 404
