import gc
from concurrent.futures import ThreadPoolExecutor

import pytest

import db
from engines.evidence_pipeline import EvidencePipeline
from engines.validation import InvalidInputError
from schemas import Concept, ConceptMastery

REASONING = "Divide the tens first because each digit of the quotient comes from one place value"


class _StoreWithPhantomPair:
    """db module whose pair listing also reports a pair with no stored evidence."""

    def __getattr__(self, name):
        return getattr(db, name)

    def list_evidence_pairs(self, student_ids=None):
        return db.list_evidence_pairs(student_ids) + [("ghost", "division")]


@pytest.fixture
def division_catalog(temp_db):
    db.upsert_concept(Concept(concept_id="fractions", name="Fractions", subject_id="math"))
    db.upsert_concept(
        Concept(concept_id="division", name="Long Division", subject_id="math", prerequisites=["fractions"])
    )
    db.upsert_concept_mastery(
        ConceptMastery(student_id="stu-1", concept_id="fractions", score=40, level="emerging", trend="stable")
    )


def test_capture_persists_evidence_and_mastery(temp_db, make_evidence):
    pipeline = EvidencePipeline()
    record = make_evidence("correct", confidence=5, thinking_answer=REASONING)

    result = pipeline.capture(record)

    assert result.mastery.score == 94
    assert result.mastery.level == "expert"
    assert result.mastery.evidence_count == 1
    assert result.new_insights == []
    assert db.get_concept_mastery("stu-1", "addition").score == 94
    assert [stored.session_id for stored in db.list_evidence("stu-1", "addition")] == [record.session_id]


def test_capture_reports_each_open_gap_once(temp_db, make_evidence):
    pipeline = EvidencePipeline()

    first = pipeline.capture(make_evidence("incorrect", confidence=5, index=0))
    second = pipeline.capture(make_evidence("incorrect", confidence=5, index=1))

    assert [insight.gap_type for insight in first.new_insights] == ["false_confidence"]
    assert first.new_insights[0].insight_id is not None
    assert second.new_insights == []
    assert len(db.list_gap_insights("stu-1", "addition")) == 1


def test_invalid_capture_persists_nothing(temp_db, make_evidence):
    pipeline = EvidencePipeline()
    record = make_evidence()
    pipeline.capture(record)

    with pytest.raises(InvalidInputError):
        pipeline.capture(record)

    assert len(db.list_evidence("stu-1", "addition")) == 1


def test_recompute_without_evidence_is_invalid(temp_db):
    with pytest.raises(InvalidInputError) as excinfo:
        EvidencePipeline().recompute("stu-1", "addition")

    assert excinfo.value.context() == {"student_id": "stu-1", "concept_id": "addition"}


def test_missing_prerequisite_resolves_when_mastery_recovers(division_catalog, make_evidence):
    pipeline = EvidencePipeline()

    first = pipeline.capture(make_evidence("incorrect", confidence=1, index=0, concept_id="division"))
    assert first.mastery.score == 39
    assert [insight.gap_type for insight in first.new_insights] == ["missing_prerequisite"]
    assert first.new_insights[0].suggested_action == "Review prerequisite concept: Fractions"

    resolved_ids = []
    for index in range(1, 6):
        result = pipeline.capture(
            make_evidence("correct", confidence=5, index=index, concept_id="division", thinking_answer=REASONING)
        )
        resolved_ids.extend(result.resolved_insight_ids)

    assert result.mastery.score >= 75
    assert resolved_ids == [first.new_insights[0].insight_id]
    assert db.list_gap_insights("stu-1", "division") == []
    history = db.list_gap_insights("stu-1", "division", include_resolved=True)
    assert len(history) == 1
    assert history[0].resolved_at is not None


def test_auto_resolve_can_be_disabled(division_catalog, make_evidence):
    pipeline = EvidencePipeline(auto_resolve=False)

    pipeline.capture(make_evidence("incorrect", confidence=1, index=0, concept_id="division"))
    for index in range(1, 6):
        result = pipeline.capture(
            make_evidence("correct", confidence=5, index=index, concept_id="division", thinking_answer=REASONING)
        )
        assert result.resolved_insight_ids == []

    assert [insight.gap_type for insight in db.list_gap_insights("stu-1", "division")] == [
        "missing_prerequisite"
    ]


def test_concurrent_captures_for_one_pair_store_one_insight(temp_db, make_evidence):
    pipeline = EvidencePipeline()
    records = [make_evidence("incorrect", confidence=5, index=i) for i in range(8)]

    with ThreadPoolExecutor(max_workers=4) as executor:
        results = list(executor.map(pipeline.capture, records))

    assert sum(len(result.new_insights) for result in results) == 1
    assert len(db.list_gap_insights("stu-1", "addition")) == 1
    assert db.get_concept_mastery("stu-1", "addition").evidence_count == 8


def test_pair_locks_are_shared_while_held_and_released_after(temp_db, make_evidence):
    pipeline = EvidencePipeline()

    held = pipeline._pair_lock("stu-1", "addition")
    again = pipeline._pair_lock("stu-1", "addition")
    assert again is held
    del held, again

    for student_id in ("a", "b", "c"):
        pipeline.capture(make_evidence("correct", confidence=3, student_id=student_id))
    gc.collect()

    assert len(pipeline._locks) == 0


def test_sweep_recomputes_every_pair(temp_db, make_evidence):
    db.insert_evidence(make_evidence("incorrect", confidence=5, index=0, student_id="a"))
    db.insert_evidence(make_evidence("correct", confidence=1, index=1, student_id="b"))
    db.insert_evidence(make_evidence("correct", confidence=3, index=2, student_id="b", concept_id="subtraction"))

    summary = EvidencePipeline().sweep(max_workers=2)

    assert summary.pairs_processed == 3
    assert summary.insights_created == 2
    assert summary.failures == []
    assert {row.student_id for row in db.list_concept_mastery()} == {"a", "b"}

    again = EvidencePipeline().sweep()
    assert again.pairs_processed == 3
    assert again.insights_created == 0


def test_sweep_can_target_students(temp_db, make_evidence):
    db.insert_evidence(make_evidence(index=0, student_id="a"))
    db.insert_evidence(make_evidence(index=1, student_id="b"))

    summary = EvidencePipeline().sweep(["b"])

    assert summary.pairs_processed == 1
    assert [row.student_id for row in db.list_concept_mastery()] == ["b"]


def test_sweep_continues_past_invalid_pair(temp_db, make_evidence, caplog):
    db.insert_evidence(make_evidence("incorrect", confidence=5, index=0))
    pipeline = EvidencePipeline(_StoreWithPhantomPair())

    summary = pipeline.sweep()

    assert summary.pairs_processed == 1
    assert summary.insights_created == 1
    assert [(f["student_id"], f["concept_id"]) for f in summary.failures] == [("ghost", "division")]
    assert "ghost" in caplog.text
    assert summary.to_response().failures == summary.failures
