# app.py: mastery & gap insight service
# - Evidence capture runs the mastery calculator and gap rules per pair
# - Class analytics are rolled up from persisted mastery and insights

import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import Body, FastAPI, HTTPException
from pydantic import ValidationError

import db
from concept_graph import ConceptGraphError
from engines.analytics import ClassAnalyticsAggregator
from engines.evidence_pipeline import EvidencePipeline
from engines.validation import InvalidInputError
from env_validation import configure_logging, load_settings, validate_environment
from schemas import (
    CaptureResponse,
    Concept,
    ConceptMastery,
    GapInsight,
    SweepRequest,
    SweepResponse,
    build_evidence,
)

logger = logging.getLogger(__name__)


def _build_pipeline() -> EvidencePipeline:
    settings = load_settings()
    return EvidencePipeline(
        db,
        recovery_score=settings.gap_recovery_score,
        auto_resolve=settings.gap_auto_resolve,
        max_workers=settings.sweep_max_workers,
    )


PIPELINE = _build_pipeline()
ANALYTICS = ClassAnalyticsAggregator()


@asynccontextmanager
async def _lifespan(_: FastAPI):
    global PIPELINE
    try:
        validate_environment()
        configure_logging()
        db.init()
        PIPELINE = _build_pipeline()
        logger.info("Database ready at %s", db.DB_PATH)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Mastery Gap Engine", version="1.0.0", lifespan=_lifespan)


def _storage_failure(action: str, **context: Any) -> HTTPException:
    logger.exception("Storage failure while %s", action, extra=context)
    return HTTPException(status_code=500, detail="Internal server error")


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


# -------------- concept catalog --------------
@app.post("/concepts", response_model=Concept)
def create_concept(payload: Dict[str, Any] = Body(...)) -> Concept:
    try:
        concept = Concept.model_validate(payload)
        return db.upsert_concept(concept)
    except (ConceptGraphError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except sqlite3.Error:
        raise _storage_failure("saving concept", concept_id=concept.concept_id)


@app.get("/concepts", response_model=List[Concept])
def list_concepts() -> List[Concept]:
    return db.list_concepts()


# -------------- rosters --------------
@app.post("/classes/{class_id}/students/{student_id}")
def enroll_student(class_id: str, student_id: str) -> Dict[str, str]:
    db.enroll_student(class_id, student_id)
    return {"class_id": class_id, "student_id": student_id}


# -------------- evidence --------------
@app.post("/evidence", response_model=CaptureResponse)
def capture_evidence(payload: Dict[str, Any] = Body(...)) -> CaptureResponse:
    try:
        evidence = build_evidence(payload)
        result = PIPELINE.capture(evidence)
    except InvalidInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except sqlite3.Error:
        raise _storage_failure(
            "capturing evidence",
            student_id=evidence.student_id,
            concept_id=evidence.concept_id,
        )
    return result.to_response()


@app.get("/students/{student_id}/mastery", response_model=List[ConceptMastery])
def student_mastery(student_id: str) -> List[ConceptMastery]:
    return db.list_concept_mastery(student_id=student_id)


# -------------- gap insights --------------
@app.get("/students/{student_id}/gaps", response_model=List[GapInsight])
def student_gaps(student_id: str, include_resolved: bool = False) -> List[GapInsight]:
    return db.list_gap_insights(student_id, include_resolved=include_resolved)


@app.post("/gaps/{insight_id}/resolve", response_model=GapInsight)
def resolve_gap(insight_id: int) -> GapInsight:
    insight = db.get_gap_insight(insight_id)
    if insight is None:
        raise HTTPException(status_code=404, detail="Gap insight not found")
    if insight.is_open:
        db.resolve_gap_insight(insight_id)
        insight = db.get_gap_insight(insight_id)
    return insight


@app.post("/gaps/sweep", response_model=SweepResponse)
def run_sweep(body: SweepRequest) -> SweepResponse:
    try:
        summary = PIPELINE.sweep(body.student_ids, max_workers=body.max_workers)
    except sqlite3.Error:
        raise _storage_failure("running gap sweep")
    return summary.to_response()


# -------------- analytics --------------
@app.get("/classes/{class_id}/analytics")
def class_analytics(class_id: str) -> Dict[str, Any]:
    student_ids = db.list_class_students(class_id)
    if not student_ids:
        raise HTTPException(status_code=404, detail="Class has no enrolled students")
    concept_names = {concept.concept_id: concept.name for concept in db.list_concepts()}
    report = ANALYTICS.build_class_report(
        class_id,
        student_ids,
        db.list_concept_mastery(student_ids=student_ids),
        db.list_evidence_for_students(student_ids),
        db.list_gap_insights(student_ids=student_ids),
        concept_names,
    )
    return report.to_dict()


@app.get("/classes/{class_id}/subjects")
def subject_summaries(class_id: str) -> List[Dict[str, Any]]:
    student_ids = db.list_class_students(class_id)
    if not student_ids:
        raise HTTPException(status_code=404, detail="Class has no enrolled students")
    summaries = ANALYTICS.summarize_subjects(
        db.list_concept_mastery(student_ids=student_ids),
        db.list_concepts(),
        db.list_gap_insights(student_ids=student_ids),
    )
    return [summary.to_dict() for summary in summaries]
