"""Pydantic schemas for evidence, mastery and gap-insight records."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from engines.validation import InvalidInputError

__all__ = [
    "Correctness",
    "MasteryLevel",
    "Trend",
    "GapType",
    "Severity",
    "Evidence",
    "EvidenceDraft",
    "Concept",
    "ConceptMastery",
    "GapInsight",
    "CaptureResponse",
    "SweepRequest",
    "SweepResponse",
    "build_evidence",
]

Correctness = Literal["correct", "partial", "incorrect"]
MasteryLevel = Literal["novice", "emerging", "developing", "proficient", "expert"]
Trend = Literal["improving", "stable", "declining"]
GapType = Literal["fragile_understanding", "misconception", "missing_prerequisite", "false_confidence"]
Severity = Literal["low", "medium", "high"]

_DRAFT_REQUIRED_FIELDS = (
    "thinking_answer",
    "thinking_time_seconds",
    "thinking_correctness",
    "confidence",
    "application_answer",
    "application_time_seconds",
    "application_correctness",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Evidence(BaseModel):
    """One completed learning session for a (student, concept) pair."""

    student_id: str = Field(min_length=1)
    concept_id: str = Field(min_length=1)
    session_id: str = Field(
        default_factory=lambda: uuid4().hex,
        description="Identifier of the session that produced this record; unique per record.",
    )
    recorded_at: datetime = Field(default_factory=_utcnow)
    thinking_answer: str = ""
    thinking_time_seconds: float = Field(ge=0)
    thinking_attempts: int = Field(default=1, ge=1)
    thinking_correctness: Correctness
    confusion: str = Field(default="", description="What the learner reported finding confusing.")
    mistake: str = Field(default="", description="The learner's own account of their mistake.")
    confidence: int = Field(ge=1, le=5, description="Self-rated confidence on a 1-5 scale.")
    application_answer: str = ""
    application_time_seconds: float = Field(ge=0)
    application_correctness: Correctness

    model_config = {"frozen": True}

    @field_validator("recorded_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def total_time_seconds(self) -> float:
        return float(self.thinking_time_seconds) + float(self.application_time_seconds)


def build_evidence(payload: Dict[str, Any]) -> Evidence:
    """Validate ``payload`` into an Evidence record, raising InvalidInputError on failure."""

    try:
        return Evidence.model_validate(payload)
    except ValidationError as exc:
        raise InvalidInputError(
            f"Invalid evidence record: {exc}",
            student_id=payload.get("student_id") if isinstance(payload, dict) else None,
            concept_id=payload.get("concept_id") if isinstance(payload, dict) else None,
        ) from exc


class EvidenceDraft(BaseModel):
    """Accumulates a session's fields step by step until it can be finalized.

    The four steps of a session are thinking, reflection (confusion and
    mistake), the confidence rating and application. Only ``finalize`` hands
    out an Evidence record, so engines never see partial sessions.
    """

    student_id: str
    concept_id: str
    session_id: str = Field(default_factory=lambda: uuid4().hex)
    thinking_answer: str | None = None
    thinking_time_seconds: float | None = None
    thinking_attempts: int | None = None
    thinking_correctness: str | None = None
    confusion: str | None = None
    mistake: str | None = None
    confidence: int | None = None
    application_answer: str | None = None
    application_time_seconds: float | None = None
    application_correctness: str | None = None

    def record_thinking(self, answer: str, time_seconds: float, correctness: str, *, attempts: int = 1) -> "EvidenceDraft":
        self.thinking_answer = answer
        self.thinking_time_seconds = time_seconds
        self.thinking_correctness = correctness
        self.thinking_attempts = attempts
        return self

    def record_reflection(self, confusion: str = "", mistake: str = "") -> "EvidenceDraft":
        self.confusion = confusion
        self.mistake = mistake
        return self

    def record_confidence(self, confidence: int) -> "EvidenceDraft":
        self.confidence = confidence
        return self

    def record_application(self, answer: str, time_seconds: float, correctness: str) -> "EvidenceDraft":
        self.application_answer = answer
        self.application_time_seconds = time_seconds
        self.application_correctness = correctness
        return self

    def missing_fields(self) -> List[str]:
        return [name for name in _DRAFT_REQUIRED_FIELDS if getattr(self, name) is None]

    def finalize(self, recorded_at: datetime | None = None) -> Evidence:
        missing = self.missing_fields()
        if missing:
            raise InvalidInputError(
                f"Session is incomplete; missing: {', '.join(missing)}",
                student_id=self.student_id,
                concept_id=self.concept_id,
            )
        payload = self.model_dump(exclude_none=True)
        payload["recorded_at"] = recorded_at or _utcnow()
        return build_evidence(payload)


class Concept(BaseModel):
    concept_id: str = Field(min_length=1)
    name: str
    subject_id: str = "general"
    description: str | None = None
    prerequisites: List[str] = Field(
        default_factory=list,
        description="Identifiers of concepts that must be understood first.",
    )

    @model_validator(mode="after")
    def _check_prerequisites(self) -> "Concept":
        if self.concept_id in self.prerequisites:
            raise ValueError(f"Concept {self.concept_id} cannot be its own prerequisite")
        seen: Dict[str, None] = {}
        for prereq in self.prerequisites:
            seen.setdefault(prereq, None)
        self.prerequisites = list(seen)
        return self


class ConceptMastery(BaseModel):
    student_id: str
    concept_id: str
    score: int = Field(ge=0, le=100)
    level: MasteryLevel
    trend: Trend
    evidence_count: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=_utcnow)


class GapInsight(BaseModel):
    insight_id: int | None = None
    student_id: str
    concept_id: str
    gap_type: GapType
    description: str
    severity: Severity
    suggested_action: str
    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Rule-specific context such as the prerequisite id or clustered answers.",
    )
    detected_at: datetime = Field(default_factory=_utcnow)
    resolved_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None


class CaptureResponse(BaseModel):
    mastery: ConceptMastery
    new_insights: List[GapInsight] = Field(default_factory=list)
    resolved_insight_ids: List[int] = Field(default_factory=list)


class SweepRequest(BaseModel):
    student_ids: List[str] | None = None
    max_workers: int | None = Field(default=None, ge=1)


class SweepResponse(BaseModel):
    pairs_processed: int
    insights_created: int
    insights_resolved: int
    failures: List[Dict[str, Any]] = Field(default_factory=list)
