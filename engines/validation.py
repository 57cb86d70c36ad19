"""Validation utilities for evidence records handed to the engines."""

from __future__ import annotations

from typing import Any, Iterable, List, Sequence

VALID_CORRECTNESS = frozenset({"correct", "partial", "incorrect"})
MIN_CONFIDENCE = 1
MAX_CONFIDENCE = 5


class ValidationError(Exception):
    """Base class for validation errors."""
    pass


class InvalidInputError(ValidationError, ValueError):
    """Raised when evidence or engine input fails validation.

    Carries optional ``student_id``/``concept_id`` context so operators can
    locate the offending pair without inspecting engine state.
    """

    def __init__(self, message: str, *, student_id: str | None = None, concept_id: str | None = None):
        super().__init__(message)
        self.student_id = student_id
        self.concept_id = concept_id

    def context(self) -> dict[str, Any]:
        return {"student_id": self.student_id, "concept_id": self.concept_id}


def validate_correctness(value: Any, field: str) -> str:
    if value not in VALID_CORRECTNESS:
        raise InvalidInputError(
            f"Invalid {field} value {value!r}. Must be one of: {', '.join(sorted(VALID_CORRECTNESS))}"
        )
    return value


def validate_confidence(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"Confidence must be an integer, got {type(value).__name__}")
    if not (MIN_CONFIDENCE <= value <= MAX_CONFIDENCE):
        raise InvalidInputError(
            f"Confidence must be between {MIN_CONFIDENCE} and {MAX_CONFIDENCE}, got {value}"
        )
    return value


def validate_evidence_record(record: Any) -> None:
    """Validate a single evidence record.

    Works on anything exposing the evidence attributes so that records built
    with ``model_construct`` or loaded from legacy rows are checked as well.
    """
    validate_correctness(getattr(record, "thinking_correctness", None), "thinking_correctness")
    validate_correctness(getattr(record, "application_correctness", None), "application_correctness")
    validate_confidence(getattr(record, "confidence", None))

    for field in ("thinking_time_seconds", "application_time_seconds"):
        value = getattr(record, field, None)
        if not isinstance(value, (int, float)) or value < 0:
            raise InvalidInputError(f"{field} must be a non-negative number, got {value!r}")

    attempts = getattr(record, "thinking_attempts", None)
    if not isinstance(attempts, int) or attempts < 1:
        raise InvalidInputError(f"thinking_attempts must be at least 1, got {attempts!r}")


def validate_evidence_history(history: Sequence[Any], *, student_id: str | None = None, concept_id: str | None = None) -> List[Any]:
    """Validate an evidence history and return it ordered by ``recorded_at``.

    Raises InvalidInputError if the history is empty or any record is invalid.
    """
    records = list(history or [])
    if not records:
        raise InvalidInputError(
            "Evidence history must contain at least one record",
            student_id=student_id,
            concept_id=concept_id,
        )
    for record in records:
        try:
            validate_evidence_record(record)
        except InvalidInputError as exc:
            raise InvalidInputError(
                str(exc),
                student_id=student_id or getattr(record, "student_id", None),
                concept_id=concept_id or getattr(record, "concept_id", None),
            ) from exc
    return sorted(records, key=lambda rec: rec.recorded_at)


def validate_confidence_history(values: Iterable[Any], expected_length: int) -> List[int]:
    confidences = list(values)
    if len(confidences) != expected_length:
        raise InvalidInputError(
            f"Confidence history length {len(confidences)} does not match evidence length {expected_length}"
        )
    return [validate_confidence(value) for value in confidences]
