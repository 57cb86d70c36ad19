"""Evidence-weighted mastery scoring for a single student-concept pair."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from statistics import mean
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from engines.validation import validate_confidence_history, validate_evidence_history

logger = logging.getLogger(__name__)

CORRECTNESS_SCORES: Dict[str, float] = {"correct": 100.0, "partial": 50.0, "incorrect": 0.0}

# Inclusive lower bounds, checked from the top band down.
LEVEL_THRESHOLDS: Tuple[Tuple[int, str], ...] = (
    (90, "expert"),
    (75, "proficient"),
    (55, "developing"),
    (35, "emerging"),
    (0, "novice"),
)

TREND_SCORES: Dict[str, float] = {"improving": 100.0, "stable": 70.0, "declining": 40.0}

REASONING_KEYWORDS: Tuple[str, ...] = ("because", "therefore", "since")


def _clamp(value: float, lower: float = 0.0, upper: float = 100.0) -> float:
    return max(lower, min(upper, value))


def _round_half_up(value: float) -> int:
    return int(value + 0.5)


def record_correctness(record: Any) -> float:
    """Mean of the thinking and application correctness on the 0-100 scale."""

    return (
        CORRECTNESS_SCORES[record.thinking_correctness]
        + CORRECTNESS_SCORES[record.application_correctness]
    ) / 2.0


def level_for_score(score: int) -> str:
    for lower_bound, level in LEVEL_THRESHOLDS:
        if score >= lower_bound:
            return level
    return "novice"


def classify_trend(correctness_values: Sequence[float], window: int = 3) -> str:
    """Compare the latest ``window`` values with the ``window`` before them.

    With fewer than two full windows the earlier window is taken to equal the
    recent one, so the result is ``stable``.
    """

    if len(correctness_values) < window * 2:
        return "stable"
    recent = mean(correctness_values[-window:])
    prior = mean(correctness_values[-2 * window:-window])
    if recent > prior:
        return "improving"
    if recent < prior:
        return "declining"
    return "stable"


@dataclass
class MasteryResult:
    score: int
    level: str
    trend: str
    components: Dict[str, float] = field(default_factory=dict)

    def as_tuple(self) -> Tuple[int, str, str]:
        return self.score, self.level, self.trend


class MasteryCalculator:
    """Weighted linear combination of four evidence signals.

    accuracy (40%), confidence alignment (25%), improvement (20%) and
    explanation quality (15%). Every term is clamped to [0, 100] before
    weighting.
    """

    def __init__(self, weights: Optional[Dict[str, float]] = None, trend_window: int = 3):
        self.weights = weights or {
            "accuracy": 0.40,
            "confidence_alignment": 0.25,
            "improvement": 0.20,
            "explanation_quality": 0.15,
        }
        self.trend_window = trend_window
        self.length_threshold = 50
        self.length_credit = 30.0
        self.reasoning_credit = 30.0
        self.prompt_credit = 40.0

    def calculate(
        self,
        evidence_history: Sequence[Any],
        confidence_history: Optional[Iterable[int]] = None,
    ) -> MasteryResult:
        records = validate_evidence_history(evidence_history)
        if confidence_history is None:
            confidences = [record.confidence for record in records]
        else:
            confidences = validate_confidence_history(confidence_history, len(records))

        correctness = [record_correctness(record) for record in records]
        trend = classify_trend(correctness, self.trend_window)

        components = {
            "accuracy": _clamp(mean(correctness)),
            "confidence_alignment": _clamp(self._confidence_alignment(correctness, confidences)),
            "improvement": _clamp(TREND_SCORES[trend]),
            "explanation_quality": _clamp(mean(self._explanation_quality(record) for record in records)),
        }
        weighted = sum(components[name] * weight for name, weight in self.weights.items())
        score = int(_clamp(_round_half_up(weighted)))

        logger.debug(
            "Mastery computed from %d records: score=%d trend=%s components=%s",
            len(records),
            score,
            trend,
            components,
        )
        return MasteryResult(score=score, level=level_for_score(score), trend=trend, components=components)

    @staticmethod
    def _confidence_alignment(correctness: List[float], confidences: List[int]) -> float:
        gaps = [
            100.0 - abs((confidence - 1) / 4.0 * 100.0 - value)
            for value, confidence in zip(correctness, confidences)
        ]
        return mean(gaps)

    def _explanation_quality(self, record: Any) -> float:
        thinking = record.thinking_answer or ""
        application = record.application_answer or ""
        combined = f"{thinking} {application}".lower()

        quality = 0.0
        if len(thinking) + len(application) > self.length_threshold:
            quality += self.length_credit
        if any(keyword in combined for keyword in REASONING_KEYWORDS):
            quality += self.reasoning_credit
        # Fixed credit for addressing the prompt until a relevance check exists.
        if combined.strip():
            quality += self.prompt_credit
        return min(quality, 100.0)
