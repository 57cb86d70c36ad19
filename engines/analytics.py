"""Class- and subject-level roll-ups of mastery, effort and gap insights."""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from statistics import mean
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from engines.gap_detection import GAP_TYPES

LOW_MASTERY = 60
STRUGGLING_TIME_RATIO = 1.5
RUSHING_TIME_RATIO = 0.5
HIGH_CONFIDENCE = 4
LOW_CONFIDENCE = 2


@dataclass
class ConceptSummary:
    concept_id: str
    concept_name: str
    mean_mastery: float
    student_count: int


@dataclass
class StudentSummary:
    student_id: str
    mean_mastery: Optional[float]
    concept_count: int
    evidence_count: int
    average_time_seconds: Optional[float]
    struggling: bool = False
    rushing: bool = False
    calibration: str = "well_calibrated"
    quadrant: Optional[str] = None
    open_gaps: int = 0


@dataclass
class ClassReport:
    class_id: str
    student_count: int
    class_average_time_seconds: Optional[float]
    class_mean_mastery: Optional[float]
    weakest_concepts: List[ConceptSummary] = field(default_factory=list)
    students: List[StudentSummary] = field(default_factory=list)
    gap_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SubjectSummary:
    subject_id: str
    mean_mastery: Optional[float]
    concept_count: int
    student_count: int
    weakest_concept: Optional[str]
    open_gaps: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _get(row: Any, key: str) -> Any:
    if isinstance(row, Mapping):
        return row[key]
    return getattr(row, key)


def _is_open(insight: Any) -> bool:
    return _get(insight, "resolved_at") is None


def record_outcome(record: Any) -> str:
    """Collapse a session to correct/incorrect/partial for calibration counting.

    A session is correct or incorrect only when both parts agree. Any mix,
    including one part right and the other wrong, is partial. This is stricter
    than the gap rules, which fire when either part matches.
    """

    outcomes = {record.thinking_correctness, record.application_correctness}
    if outcomes == {"correct"}:
        return "correct"
    if outcomes == {"incorrect"}:
        return "incorrect"
    return "partial"


def classify_calibration(records: Sequence[Any]) -> str:
    """Label a student by the strict-majority confidence/outcome pairing.

    Partial sessions (see :func:`record_outcome`) count toward no label but
    still count in the denominator, so a history of mixed sessions is
    ``well_calibrated`` even when confidence was high.
    """

    if not records:
        return "well_calibrated"
    counts: Counter[str] = Counter()
    for record in records:
        outcome = record_outcome(record)
        if record.confidence >= HIGH_CONFIDENCE and outcome == "correct":
            counts["well_calibrated"] += 1
        elif record.confidence >= HIGH_CONFIDENCE and outcome == "incorrect":
            counts["overconfident"] += 1
        elif record.confidence <= LOW_CONFIDENCE and outcome == "correct":
            counts["underconfident"] += 1

    total = len(records)
    for label in ("overconfident", "underconfident", "well_calibrated"):
        if counts[label] / total > 0.5:
            return label
    return "well_calibrated"


def average_time_per_session(records: Sequence[Any]) -> Optional[float]:
    if not records:
        return None
    return mean(float(r.thinking_time_seconds) + float(r.application_time_seconds) for r in records)


def classify_behavior(
    student_time: Optional[float],
    class_time: Optional[float],
    mastery: Optional[float],
) -> Dict[str, bool]:
    flags = {"struggling": False, "rushing": False}
    if student_time is None or not class_time or mastery is None or mastery >= LOW_MASTERY:
        return flags
    if student_time > STRUGGLING_TIME_RATIO * class_time:
        flags["struggling"] = True
    elif student_time < RUSHING_TIME_RATIO * class_time:
        flags["rushing"] = True
    return flags


def classify_quadrant(
    student_time: Optional[float],
    class_time: Optional[float],
    mastery: Optional[float],
) -> Optional[str]:
    if student_time is None or class_time is None or mastery is None:
        return None
    effort = "high_effort" if student_time >= class_time else "low_effort"
    performance = "high_performance" if mastery >= LOW_MASTERY else "low_performance"
    return f"{effort}_{performance}"


class ClassAnalyticsAggregator:
    """Builds teacher-facing summaries from persisted mastery and gap rows.

    Mastery rows and insights may be pydantic models, dataclasses or plain
    mappings; evidence records need the Evidence attributes.
    """

    def build_class_report(
        self,
        class_id: str,
        student_ids: Iterable[str],
        mastery_rows: Iterable[Any],
        evidence_by_student: Mapping[str, Sequence[Any]],
        insights: Iterable[Any] = (),
        concept_names: Optional[Mapping[str, str]] = None,
    ) -> ClassReport:
        roster = list(dict.fromkeys(student_ids))
        roster_set = set(roster)
        concept_names = concept_names or {}

        scores_by_student: Dict[str, List[int]] = defaultdict(list)
        scores_by_concept: Dict[str, List[int]] = defaultdict(list)
        for row in mastery_rows:
            student_id = _get(row, "student_id")
            if student_id not in roster_set:
                continue
            score = int(_get(row, "score"))
            scores_by_student[student_id].append(score)
            scores_by_concept[_get(row, "concept_id")].append(score)

        weakest = sorted(
            (
                ConceptSummary(
                    concept_id=concept_id,
                    concept_name=concept_names.get(concept_id, concept_id),
                    mean_mastery=round(mean(scores), 2),
                    student_count=len(scores),
                )
                for concept_id, scores in scores_by_concept.items()
            ),
            key=lambda item: (item.mean_mastery, item.concept_id),
        )

        open_by_student: Counter[str] = Counter()
        gap_counts: Dict[str, int] = {gap_type: 0 for gap_type in GAP_TYPES}
        for insight in insights:
            student_id = _get(insight, "student_id")
            if student_id not in roster_set or not _is_open(insight):
                continue
            open_by_student[student_id] += 1
            gap_type = _get(insight, "gap_type")
            gap_counts[gap_type] = gap_counts.get(gap_type, 0) + 1

        student_times = {
            student_id: average_time_per_session(evidence_by_student.get(student_id, ()))
            for student_id in roster
        }
        known_times = [value for value in student_times.values() if value is not None]
        class_time = mean(known_times) if known_times else None

        students: List[StudentSummary] = []
        for student_id in roster:
            scores = scores_by_student.get(student_id, [])
            mastery = round(mean(scores), 2) if scores else None
            records = list(evidence_by_student.get(student_id, ()))
            student_time = student_times[student_id]
            flags = classify_behavior(student_time, class_time, mastery)
            students.append(
                StudentSummary(
                    student_id=student_id,
                    mean_mastery=mastery,
                    concept_count=len(scores),
                    evidence_count=len(records),
                    average_time_seconds=round(student_time, 2) if student_time is not None else None,
                    struggling=flags["struggling"],
                    rushing=flags["rushing"],
                    calibration=classify_calibration(records),
                    quadrant=classify_quadrant(student_time, class_time, mastery),
                    open_gaps=open_by_student.get(student_id, 0),
                )
            )

        all_scores = [score for scores in scores_by_student.values() for score in scores]
        return ClassReport(
            class_id=class_id,
            student_count=len(roster),
            class_average_time_seconds=round(class_time, 2) if class_time is not None else None,
            class_mean_mastery=round(mean(all_scores), 2) if all_scores else None,
            weakest_concepts=weakest,
            students=students,
            gap_counts=gap_counts,
        )

    def summarize_subjects(
        self,
        mastery_rows: Iterable[Any],
        concepts: Iterable[Any],
        insights: Iterable[Any] = (),
    ) -> List[SubjectSummary]:
        subject_of: Dict[str, str] = {}
        concepts_by_subject: Dict[str, List[str]] = defaultdict(list)
        for concept in concepts:
            concept_id = _get(concept, "concept_id")
            subject_id = _get(concept, "subject_id")
            subject_of[concept_id] = subject_id
            concepts_by_subject[subject_id].append(concept_id)

        scores: Dict[str, Dict[str, List[int]]] = defaultdict(lambda: defaultdict(list))
        students: Dict[str, set] = defaultdict(set)
        for row in mastery_rows:
            concept_id = _get(row, "concept_id")
            subject_id = subject_of.get(concept_id)
            if subject_id is None:
                continue
            scores[subject_id][concept_id].append(int(_get(row, "score")))
            students[subject_id].add(_get(row, "student_id"))

        open_gaps: Counter[str] = Counter()
        for insight in insights:
            subject_id = subject_of.get(_get(insight, "concept_id"))
            if subject_id is not None and _is_open(insight):
                open_gaps[subject_id] += 1

        summaries: List[SubjectSummary] = []
        for subject_id in sorted(concepts_by_subject):
            per_concept = scores.get(subject_id, {})
            concept_means = {cid: mean(values) for cid, values in per_concept.items()}
            all_values = [value for values in per_concept.values() for value in values]
            weakest = min(concept_means, key=lambda cid: (concept_means[cid], cid)) if concept_means else None
            summaries.append(
                SubjectSummary(
                    subject_id=subject_id,
                    mean_mastery=round(mean(all_values), 2) if all_values else None,
                    concept_count=len(concepts_by_subject[subject_id]),
                    student_count=len(students.get(subject_id, ())),
                    weakest_concept=weakest,
                    open_gaps=open_gaps.get(subject_id, 0),
                )
            )
        return summaries
