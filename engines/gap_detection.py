"""Rule-based learning gap detection.

Four independent rules run against a student's evidence history for one
concept:

* fragile_understanding - correct answers given with low confidence
* misconception         - recurring, near-identical wrong answers
* missing_prerequisite  - low mastery explained by a weak prerequisite
* false_confidence      - wrong answers given with high confidence

Each rule yields at most one insight per run. Insights whose type is already
open for the pair are suppressed; the store repeats that check as a
conditional insert.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from concept_graph import ConceptGraph
from engines.similarity import normalize_answer, similarity
from engines.validation import validate_evidence_history
from schemas import GapInsight

logger = logging.getLogger(__name__)

GAP_TYPES = (
    "fragile_understanding",
    "misconception",
    "missing_prerequisite",
    "false_confidence",
)

SUGGESTED_ACTIONS: Dict[str, str] = {
    "fragile_understanding": "Additional practice to build confidence",
    "misconception": "Targeted intervention on specific misconception",
    "missing_prerequisite": "Review prerequisite concept: {prerequisiteName}",
    "false_confidence": "Provide feedback challenging assumptions",
}


def suggested_action(gap_type: str, **params: Any) -> str:
    return SUGGESTED_ACTIONS[gap_type].format(**params)


def _answers_marked(record: Any, correctness: str) -> List[str]:
    answers = []
    if record.thinking_correctness == correctness:
        answers.append(record.thinking_answer)
    if record.application_correctness == correctness:
        answers.append(record.application_answer)
    return answers


def _has_outcome(record: Any, correctness: str) -> bool:
    return record.thinking_correctness == correctness or record.application_correctness == correctness


def cluster_answers(answers: Sequence[str], threshold: float = 0.80) -> List[List[str]]:
    """Group answers linked by similarity above ``threshold``.

    Clusters are the connected components of the similarity graph, largest
    first. Comparison is pairwise, O(n^2) in the number of answers.
    """

    groups = [[answers[idx] for idx in group] for group in _cluster_indices(answers, threshold)]
    return sorted(groups, key=lambda group: (-len(group), group[0]))


def _cluster_indices(answers: Sequence[str], threshold: float) -> List[List[int]]:
    parent = list(range(len(answers)))

    def find(idx: int) -> int:
        while parent[idx] != idx:
            parent[idx] = parent[parent[idx]]
            idx = parent[idx]
        return idx

    for i in range(len(answers)):
        for j in range(i + 1, len(answers)):
            if similarity(answers[i], answers[j]) > threshold:
                root_i, root_j = find(i), find(j)
                if root_i != root_j:
                    parent[root_j] = root_i

    groups: Dict[int, List[int]] = defaultdict(list)
    for idx in range(len(answers)):
        groups[find(idx)].append(idx)
    return list(groups.values())


class GapDetector:
    def __init__(self, concept_graph: Optional[ConceptGraph] = None):
        self.concept_graph = concept_graph or ConceptGraph()
        self.fragile_confidence_max = 2
        self.false_confidence_min = 4
        self.similarity_threshold = 0.80
        self.misconception_min_cluster = 3
        self.misconception_high_cluster = 5
        self.low_mastery_score = 50
        self.weak_prerequisite_score = 60

        self._rules: List[tuple[str, Callable[..., Optional[GapInsight]]]] = [
            ("fragile_understanding", self._check_fragile_understanding),
            ("misconception", self._check_misconception),
            ("missing_prerequisite", self._check_missing_prerequisite),
            ("false_confidence", self._check_false_confidence),
        ]

    def detect(
        self,
        student_id: str,
        concept_id: str,
        evidence_history: Sequence[Any],
        all_student_mastery: Mapping[str, int],
    ) -> List[GapInsight]:
        """Run every rule and return what fired, ignoring stored insights."""

        records = validate_evidence_history(evidence_history, student_id=student_id, concept_id=concept_id)
        fired: List[GapInsight] = []
        for rule_name, rule in self._rules:
            insight = rule(student_id, concept_id, records, all_student_mastery)
            if insight is None:
                continue
            logger.debug(
                "Rule %s fired for student %s concept %s (severity=%s)",
                rule_name,
                student_id,
                concept_id,
                insight.severity,
            )
            fired.append(insight)
        return fired

    @staticmethod
    def without_open(insights: Iterable[GapInsight], existing_insights: Iterable[GapInsight]) -> List[GapInsight]:
        """Drop insights whose (student, concept, type) already has an open row."""

        open_keys = {
            (insight.student_id, insight.concept_id, insight.gap_type)
            for insight in existing_insights
            if insight.is_open
        }
        kept: List[GapInsight] = []
        for insight in insights:
            if (insight.student_id, insight.concept_id, insight.gap_type) in open_keys:
                logger.debug(
                    "Suppressing %s for student %s concept %s; an open insight exists",
                    insight.gap_type,
                    insight.student_id,
                    insight.concept_id,
                )
                continue
            kept.append(insight)
        return kept

    def analyze(
        self,
        student_id: str,
        concept_id: str,
        evidence_history: Sequence[Any],
        all_student_mastery: Mapping[str, int],
        existing_insights: Iterable[GapInsight] = (),
    ) -> List[GapInsight]:
        """Detected insights minus those already open for the pair."""

        fired = self.detect(student_id, concept_id, evidence_history, all_student_mastery)
        return self.without_open(fired, existing_insights)

    # ------------------------------------------------------------------
    def _insight(self, student_id: str, concept_id: str, gap_type: str, **fields: Any) -> GapInsight:
        return GapInsight(student_id=student_id, concept_id=concept_id, gap_type=gap_type, **fields)

    def _check_fragile_understanding(self, student_id, concept_id, records, _mastery) -> Optional[GapInsight]:
        qualifying = [
            record
            for record in records
            if _has_outcome(record, "correct") and record.confidence <= self.fragile_confidence_max
        ]
        if not qualifying:
            return None
        concept_name = self.concept_graph.name_of(concept_id)
        return self._insight(
            student_id,
            concept_id,
            "fragile_understanding",
            description=(
                f"Answered {concept_name} correctly but with low confidence "
                f"in {len(qualifying)} of {len(records)} sessions"
            ),
            severity="low",
            suggested_action=suggested_action("fragile_understanding"),
            details={"sessions": [record.session_id for record in qualifying]},
        )

    def _check_misconception(self, student_id, concept_id, records, _mastery) -> Optional[GapInsight]:
        # Both parts of one session may carry the same wrong answer; a cluster
        # is sized by the sessions it spans.
        answers: List[str] = []
        owners: List[int] = []
        for position, record in enumerate(records):
            for answer in _answers_marked(record, "incorrect"):
                answer = normalize_answer(answer)
                if answer:
                    answers.append(answer)
                    owners.append(position)
        if len(set(owners)) < self.misconception_min_cluster:
            return None

        best_answers: List[str] = []
        best_sessions: List[int] = []
        for group in _cluster_indices(answers, self.similarity_threshold):
            sessions = sorted({owners[idx] for idx in group})
            if len(sessions) > len(best_sessions):
                best_sessions = sessions
                best_answers = list(dict.fromkeys(answers[idx] for idx in group))
        cluster_size = len(best_sessions)
        if cluster_size < self.misconception_min_cluster:
            return None

        severity = "high" if cluster_size >= self.misconception_high_cluster else "medium"
        concept_name = self.concept_graph.name_of(concept_id)
        return self._insight(
            student_id,
            concept_id,
            "misconception",
            description=(
                f"Repeated the same incorrect answer for {concept_name} "
                f"in {cluster_size} sessions, e.g. \"{best_answers[0]}\""
            ),
            severity=severity,
            suggested_action=suggested_action("misconception"),
            details={
                "cluster_size": cluster_size,
                "answers": best_answers,
                "sessions": [records[position].session_id for position in best_sessions],
            },
        )

    def _check_missing_prerequisite(self, student_id, concept_id, _records, mastery) -> Optional[GapInsight]:
        score = mastery.get(concept_id)
        if score is None or score >= self.low_mastery_score:
            return None

        weak: List[tuple[int, str]] = []
        for prereq_id in self.concept_graph.prerequisites_of(concept_id):
            if prereq_id not in self.concept_graph:
                logger.warning(
                    "Skipping unknown prerequisite %s of concept %s for student %s (rule=missing_prerequisite)",
                    prereq_id,
                    concept_id,
                    student_id,
                )
                continue
            prereq_score = mastery.get(prereq_id)
            if prereq_score is not None and prereq_score < self.weak_prerequisite_score:
                weak.append((prereq_score, prereq_id))
        if not weak:
            return None

        weak.sort()
        prereq_score, prereq_id = weak[0]
        prereq_name = self.concept_graph.name_of(prereq_id)
        concept_name = self.concept_graph.name_of(concept_id)
        return self._insight(
            student_id,
            concept_id,
            "missing_prerequisite",
            description=(
                f"Low mastery of {concept_name} ({score}) is likely caused by weak "
                f"prerequisite {prereq_name} ({prereq_score})"
            ),
            severity="high",
            suggested_action=suggested_action("missing_prerequisite", prerequisiteName=prereq_name),
            details={
                "prerequisite_id": prereq_id,
                "prerequisite_score": prereq_score,
                "weak_prerequisites": [pid for _, pid in weak],
            },
        )

    def _check_false_confidence(self, student_id, concept_id, records, _mastery) -> Optional[GapInsight]:
        qualifying = [
            record
            for record in records
            if _has_outcome(record, "incorrect") and record.confidence >= self.false_confidence_min
        ]
        if not qualifying:
            return None
        concept_name = self.concept_graph.name_of(concept_id)
        return self._insight(
            student_id,
            concept_id,
            "false_confidence",
            description=(
                f"Answered {concept_name} incorrectly while highly confident "
                f"in {len(qualifying)} of {len(records)} sessions"
            ),
            severity="high",
            suggested_action=suggested_action("false_confidence"),
            details={"sessions": [record.session_id for record in qualifying]},
        )
