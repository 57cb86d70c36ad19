"""Capture -> mastery -> gap detection, serialized per (student, concept) pair."""

from __future__ import annotations

import logging
import threading
import weakref
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import db
from engines.gap_detection import GapDetector
from engines.mastery import MasteryCalculator
from engines.validation import InvalidInputError
from schemas import CaptureResponse, ConceptMastery, Evidence, GapInsight, SweepResponse

logger = logging.getLogger(__name__)


@dataclass
class CaptureResult:
    mastery: ConceptMastery
    new_insights: List[GapInsight] = field(default_factory=list)
    resolved_insight_ids: List[int] = field(default_factory=list)

    def to_response(self) -> CaptureResponse:
        return CaptureResponse(
            mastery=self.mastery,
            new_insights=self.new_insights,
            resolved_insight_ids=self.resolved_insight_ids,
        )


@dataclass
class SweepSummary:
    pairs_processed: int = 0
    insights_created: int = 0
    insights_resolved: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def to_response(self) -> SweepResponse:
        return SweepResponse(
            pairs_processed=self.pairs_processed,
            insights_created=self.insights_created,
            insights_resolved=self.insights_resolved,
            failures=self.failures,
        )


class EvidencePipeline:
    """Applies the engines to stored evidence and persists their outputs.

    ``store`` is any object exposing the ``db`` module's evidence, mastery and
    gap-insight functions. When no detector is supplied, one is built per
    refresh from the store's current concept graph.
    """

    def __init__(
        self,
        store: Any = None,
        calculator: Optional[MasteryCalculator] = None,
        detector: Optional[GapDetector] = None,
        *,
        recovery_score: int = 75,
        auto_resolve: bool = True,
        max_workers: int = 4,
    ):
        self.store = store if store is not None else db
        self.calculator = calculator or MasteryCalculator()
        self.detector = detector
        self.recovery_score = recovery_score
        self.auto_resolve = auto_resolve
        self.max_workers = max_workers
        # Entries drop out once no capture or refresh holds the lock.
        self._locks: weakref.WeakValueDictionary[Tuple[str, str], threading.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._locks_guard = threading.Lock()

    def _pair_lock(self, student_id: str, concept_id: str) -> threading.Lock:
        key = (student_id, concept_id)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    # ------------------------------------------------------------------
    def capture(self, evidence: Evidence) -> CaptureResult:
        """Store a completed session and refresh the pair's mastery and gaps."""

        with self._pair_lock(evidence.student_id, evidence.concept_id):
            self.store.insert_evidence(evidence)
            result = self._refresh(evidence.student_id, evidence.concept_id)
        logger.info(
            "Captured evidence for student %s concept %s: score=%d new_insights=%d",
            evidence.student_id,
            evidence.concept_id,
            result.mastery.score,
            len(result.new_insights),
        )
        return result

    def recompute(self, student_id: str, concept_id: str) -> CaptureResult:
        with self._pair_lock(student_id, concept_id):
            return self._refresh(student_id, concept_id)

    def _refresh(self, student_id: str, concept_id: str) -> CaptureResult:
        history = self.store.list_evidence(student_id, concept_id)
        if not history:
            raise InvalidInputError(
                "No evidence recorded for this student and concept",
                student_id=student_id,
                concept_id=concept_id,
            )

        try:
            result = self.calculator.calculate(history)
        except InvalidInputError as exc:
            raise InvalidInputError(str(exc), student_id=student_id, concept_id=concept_id) from exc

        mastery = ConceptMastery(
            student_id=student_id,
            concept_id=concept_id,
            score=result.score,
            level=result.level,
            trend=result.trend,
            evidence_count=len(history),
        )
        self.store.upsert_concept_mastery(mastery)

        scores = dict(self.store.mastery_scores_for_student(student_id))
        scores[concept_id] = result.score
        open_insights = self.store.list_gap_insights(student_id, concept_id)

        detector = self.detector or GapDetector(self.store.load_concept_graph())
        fired = detector.detect(student_id, concept_id, history, scores)

        created: List[GapInsight] = []
        for insight in detector.without_open(fired, open_insights):
            stored = self.store.insert_gap_insight(insight)
            if stored is not None:
                created.append(stored)

        resolved: List[int] = []
        if self.auto_resolve and result.score >= self.recovery_score:
            fired_types = {insight.gap_type for insight in fired}
            stale = {insight.gap_type for insight in open_insights} - fired_types
            if stale:
                resolved = self.store.resolve_gap_insights(student_id, concept_id, stale)
                logger.info(
                    "Resolved %s for student %s concept %s after mastery reached %d",
                    sorted(stale),
                    student_id,
                    concept_id,
                    result.score,
                )

        return CaptureResult(mastery=mastery, new_insights=created, resolved_insight_ids=resolved)

    # ------------------------------------------------------------------
    def sweep(
        self,
        student_ids: Optional[Sequence[str]] = None,
        max_workers: Optional[int] = None,
    ) -> SweepSummary:
        """Recompute every stored pair; pairs run in parallel, each one serialized.

        Invalid evidence for one pair is logged and reported without aborting
        the sweep. Storage errors propagate.
        """

        pairs = self.store.list_evidence_pairs(student_ids)
        summary = SweepSummary()
        workers = max(1, max_workers or self.max_workers)
        logger.info("Starting gap sweep over %d pairs with %d workers", len(pairs), workers)

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self.recompute, student_id, concept_id): (student_id, concept_id)
                for student_id, concept_id in pairs
            }
            for future in as_completed(futures):
                student_id, concept_id = futures[future]
                try:
                    result = future.result()
                except InvalidInputError as exc:
                    logger.error(
                        "Skipping student %s concept %s during sweep: %s",
                        student_id,
                        concept_id,
                        exc,
                    )
                    summary.failures.append(
                        {"student_id": student_id, "concept_id": concept_id, "error": str(exc)}
                    )
                    continue
                summary.pairs_processed += 1
                summary.insights_created += len(result.new_insights)
                summary.insights_resolved += len(result.resolved_insight_ids)

        summary.failures.sort(key=lambda item: (item["student_id"], item["concept_id"]))
        logger.info(
            "Gap sweep finished: %d pairs, %d new insights, %d resolved, %d failures",
            summary.pairs_processed,
            summary.insights_created,
            summary.insights_resolved,
            len(summary.failures),
        )
        return summary
