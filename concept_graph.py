"""Concept catalog with a prerequisite DAG."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

import yaml

from schemas import Concept

logger = logging.getLogger(__name__)


class ConceptGraphError(ValueError):
    """Raised when a prerequisite edge would break the DAG."""
    pass


def _load_catalog_payload(path: Path) -> Dict[str, Any]:
    suffix = path.suffix.lower()
    text = Path(path).read_text(encoding="utf-8")
    if suffix in {".json", ".jsonc"}:
        return json.loads(text)
    if suffix in {".yml", ".yaml"}:
        return yaml.safe_load(text) or {}
    raise ValueError(f"Unsupported concept catalog format: {path}")


@dataclass
class ConceptNode:
    """A concept and the ids of its prerequisites."""

    concept_id: str
    name: str
    subject_id: str = "general"
    description: Optional[str] = None
    prerequisites: List[str] = field(default_factory=list)

    @classmethod
    def from_concept(cls, concept: Concept) -> "ConceptNode":
        return cls(
            concept_id=concept.concept_id,
            name=concept.name,
            subject_id=concept.subject_id,
            description=concept.description,
            prerequisites=list(concept.prerequisites),
        )

    def to_concept(self) -> Concept:
        return Concept(
            concept_id=self.concept_id,
            name=self.name,
            subject_id=self.subject_id,
            description=self.description,
            prerequisites=list(self.prerequisites),
        )


class ConceptGraph:
    """Graph storing concepts and prerequisite edges (prerequisite -> dependent)."""

    def __init__(self) -> None:
        self._nodes: Dict[str, ConceptNode] = {}

    def __contains__(self, concept_id: object) -> bool:
        return concept_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    # ------------------------------------------------------------------
    def add_concept(self, concept: Concept | ConceptNode) -> ConceptNode:
        """Insert or replace a concept, rejecting edges that would form a cycle.

        Prerequisites that are not (yet) in the catalog are accepted; they are
        dangling references that readers skip.
        """

        node = concept if isinstance(concept, ConceptNode) else ConceptNode.from_concept(concept)
        if node.concept_id in node.prerequisites:
            raise ConceptGraphError(f"Concept {node.concept_id} cannot be its own prerequisite")
        for prereq in node.prerequisites:
            if prereq in self._nodes and node.concept_id in self.ancestors(prereq):
                raise ConceptGraphError(
                    f"Adding prerequisite {prereq} to {node.concept_id} would create a cycle"
                )
        self._nodes[node.concept_id] = node
        return node

    # ------------------------------------------------------------------
    def get(self, concept_id: str) -> Optional[ConceptNode]:
        return self._nodes.get(concept_id)

    def name_of(self, concept_id: str) -> str:
        node = self._nodes.get(concept_id)
        return node.name if node else concept_id

    def concepts(self) -> List[ConceptNode]:
        return list(self._nodes.values())

    def subject_of(self, concept_id: str) -> Optional[str]:
        node = self._nodes.get(concept_id)
        return node.subject_id if node else None

    # ------------------------------------------------------------------
    def prerequisites_of(self, concept_id: str) -> List[str]:
        node = self._nodes.get(concept_id)
        return list(node.prerequisites) if node else []

    def dependents_of(self, concept_id: str) -> List[str]:
        return sorted(cid for cid, node in self._nodes.items() if concept_id in node.prerequisites)

    def ancestors(self, concept_id: str) -> Set[str]:
        """All direct and transitive prerequisites of ``concept_id``."""

        visited: Set[str] = set()
        stack: List[str] = [concept_id]
        while stack:
            current = stack.pop()
            for prereq in self.prerequisites_of(current):
                if prereq not in visited:
                    visited.add(prereq)
                    stack.append(prereq)
        return visited

    def topological_order(self) -> List[str]:
        """Concept ids with every prerequisite before its dependents."""

        ordered: List[str] = []
        state: Dict[str, int] = {}

        def visit(concept_id: str) -> None:
            if state.get(concept_id) == 2:
                return
            state[concept_id] = 1
            for prereq in self.prerequisites_of(concept_id):
                if prereq in self._nodes and state.get(prereq) != 2:
                    visit(prereq)
            state[concept_id] = 2
            ordered.append(concept_id)

        for concept_id in sorted(self._nodes):
            visit(concept_id)
        return ordered

    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "concepts": [
                {
                    "concept_id": node.concept_id,
                    "name": node.name,
                    "subject_id": node.subject_id,
                    "description": node.description,
                    "prerequisites": list(node.prerequisites),
                }
                for node in (self._nodes[cid] for cid in self.topological_order())
            ]
        }

    @classmethod
    def from_concepts(cls, concepts: Iterable[Concept | ConceptNode]) -> "ConceptGraph":
        graph = cls()
        # Insert prerequisites first so cycle checks see the full graph.
        by_id = {item.concept_id: item for item in concepts}
        added: Set[str] = set()

        def insert(concept_id: str, trail: Set[str]) -> None:
            if concept_id in added or concept_id not in by_id:
                return
            if concept_id in trail:
                raise ConceptGraphError(f"Cycle detected through concept {concept_id}")
            item = by_id[concept_id]
            for prereq in item.prerequisites:
                insert(prereq, trail | {concept_id})
            graph.add_concept(item)
            added.add(concept_id)

        for concept_id in by_id:
            insert(concept_id, set())
        return graph

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ConceptGraph":
        return cls.from_concepts(Concept(**item) for item in payload.get("concepts", []))

    @classmethod
    def load(cls, path: Path) -> "ConceptGraph":
        graph = cls.from_dict(_load_catalog_payload(Path(path)))
        logger.info("Loaded %d concepts from %s", len(graph), path)
        return graph
