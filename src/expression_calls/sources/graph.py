"""In-memory condition ontology built from anatomy and stage relations."""

from collections import defaultdict
from itertools import product
from typing import Iterable, Optional

import structlog

from expression_calls.engine.models import Condition
from expression_calls.errors import OntologyCycleError

logger = structlog.get_logger(__name__)


def _adjacency(relations: Iterable[tuple[str, str]]) -> dict[str, set[str]]:
    """child -> parents, skipping reflexive edges."""
    parents: dict[str, set[str]] = defaultdict(set)
    for child_id, parent_id in relations:
        if child_id == parent_id:
            continue
        parents[child_id].add(parent_id)
    return parents


def _check_acyclic(parents: dict[str, set[str]], ontology: str) -> None:
    """Depth-first search for a back edge.

    Raises:
        OntologyCycleError: With the offending path
    """
    visiting: list[str] = []
    on_path: set[str] = set()
    done: set[str] = set()

    def visit(term: str) -> None:
        visiting.append(term)
        on_path.add(term)
        for parent in sorted(parents.get(term, ())):
            if parent in on_path:
                cycle = visiting[visiting.index(parent):] + [parent]
                raise OntologyCycleError(
                    f"Cycle in {ontology} relations: {' -> '.join(cycle)}",
                    path=cycle,
                )
            if parent not in done:
                visit(parent)
        on_path.discard(term)
        visiting.pop()
        done.add(term)

    for term in sorted(parents):
        if term not in done:
            visit(term)


def _transitive(edges: dict[str, set[str]]) -> dict[str, frozenset[str]]:
    """Transitive closure of an acyclic adjacency map."""
    closure: dict[str, frozenset[str]] = {}

    def reach(term: str) -> frozenset[str]:
        if term not in closure:
            found: set[str] = set()
            for nxt in edges.get(term, ()):
                found.add(nxt)
                found |= reach(nxt)
            closure[term] = frozenset(found)
        return closure[term]

    for term in list(edges):
        reach(term)
    return closure


def _invert(parents: dict[str, set[str]]) -> dict[str, set[str]]:
    children: dict[str, set[str]] = defaultdict(set)
    for child_id, parent_ids in parents.items():
        for parent_id in parent_ids:
            children[parent_id].add(child_id)
    return children


class ConditionGraph:
    """
    Closure provider over conditions.

    A condition is an ancestor of another when, in the same species, its
    anatomical entity is the same or an ancestor of the other's and its
    developmental stage is the same or an ancestor of the other's (and the two
    conditions differ). When a set of known conditions is given, closures are
    restricted to it; otherwise every combination of related terms is returned.
    """

    def __init__(
        self,
        anat_relations: Iterable[tuple[str, str]],
        stage_relations: Iterable[tuple[str, str]] = (),
        conditions: Optional[Iterable[Condition]] = None,
    ):
        """
        Build the graph and check it is acyclic.

        Args:
            anat_relations: (child_id, parent_id) pairs of anatomical entities
            stage_relations: (child_id, parent_id) pairs of developmental stages
            conditions: Conditions known to the store, if closures should be
                restricted to them

        Raises:
            OntologyCycleError: If either relation set contains a cycle
        """
        anat_parents = _adjacency(anat_relations)
        stage_parents = _adjacency(stage_relations)
        _check_acyclic(anat_parents, "anatomical entity")
        _check_acyclic(stage_parents, "developmental stage")

        self._anat_up = _transitive(anat_parents)
        self._anat_down = _transitive(_invert(anat_parents))
        self._stage_up = _transitive(stage_parents)
        self._stage_down = _transitive(_invert(stage_parents))
        self.conditions: Optional[frozenset[Condition]] = (
            frozenset(conditions) if conditions is not None else None
        )

        logger.info(
            "condition_graph_built",
            anat_terms=len(set(self._anat_up) | set(self._anat_down)),
            stage_terms=len(set(self._stage_up) | set(self._stage_down)),
            condition_count=len(self.conditions) if self.conditions is not None else None,
        )

    def _related(
        self,
        condition: Condition,
        anat: dict[str, frozenset[str]],
        stage: dict[str, frozenset[str]],
    ) -> set[Condition]:
        anat_ids = {condition.anat_entity_id} | anat.get(condition.anat_entity_id, frozenset())
        stage_ids = {condition.dev_stage_id} | stage.get(condition.dev_stage_id, frozenset())
        related = {
            Condition(anat_id, stage_id, condition.species_id)
            for anat_id, stage_id in product(anat_ids, stage_ids)
        }
        related.discard(condition)
        if self.conditions is not None:
            related &= self.conditions
        return related

    def ancestors_of(self, condition: Condition) -> set[Condition]:
        return self._related(condition, self._anat_up, self._stage_up)

    def descendants_of(self, condition: Condition) -> set[Condition]:
        return self._related(condition, self._anat_down, self._stage_down)

    def is_more_precise(self, condition: Condition, other: Condition) -> bool:
        """True if condition is a strict descendant of other."""
        return condition in self.descendants_of(other)
