"""Propagation of basic calls through the condition ontology.

Presence and absence follow opposite directions:

- Presence: evidence observed in a descendant condition supports expression in
  its ancestors ("expressed in a substructure" => "expressed in the structure").
- Absence: evidence observed in an ancestor condition supports absence in its
  descendants ("not expressed in the structure" => "not expressed in any
  substructure").

propagate_expressed() only ever looks at descendants and can only build
ExpressedOrigin tags; propagate_not_expressed() only ever looks at ancestors and
can only build NotExpressedOrigin tags.
"""

from typing import Iterable, Mapping, Optional, Protocol

import structlog

from expression_calls.engine.merge import join_calls
from expression_calls.engine.models import (
    BasicCall,
    CallType,
    Condition,
    ExpressedCall,
    ExpressedOrigin,
    GeneCondition,
    GlobalCall,
    NotExpressedCall,
    NotExpressedOrigin,
    PropagationDirection,
)
from expression_calls.errors import InvalidEvidenceError, OntologyCycleError

logger = structlog.get_logger(__name__)


class OntologyClosureProvider(Protocol):
    """Transitive, acyclic closure of the condition hierarchy."""

    def ancestors_of(self, condition: Condition) -> set[Condition]:
        ...

    def descendants_of(self, condition: Condition) -> set[Condition]:
        ...


class BasicCallSource(Protocol):
    """Store of directly observed basic calls."""

    def basic_calls_for(
        self,
        gene_id: str,
        conditions: Iterable[Condition],
        call_type: CallType,
    ) -> Mapping[Condition, BasicCall]:
        ...


def _reachable(
    condition: Condition,
    direction: PropagationDirection,
    closure: OntologyClosureProvider,
) -> set[Condition]:
    """Conditions whose evidence may flow into condition, cycle-checked."""
    if direction is PropagationDirection.SELF_ONLY:
        return set()

    if direction is PropagationDirection.INCLUDE_DESCENDANTS:
        reached = set(closure.descendants_of(condition))
        opposite = set(closure.ancestors_of(condition))
    else:
        reached = set(closure.ancestors_of(condition))
        opposite = set(closure.descendants_of(condition))

    if condition in reached:
        raise OntologyCycleError(
            f"Condition {condition} is reachable from itself in the ontology closure",
            path=[condition],
        )
    both = reached & opposite
    if both:
        offender = min(both)
        raise OntologyCycleError(
            f"Condition {offender} is both an ancestor and a descendant of {condition}",
            path=[condition, offender, condition],
        )
    return reached


def _collect(
    gene_id: str,
    condition: Condition,
    call_type: CallType,
    direction: PropagationDirection,
    source: BasicCallSource,
    closure: OntologyClosureProvider,
) -> tuple[Optional[BasicCall], list[BasicCall]]:
    """Fetch the self call and the calls propagated from the legal direction."""
    related = _reachable(condition, direction, closure)
    calls = source.basic_calls_for(gene_id, {condition} | related, call_type)

    for observed_condition, call in calls.items():
        if call.gene_id != gene_id or call.call_type is not call_type:
            raise InvalidEvidenceError(
                f"Call source returned {call.call_type.value} call for gene "
                f"{call.gene_id} when asked for {call_type.value} calls of {gene_id}"
            )
        if call.condition != observed_condition:
            raise InvalidEvidenceError(
                f"Call source keyed a call observed in {call.condition} "
                f"under {observed_condition}"
            )

    self_call = calls.get(condition)
    propagated = [calls[c] for c in sorted(related) if c in calls]
    return self_call, propagated


def propagate_expressed(
    gene_id: str,
    condition: Condition,
    source: BasicCallSource,
    closure: OntologyClosureProvider,
    propagate: bool = True,
) -> Optional[ExpressedCall]:
    """
    Build the presence call of a gene in a condition.

    Args:
        gene_id: Gene to build the call for
        condition: Condition the call is about
        source: Basic call store
        closure: Ontology closure provider
        propagate: If True, include evidence from descendant conditions

    Returns:
        ExpressedCall, or None if neither the condition nor any of its
        descendants has presence evidence

    Raises:
        OntologyCycleError: If the closure reports a cycle
    """
    direction = (
        PropagationDirection.INCLUDE_DESCENDANTS
        if propagate
        else PropagationDirection.SELF_ONLY
    )
    self_call, propagated = _collect(
        gene_id, condition, CallType.EXPRESSED, direction, source, closure
    )
    if self_call is None and not propagated:
        return None

    if not propagated:
        origin = ExpressedOrigin.SELF
    elif self_call is None:
        origin = ExpressedOrigin.DESCENDANT
    else:
        origin = ExpressedOrigin.BOTH

    contributing = ([self_call] if self_call is not None else []) + propagated
    return ExpressedCall(
        gene_condition=GeneCondition(gene_id, condition),
        evidence=join_calls(contributing),
        origin=origin,
        propagated=propagate,
    )


def propagate_not_expressed(
    gene_id: str,
    condition: Condition,
    source: BasicCallSource,
    closure: OntologyClosureProvider,
    propagate: bool = True,
) -> Optional[NotExpressedCall]:
    """
    Build the absence call of a gene in a condition.

    Args:
        gene_id: Gene to build the call for
        condition: Condition the call is about
        source: Basic call store
        closure: Ontology closure provider
        propagate: If True, include evidence from ancestor conditions

    Returns:
        NotExpressedCall, or None if neither the condition nor any of its
        ancestors has absence evidence

    Raises:
        OntologyCycleError: If the closure reports a cycle
    """
    direction = (
        PropagationDirection.INCLUDE_ANCESTORS
        if propagate
        else PropagationDirection.SELF_ONLY
    )
    self_call, propagated = _collect(
        gene_id, condition, CallType.NOT_EXPRESSED, direction, source, closure
    )
    if self_call is None and not propagated:
        return None

    if not propagated:
        origin = NotExpressedOrigin.SELF
    elif self_call is None:
        origin = NotExpressedOrigin.PARENT
    else:
        origin = NotExpressedOrigin.BOTH

    contributing = ([self_call] if self_call is not None else []) + propagated
    return NotExpressedCall(
        gene_condition=GeneCondition(gene_id, condition),
        evidence=join_calls(contributing),
        origin=origin,
        propagated=propagate,
    )


def propagate(
    gene_id: str,
    condition: Condition,
    direction: PropagationDirection,
    call_type: CallType,
    source: BasicCallSource,
    closure: OntologyClosureProvider,
) -> Optional[GlobalCall]:
    """
    Build a global call following an explicit propagation direction.

    Raises:
        ValueError: If direction is not legal for call_type (presence only
            propagates from descendants, absence only from ancestors)
    """
    if call_type is CallType.EXPRESSED:
        if direction is PropagationDirection.INCLUDE_ANCESTORS:
            raise ValueError("Presence calls cannot be propagated from ancestors")
        return propagate_expressed(
            gene_id, condition, source, closure,
            propagate=direction is PropagationDirection.INCLUDE_DESCENDANTS,
        )

    if direction is PropagationDirection.INCLUDE_DESCENDANTS:
        raise ValueError("Absence calls cannot be propagated from descendants")
    return propagate_not_expressed(
        gene_id, condition, source, closure,
        propagate=direction is PropagationDirection.INCLUDE_ANCESTORS,
    )


def propagate_gene(
    gene_id: str,
    conditions: Iterable[Condition],
    call_type: CallType,
    source: BasicCallSource,
    closure: OntologyClosureProvider,
    propagate: bool = True,
) -> dict[Condition, GlobalCall]:
    """
    Build the global calls of a gene over a scope of conditions.

    The scope is the requested conditions plus, when propagating, every
    condition that receives evidence from an observed one: ancestors of
    observed conditions for presence, descendants for absence.

    Args:
        gene_id: Gene to build calls for
        conditions: Requested conditions
        call_type: Presence or absence view
        source: Basic call store
        closure: Ontology closure provider
        propagate: If False, only self-observed calls are built

    Returns:
        Global calls keyed by condition; conditions without evidence are absent
    """
    scope = set(conditions)
    observed = source.basic_calls_for(gene_id, scope, call_type)

    if propagate:
        for observed_condition in list(observed):
            if call_type is CallType.EXPRESSED:
                scope |= set(closure.ancestors_of(observed_condition))
            else:
                scope |= set(closure.descendants_of(observed_condition))

    build = (
        propagate_expressed if call_type is CallType.EXPRESSED
        else propagate_not_expressed
    )

    results: dict[Condition, GlobalCall] = {}
    for condition in sorted(scope):
        call = build(gene_id, condition, source, closure, propagate=propagate)
        if call is not None:
            results[condition] = call

    logger.debug(
        "propagate_gene_complete",
        gene_id=gene_id,
        call_type=call_type.value,
        propagate=propagate,
        scope_size=len(scope),
        call_count=len(results),
    )
    return results
