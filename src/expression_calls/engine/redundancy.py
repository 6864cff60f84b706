"""Detection of redundant presence calls.

A presence call is redundant when the same gene is expressed in a strictly more
precise condition (a descendant, same species) at a better or equal rank: the
more precise call already tells everything the less precise one does.
"""

from collections import defaultdict
from typing import Iterable

import structlog

from expression_calls.engine.models import GeneCondition, ResolvedCall, SummaryCallType
from expression_calls.engine.propagation import OntologyClosureProvider

logger = structlog.get_logger(__name__)


def filter_and_order_by_rank(calls: Iterable[ResolvedCall]) -> list[ResolvedCall]:
    """
    Keep presence calls and order them by gene, rank, then condition.

    Raises:
        ValueError: If a presence call has no rank
    """
    expressed = []
    for resolved in calls:
        if resolved.summary.call_type is not SummaryCallType.EXPRESSED:
            continue
        if resolved.summary.rank is None:
            raise ValueError(f"Missing rank for call: {resolved.gene_condition}")
        expressed.append(resolved)

    return sorted(
        expressed,
        key=lambda r: (r.call.gene_id, r.summary.rank, r.call.condition),
    )


def identify_redundant_calls(
    calls: Iterable[ResolvedCall],
    closure: OntologyClosureProvider,
) -> set[GeneCondition]:
    """
    Identify presence calls made redundant by a more precise call.

    Args:
        calls: Resolved calls, possibly for several genes. Absence calls are
            ignored.
        closure: Ontology closure used to decide which condition is more precise

    Returns:
        GeneConditions of the redundant calls

    Raises:
        ValueError: If a presence call has no rank
    """
    by_gene: dict[str, list[ResolvedCall]] = defaultdict(list)
    for resolved in filter_and_order_by_rank(calls):
        by_gene[resolved.call.gene_id].append(resolved)

    redundant: set[GeneCondition] = set()
    for gene_calls in by_gene.values():
        for resolved in gene_calls:
            condition = resolved.call.condition
            descendants = closure.descendants_of(condition)
            for better in gene_calls:
                # sorted by rank: nothing after this point can be better
                if better.summary.rank > resolved.summary.rank:
                    break
                if better is resolved:
                    continue
                other = better.call.condition
                if other.species_id == condition.species_id and other in descendants:
                    redundant.add(resolved.gene_condition)
                    break

    logger.info(
        "identify_redundant_calls_complete",
        gene_count=len(by_gene),
        redundant_count=len(redundant),
    )
    return redundant
