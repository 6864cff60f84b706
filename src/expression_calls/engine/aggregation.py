"""Greedy aggregation of per-entity call filters.

Reduces the number of distinct filters sent to the basic call source while
remembering which entities need which filter. This is a single greedy pass,
not a minimal partition.
"""

from collections import deque
from typing import Hashable, Iterable, Mapping, TypeVar

import structlog

from expression_calls.engine.filters import CallFilter

logger = structlog.get_logger(__name__)

E = TypeVar("E", bound=Hashable)


def aggregate_call_filters(
    entities_with_filters: Mapping[E, Iterable[CallFilter]],
) -> dict[CallFilter, set[E]]:
    """
    Merge the filters of all entities into as few filters as possible.

    Every (filter, entity) pair goes into a work queue. The head pair is taken
    and its filter is merged in turn with every other pair present in the
    queue at the start of the round: with the same-entity operator when the
    other pair's entity is already covered by the accumulating filter, with
    the different-entities operator otherwise. A merged pair is absorbed; a
    pair that does not merge is re-enqueued and compared again only in later
    rounds. The accumulated filter becomes one output entry.

    Args:
        entities_with_filters: Filters requested for each entity

    Returns:
        Mapping from merged filter to the entities it serves. The union of the
        entity sets equals the input keys that have at least one filter, and
        each original filter is subsumed by a filter its entity is mapped to.
    """
    queue: deque[tuple[CallFilter, E]] = deque(
        (call_filter, entity)
        for entity, filters in entities_with_filters.items()
        for call_filter in filters
    )
    input_pairs = len(queue)

    aggregated: dict[CallFilter, set[E]] = {}
    while queue:
        current, entity = queue.popleft()
        entities = {entity}

        # only compare against pairs present when this round started
        round_size = len(queue)
        for _ in range(round_size):
            other, other_entity = queue.popleft()
            if other_entity in entities:
                merged = current.merge_same_entity(other)
            else:
                merged = current.merge_diff_entities(other)

            if merged is None:
                queue.append((other, other_entity))
            else:
                current = merged
                entities.add(other_entity)

        aggregated.setdefault(current, set()).update(entities)

    logger.info(
        "aggregation_complete",
        entity_count=len(entities_with_filters),
        input_pairs=input_pairs,
        output_filters=len(aggregated),
    )
    return aggregated
