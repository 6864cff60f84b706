"""Query-time call filters and their merge operations.

Two filters only merge when they request the same call type with the same
propagation rule. Calls built with propagation carry the best states over all
related conditions, so the states requested by a self-only filter could no
longer be checked against them.
"""

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from expression_calls.engine.models import CallType, DataState, DataType, GlobalCall


@dataclass(frozen=True)
class CallFilter:
    """Genes and minimum per-data-type states requested for some entity.

    Attributes:
        gene_ids: Genes whose calls are requested
        call_type: Presence or absence calls
        requirements: Pairs of (data type, minimum state). A data type without
            a requirement accepts any state.
        propagate: Whether calls are built with ontology propagation
    """

    gene_ids: frozenset[str]
    call_type: CallType = CallType.EXPRESSED
    requirements: frozenset[tuple[DataType, DataState]] = field(default_factory=frozenset)
    propagate: bool = True

    def __post_init__(self):
        data_types = [data_type for data_type, _ in self.requirements]
        if len(data_types) != len(set(data_types)):
            raise ValueError(f"Several requirements for the same data type: {sorted(data_types)}")
        if any(state is DataState.NO_DATA for _, state in self.requirements):
            raise ValueError("NO_DATA is not a requirement; omit the data type instead")

    @classmethod
    def of(
        cls,
        gene_ids: Iterable[str],
        call_type: CallType = CallType.EXPRESSED,
        requirements: Optional[Mapping[DataType, DataState]] = None,
        propagate: bool = True,
    ) -> "CallFilter":
        """Build a filter from plain collections, dropping NO_DATA requirements."""
        reqs = frozenset(
            (data_type, DataState.parse(state))
            for data_type, state in (requirements or {}).items()
            if DataState.parse(state) > DataState.NO_DATA
        )
        return cls(
            gene_ids=frozenset(gene_ids),
            call_type=call_type,
            requirements=reqs,
            propagate=propagate,
        )

    @property
    def requirement_map(self) -> dict[DataType, DataState]:
        return dict(self.requirements)

    def _can_merge(self, other: "CallFilter") -> bool:
        if not isinstance(other, CallFilter):
            return False
        return self.call_type is other.call_type and self.propagate == other.propagate

    def merge_same_entity(self, other: "CallFilter") -> Optional["CallFilter"]:
        """
        Merge two filters requested for the same entity.

        Filters with equal requirements are merged by taking the union of
        their genes. Filters on the same genes are merged by keeping, per data
        type, the looser requirement; a data type required by only one of them
        is no longer required.

        Returns:
            Merged filter, or None if the filters cannot be merged
        """
        if not self._can_merge(other):
            return None

        if self.requirements == other.requirements:
            return CallFilter(
                gene_ids=self.gene_ids | other.gene_ids,
                call_type=self.call_type,
                requirements=self.requirements,
                propagate=self.propagate,
            )

        if self.gene_ids == other.gene_ids:
            mine = self.requirement_map
            theirs = other.requirement_map
            loosest = frozenset(
                (data_type, min(mine[data_type], theirs[data_type]))
                for data_type in mine.keys() & theirs.keys()
            )
            return CallFilter(
                gene_ids=self.gene_ids,
                call_type=self.call_type,
                requirements=loosest,
                propagate=self.propagate,
            )

        return None

    def merge_diff_entities(self, other: "CallFilter") -> Optional["CallFilter"]:
        """
        Merge two filters requested for different entities.

        Only filters with identical requirements are merged, so that each
        entity keeps the exact states it asked for; genes are unioned.

        Returns:
            Merged filter, or None if the filters cannot be merged
        """
        if not self._can_merge(other) or self.requirements != other.requirements:
            return None
        return CallFilter(
            gene_ids=self.gene_ids | other.gene_ids,
            call_type=self.call_type,
            requirements=self.requirements,
            propagate=self.propagate,
        )

    def subsumes(self, other: "CallFilter") -> bool:
        """True if every call accepted by other is also accepted by this filter."""
        if not self._can_merge(other):
            return False
        if not self.gene_ids >= other.gene_ids:
            return False
        theirs = other.requirement_map
        for data_type, state in self.requirements:
            if data_type not in theirs or theirs[data_type] < state:
                return False
        return True

    def accepts(self, call: GlobalCall) -> bool:
        """Check a global call against this filter."""
        if call.gene_id not in self.gene_ids or call.call_type is not self.call_type:
            return False
        return all(call.state(data_type) >= state for data_type, state in self.requirements)
