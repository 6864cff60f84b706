"""Basic call source held in memory."""

from collections import defaultdict
from typing import Iterable, Mapping

import structlog

from expression_calls.engine.merge import merge_evidence
from expression_calls.engine.models import (
    BasicCall,
    CallType,
    Condition,
    DataTypeEvidence,
    GeneCondition,
)
from expression_calls.errors import InvalidEvidenceError

logger = structlog.get_logger(__name__)

EvidenceRow = tuple[str, Condition, CallType, DataTypeEvidence]


class InMemoryCallSource:
    """Basic calls indexed by gene, call type and condition."""

    def __init__(self, calls: Iterable[BasicCall] = ()):
        """
        Args:
            calls: Basic calls; at most one per (gene, condition, call type)

        Raises:
            InvalidEvidenceError: If two calls share gene, condition and call type
        """
        self._calls: dict[tuple[str, CallType], dict[Condition, BasicCall]] = defaultdict(dict)
        for call in calls:
            by_condition = self._calls[(call.gene_id, call.call_type)]
            if call.condition in by_condition:
                raise InvalidEvidenceError(
                    f"Duplicate {call.call_type.value} basic call for "
                    f"{call.gene_id} in {call.condition}"
                )
            by_condition[call.condition] = call

    @classmethod
    def from_evidence(cls, rows: Iterable[EvidenceRow]) -> "InMemoryCallSource":
        """
        Build a source from per-data-type evidence rows.

        Rows observed for the same gene, condition and call type are merged
        into one basic call; groups with nothing above NO_DATA produce no call.

        Args:
            rows: (gene_id, condition, call_type, evidence) tuples
        """
        grouped: dict[tuple[GeneCondition, CallType], list[DataTypeEvidence]] = defaultdict(list)
        for gene_id, condition, call_type, evidence in rows:
            grouped[(GeneCondition(gene_id, condition), CallType(call_type))].append(evidence)

        calls = []
        for (gene_condition, call_type), records in sorted(
            grouped.items(), key=lambda kv: (kv[0][0], kv[0][1].value)
        ):
            call = merge_evidence(
                gene_condition.gene_id, gene_condition.condition, call_type, records
            )
            if call is not None:
                calls.append(call)

        logger.debug("memory_source_built", row_groups=len(grouped), call_count=len(calls))
        return cls(calls)

    def gene_ids(self) -> list[str]:
        return sorted({gene_id for gene_id, _ in self._calls})

    def conditions(self) -> set[Condition]:
        return {
            condition
            for by_condition in self._calls.values()
            for condition in by_condition
        }

    def basic_calls_for(
        self,
        gene_id: str,
        conditions: Iterable[Condition],
        call_type: CallType,
    ) -> Mapping[Condition, BasicCall]:
        by_condition = self._calls.get((gene_id, call_type), {})
        return {
            condition: by_condition[condition]
            for condition in conditions
            if condition in by_condition
        }
