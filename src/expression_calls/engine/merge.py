"""Merging of per-data-type evidence into basic calls.

States are joined by taking the maximum, ranks by an evidence-count-weighted
mean, and evidence counts are summed. The same rule joins basic calls of
different conditions during propagation.
"""

from collections import defaultdict
from typing import Iterable, Optional

import structlog

from expression_calls.engine.models import (
    ALLOWED_DATA_TYPES,
    BasicCall,
    CallType,
    Condition,
    DataState,
    DataType,
    DataTypeEvidence,
    GeneCondition,
    GlobalCall,
)
from expression_calls.errors import InvalidEvidenceError, UnknownDataTypeError

logger = structlog.get_logger(__name__)


def weighted_mean_rank(items: Iterable[DataTypeEvidence]) -> Optional[float]:
    """Evidence-count-weighted mean of the ranks carried by items.

    Items without a rank are ignored. If every ranked item has a zero
    evidence count, the plain mean of the ranks is returned.

    Returns:
        Mean rank, or None if no item carries a rank
    """
    ranked = [item for item in items if item.rank is not None]
    if not ranked:
        return None

    total_weight = sum(item.evidence_count for item in ranked)
    if total_weight == 0:
        return sum(item.rank for item in ranked) / len(ranked)

    return sum(item.rank * item.evidence_count for item in ranked) / total_weight


def combine_evidence(items: Iterable[DataTypeEvidence]) -> DataTypeEvidence:
    """
    Combine several evidence items of the same data type into one.

    Args:
        items: Non-empty collection of DataTypeEvidence sharing a data type

    Returns:
        DataTypeEvidence with max state, weighted mean rank and summed count

    Raises:
        InvalidEvidenceError: If items is empty or mixes data types
    """
    items = list(items)
    if not items:
        raise InvalidEvidenceError("Cannot combine an empty evidence collection")

    data_types = {item.data_type for item in items}
    if len(data_types) > 1:
        raise InvalidEvidenceError(
            f"Cannot combine evidence of different data types: "
            f"{sorted(dt.value for dt in data_types)}"
        )

    if len(items) == 1:
        return items[0]

    return DataTypeEvidence(
        data_type=items[0].data_type,
        state=max(item.state for item in items),
        rank=weighted_mean_rank(items),
        evidence_count=sum(item.evidence_count for item in items),
    )


def check_allowed_data_types(
    call_type: CallType,
    records: Iterable[DataTypeEvidence],
) -> None:
    """
    Check that every informative record may produce calls of call_type.

    Raises:
        UnknownDataTypeError: If a data type above NO_DATA cannot produce
            calls of this type (e.g. EST evidence for absence of expression)
    """
    allowed = ALLOWED_DATA_TYPES[call_type]
    rejected = sorted(
        {
            record.data_type.value
            for record in records
            if record.state > DataState.NO_DATA and record.data_type not in allowed
        }
    )
    if rejected:
        raise UnknownDataTypeError(
            f"Data types {rejected} do not allow to generate {call_type.value} calls"
        )


def merge_evidence(
    gene_id: str,
    condition: Condition,
    call_type: CallType,
    records: Iterable[DataTypeEvidence],
) -> Optional[BasicCall]:
    """
    Merge evidence records observed for one gene in one condition.

    Several records for the same data type (e.g. several assays of one
    technology) are combined per data type: maximum state, weighted mean
    rank, summed evidence counts. Data types left at NO_DATA are dropped.

    Args:
        gene_id: Gene the records were observed for
        condition: Condition the records were observed in
        call_type: Whether the records support presence or absence
        records: Evidence records, in any order

    Returns:
        BasicCall, or None if no record is above NO_DATA ("no call")

    Raises:
        UnknownDataTypeError: If a data type cannot produce calls of call_type
    """
    records = list(records)
    check_allowed_data_types(call_type, records)

    by_data_type: dict[DataType, list[DataTypeEvidence]] = defaultdict(list)
    for record in records:
        by_data_type[record.data_type].append(record)

    evidence = {
        data_type: combine_evidence(items)
        for data_type, items in by_data_type.items()
    }
    evidence = {
        data_type: item
        for data_type, item in evidence.items()
        if item.state > DataState.NO_DATA
    }

    if not evidence:
        logger.debug(
            "merge_evidence_no_call",
            gene_id=gene_id,
            condition=str(condition),
            record_count=len(records),
        )
        return None

    return BasicCall(
        gene_condition=GeneCondition(gene_id, condition),
        call_type=call_type,
        evidence=evidence,
    )


def join_calls(
    calls: Iterable["BasicCall | GlobalCall"],
) -> dict[DataType, DataTypeEvidence]:
    """
    Join the evidence of several calls with the per-data-type merge rule.

    The join is commutative and associative; joining a call with itself
    keeps its states unchanged.

    Args:
        calls: Calls for the same gene and call type, possibly observed in
            different conditions

    Returns:
        Merged evidence keyed by data type
    """
    by_data_type: dict[DataType, list[DataTypeEvidence]] = defaultdict(list)
    for call in calls:
        for data_type, item in call.evidence.items():
            by_data_type[data_type].append(item)

    return {
        data_type: combine_evidence(items)
        for data_type, items in sorted(by_data_type.items(), key=lambda kv: kv[0].value)
    }
