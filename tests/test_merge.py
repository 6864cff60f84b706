"""Tests for evidence merging into basic calls."""

from itertools import permutations

import pytest
from pydantic import ValidationError

from expression_calls.engine.merge import (
    combine_evidence,
    join_calls,
    merge_evidence,
    weighted_mean_rank,
)
from expression_calls.engine.models import (
    BasicCall,
    CallType,
    Condition,
    DataState,
    DataType,
    DataTypeEvidence,
)
from expression_calls.errors import InvalidEvidenceError, UnknownDataTypeError

COND = Condition("Anat_id1", "Stage_id1", "9606")


def ev(data_type, state, rank=None, count=1):
    return DataTypeEvidence(data_type=data_type, state=state, rank=rank, evidence_count=count)


def basic(gene_id, condition, *records, call_type=CallType.EXPRESSED):
    return merge_evidence(gene_id, condition, call_type, records)


# ============================================================================
# Evidence model
# ============================================================================

def test_evidence_parses_names():
    """Test that data types and states are parsed from plain strings."""
    item = DataTypeEvidence(data_type="RNA_SEQ", state="high_quality", rank=3.0)

    assert item.data_type is DataType.RNA_SEQ
    assert item.state is DataState.HIGH_QUALITY


def test_evidence_unknown_data_type():
    """Test that an unknown data type is rejected."""
    with pytest.raises(UnknownDataTypeError):
        DataTypeEvidence(data_type="microarray_v2", state="low_quality")


def test_evidence_rejects_negative_count_and_rank():
    """Test that counts must be >= 0 and ranks > 0."""
    with pytest.raises(ValidationError):
        ev(DataType.AFFYMETRIX, DataState.LOW_QUALITY, count=-1)
    with pytest.raises(ValidationError):
        ev(DataType.AFFYMETRIX, DataState.LOW_QUALITY, rank=0)


def test_data_state_ordering():
    """Test that states are totally ordered NO_DATA < LOW < HIGH."""
    assert DataState.NO_DATA < DataState.LOW_QUALITY < DataState.HIGH_QUALITY
    assert max(DataState.LOW_QUALITY, DataState.HIGH_QUALITY) is DataState.HIGH_QUALITY


# ============================================================================
# Rank and per-type combination
# ============================================================================

def test_weighted_mean_rank():
    """Test evidence-count-weighted mean of ranks."""
    items = [
        ev(DataType.RNA_SEQ, DataState.HIGH_QUALITY, rank=10.0, count=3),
        ev(DataType.RNA_SEQ, DataState.LOW_QUALITY, rank=20.0, count=1),
    ]

    assert weighted_mean_rank(items) == pytest.approx(12.5)


def test_weighted_mean_rank_ignores_unranked():
    """Test that items without rank do not contribute."""
    items = [
        ev(DataType.EST, DataState.LOW_QUALITY, rank=None, count=5),
        ev(DataType.RNA_SEQ, DataState.HIGH_QUALITY, rank=4.0, count=2),
    ]

    assert weighted_mean_rank(items) == pytest.approx(4.0)
    assert weighted_mean_rank([ev(DataType.EST, DataState.LOW_QUALITY)]) is None


def test_weighted_mean_rank_zero_weights():
    """Test plain mean when every ranked item has a zero evidence count."""
    items = [
        ev(DataType.RNA_SEQ, DataState.HIGH_QUALITY, rank=2.0, count=0),
        ev(DataType.RNA_SEQ, DataState.HIGH_QUALITY, rank=4.0, count=0),
    ]

    assert weighted_mean_rank(items) == pytest.approx(3.0)


def test_combine_evidence_max_state_and_sum():
    """Test that combining keeps max state and sums counts."""
    combined = combine_evidence([
        ev(DataType.AFFYMETRIX, DataState.LOW_QUALITY, rank=8.0, count=1),
        ev(DataType.AFFYMETRIX, DataState.HIGH_QUALITY, rank=2.0, count=1),
    ])

    assert combined.state is DataState.HIGH_QUALITY
    assert combined.evidence_count == 2
    assert combined.rank == pytest.approx(5.0)


def test_combine_evidence_rejects_mixed_types():
    """Test that evidence of different data types cannot be combined."""
    with pytest.raises(InvalidEvidenceError):
        combine_evidence([
            ev(DataType.AFFYMETRIX, DataState.LOW_QUALITY),
            ev(DataType.RNA_SEQ, DataState.LOW_QUALITY),
        ])
    with pytest.raises(InvalidEvidenceError):
        combine_evidence([])


# ============================================================================
# merge_evidence
# ============================================================================

def test_merge_drops_no_data_types():
    """Test that NO_DATA types do not appear in the merged call."""
    call = basic(
        "ID3", COND,
        ev(DataType.AFFYMETRIX, DataState.LOW_QUALITY, rank=5.0),
        ev(DataType.EST, DataState.NO_DATA),
        ev(DataType.IN_SITU, DataState.HIGH_QUALITY),
        ev(DataType.RNA_SEQ, DataState.HIGH_QUALITY, rank=3.0),
    )

    assert isinstance(call, BasicCall)
    assert call.call_type is CallType.EXPRESSED
    assert set(call.evidence) == {DataType.AFFYMETRIX, DataType.IN_SITU, DataType.RNA_SEQ}
    assert call.state(DataType.EST) is DataState.NO_DATA
    assert call.data_states[DataType.IN_SITU] is DataState.HIGH_QUALITY


def test_merge_all_no_data_is_no_call():
    """Test that evidence without anything above NO_DATA yields None."""
    call = basic(
        "ID1", COND,
        ev(DataType.AFFYMETRIX, DataState.NO_DATA),
        ev(DataType.RNA_SEQ, DataState.NO_DATA),
    )

    assert call is None
    assert basic("ID1", COND) is None


def test_merge_same_type_records_combined():
    """Test that several records of one data type are combined."""
    call = basic(
        "ID1", COND,
        ev(DataType.RNA_SEQ, DataState.LOW_QUALITY, rank=30.0, count=1),
        ev(DataType.RNA_SEQ, DataState.HIGH_QUALITY, rank=10.0, count=1),
    )

    item = call.evidence[DataType.RNA_SEQ]
    assert item.state is DataState.HIGH_QUALITY
    assert item.rank == pytest.approx(20.0)
    assert item.evidence_count == 2


def test_merge_est_absence_rejected():
    """Test that EST evidence cannot support absence of expression."""
    with pytest.raises(UnknownDataTypeError, match="not_expressed"):
        basic(
            "ID2", COND,
            ev(DataType.EST, DataState.HIGH_QUALITY),
            call_type=CallType.NOT_EXPRESSED,
        )


def test_merge_est_no_data_absence_allowed():
    """Test that EST at NO_DATA is not an error for absence calls."""
    call = basic(
        "ID2", COND,
        ev(DataType.EST, DataState.NO_DATA),
        ev(DataType.AFFYMETRIX, DataState.LOW_QUALITY),
        call_type=CallType.NOT_EXPRESSED,
    )

    assert call.call_type is CallType.NOT_EXPRESSED
    assert set(call.evidence) == {DataType.AFFYMETRIX}


# ============================================================================
# join_calls: semilattice laws
# ============================================================================

@pytest.fixture
def three_calls():
    other = Condition("Anat_id2", "Stage_id1", "9606")
    third = Condition("Anat_id5", "Stage_id1", "9606")
    return [
        basic("ID1", COND,
              ev(DataType.AFFYMETRIX, DataState.LOW_QUALITY, rank=10.0, count=2),
              ev(DataType.RNA_SEQ, DataState.HIGH_QUALITY, rank=4.0, count=1)),
        basic("ID1", other,
              ev(DataType.AFFYMETRIX, DataState.HIGH_QUALITY, rank=6.0, count=2)),
        basic("ID1", third,
              ev(DataType.RNA_SEQ, DataState.LOW_QUALITY, rank=16.0, count=3),
              ev(DataType.IN_SITU, DataState.LOW_QUALITY)),
    ]


def test_join_commutative(three_calls):
    """Test that the join does not depend on the order of calls."""
    results = [join_calls(list(order)) for order in permutations(three_calls)]

    for result in results[1:]:
        assert result == results[0]


def test_join_associative(three_calls):
    """Test that joining a partial join gives the same result."""
    a, b, c = three_calls
    partial = BasicCall(
        gene_condition=a.gene_condition,
        call_type=CallType.EXPRESSED,
        evidence=join_calls([a, b]),
    )

    left = join_calls([partial, c])
    flat = join_calls([a, b, c])

    assert {dt: item.state for dt, item in left.items()} == {dt: item.state for dt, item in flat.items()}
    for data_type in flat:
        assert left[data_type].evidence_count == flat[data_type].evidence_count
        assert left[data_type].rank == pytest.approx(flat[data_type].rank)


def test_join_idempotent_on_states(three_calls):
    """Test that joining a call with itself keeps its states."""
    call = three_calls[0]
    joined = join_calls([call, call])

    assert {dt: item.state for dt, item in joined.items()} == {
        dt: item.state for dt, item in call.evidence.items()
    }
    assert joined[DataType.AFFYMETRIX].rank == pytest.approx(10.0)


def test_join_takes_max_state(three_calls):
    """Test that the join keeps the best state per data type."""
    joined = join_calls(three_calls)

    assert joined[DataType.AFFYMETRIX].state is DataState.HIGH_QUALITY
    assert joined[DataType.RNA_SEQ].state is DataState.HIGH_QUALITY
    assert joined[DataType.IN_SITU].state is DataState.LOW_QUALITY
    assert DataType.EST not in joined
    assert joined[DataType.AFFYMETRIX].rank == pytest.approx(8.0)
    assert joined[DataType.RNA_SEQ].rank == pytest.approx(13.0)
