"""Tests for the batch runner: per-gene workers, scoring and cancellation."""

import threading

import pytest

from expression_calls.config.loader import load_config_with_overrides
from expression_calls.engine.batch import BatchRunner
from expression_calls.engine.filters import CallFilter
from expression_calls.engine.merge import merge_evidence
from expression_calls.engine.models import (
    CallType,
    Condition,
    DataState,
    DataType,
    DataTypeEvidence,
    ExpressedOrigin,
    ExpressionLevel,
    NotExpressedOrigin,
    SummaryCallType,
)
from expression_calls.sources.graph import ConditionGraph
from expression_calls.sources.memory import InMemoryCallSource

ANAT = [("Anat_id1", "Anat_id2"), ("Anat_id2", "Anat_id5")]
LOW = DataState.LOW_QUALITY
HIGH = DataState.HIGH_QUALITY


def cond(anat):
    return Condition(anat, "Stage_id1", "9606")


def ev(data_type, state, rank=None, count=1):
    return DataTypeEvidence(data_type=data_type, state=state, rank=rank, evidence_count=count)


@pytest.fixture
def graph():
    return ConditionGraph(ANAT)


@pytest.fixture
def source():
    """
    ID1: presence in Anat_id1, absence in Anat_id5 (conflicts everywhere).
    ID2: absence in Anat_id5 only.
    ID3: presence in Anat_id1 only.
    """
    return InMemoryCallSource([
        merge_evidence("ID1", cond("Anat_id1"), CallType.EXPRESSED,
                       [ev(DataType.RNA_SEQ, HIGH, rank=40.0)]),
        merge_evidence("ID1", cond("Anat_id5"), CallType.NOT_EXPRESSED,
                       [ev(DataType.AFFYMETRIX, HIGH)]),
        merge_evidence("ID2", cond("Anat_id5"), CallType.NOT_EXPRESSED,
                       [ev(DataType.RNA_SEQ, HIGH), ev(DataType.IN_SITU, LOW)]),
        merge_evidence("ID3", cond("Anat_id1"), CallType.EXPRESSED,
                       [ev(DataType.RNA_SEQ, HIGH, rank=10.0, count=3),
                        ev(DataType.AFFYMETRIX, LOW, rank=20.0, count=1)]),
    ])


def by_key(results):
    return {(r.call.gene_id, r.call.condition.anat_entity_id): r for r in results}


# ============================================================================
# run
# ============================================================================

def test_run_propagates_and_resolves(source, graph):
    """Test a full batch with propagation, conflicts and batch-normalized scores."""
    runner = BatchRunner(source, graph, max_workers=2)

    results = list(runner.run(["ID1", "ID2", "ID3"], source.conditions()))
    calls = by_key(results)

    assert set(calls) == {
        ("ID1", "Anat_id1"), ("ID1", "Anat_id2"), ("ID1", "Anat_id5"),
        ("ID2", "Anat_id1"), ("ID2", "Anat_id2"), ("ID2", "Anat_id5"),
        ("ID3", "Anat_id1"), ("ID3", "Anat_id2"), ("ID3", "Anat_id5"),
    }

    conflict = calls[("ID1", "Anat_id2")]
    assert conflict.summary.call_type is SummaryCallType.EXPRESSED
    assert conflict.summary.conflict is True
    assert conflict.call.origin is ExpressedOrigin.DESCENDANT

    absent = calls[("ID2", "Anat_id1")]
    assert absent.summary.call_type is SummaryCallType.NOT_EXPRESSED
    assert absent.call.origin is NotExpressedOrigin.PARENT
    assert absent.summary.score is None

    assert calls[("ID3", "Anat_id1")].summary.rank == pytest.approx(12.5)
    assert calls[("ID3", "Anat_id1")].summary.score == pytest.approx(71.25)
    assert calls[("ID1", "Anat_id1")].summary.score == pytest.approx(2.5)


def test_run_expression_levels(source, graph):
    """Test levels relative to the gene and to the anatomical entity."""
    calls = by_key(BatchRunner(source, graph).run(["ID1", "ID2", "ID3"], source.conditions()))

    # Anat_id1 holds ID3 (rank 12.5) and ID1 (rank 40)
    best = calls[("ID3", "Anat_id1")].summary
    worst = calls[("ID1", "Anat_id1")].summary
    assert best.level_relative_to_anat_entity is ExpressionLevel.HIGH
    assert worst.level_relative_to_anat_entity is ExpressionLevel.LOW

    # every call of ID3 shares one rank
    assert best.level_relative_to_gene is ExpressionLevel.HIGH

    absent = calls[("ID2", "Anat_id1")].summary
    assert absent.level_relative_to_gene is ExpressionLevel.ABSENT
    assert absent.level_relative_to_anat_entity is ExpressionLevel.ABSENT


def test_run_output_ordered(source, graph):
    """Test deterministic ordering by gene then condition."""
    results = list(BatchRunner(source, graph, max_workers=4).run(["ID3", "ID1"], source.conditions()))
    keys = [r.gene_condition for r in results]

    assert keys == sorted(keys)


def test_run_self_only(source, graph):
    """Test that a self-only batch reports observed conditions only."""
    runner = BatchRunner(source, graph, propagate=False)

    calls = by_key(runner.run(["ID1", "ID2"], source.conditions()))

    assert set(calls) == {("ID1", "Anat_id1"), ("ID1", "Anat_id5"), ("ID2", "Anat_id5")}
    assert calls[("ID1", "Anat_id5")].summary.call_type is SummaryCallType.NOT_EXPRESSED
    assert all(not r.call.propagated for r in calls.values())


def test_run_without_absence(source, graph):
    """Test that presence-only batches never report absence."""
    runner = BatchRunner(source, graph, include_not_expressed=False)

    results = list(runner.run(["ID1", "ID2"], source.conditions()))

    assert results
    assert all(r.summary.call_type is SummaryCallType.EXPRESSED for r in results)
    assert all(not r.summary.conflict for r in results)


def test_run_same_result_regardless_of_workers(source, graph):
    """Test that the worker count does not change the results."""
    single = list(BatchRunner(source, graph, max_workers=1).run(["ID1", "ID2", "ID3"], source.conditions()))
    many = list(BatchRunner(source, graph, max_workers=8).run(["ID1", "ID2", "ID3"], source.conditions()))

    assert single == many


# ============================================================================
# Cancellation
# ============================================================================

def test_cancel_before_run(source, graph):
    """Test that a cancelled runner computes nothing."""
    runner = BatchRunner(source, graph)
    runner.cancel()

    assert list(runner.run(["ID1", "ID3"], source.conditions())) == []
    assert sorted(runner.skipped_genes) == ["ID1", "ID3"]


class CancellingSource:
    """Wraps a source and cancels the batch on first access."""

    def __init__(self, inner, event):
        self.inner = inner
        self.event = event

    def basic_calls_for(self, gene_id, conditions, call_type):
        self.event.set()
        return self.inner.basic_calls_for(gene_id, conditions, call_type)


def test_cancel_during_run_finishes_started_gene(source, graph):
    """Test that the running gene completes and later genes are skipped."""
    event = threading.Event()
    runner = BatchRunner(CancellingSource(source, event), graph, max_workers=1, cancel_event=event)

    results = list(runner.run(["ID1", "ID2", "ID3"], source.conditions()))

    assert {r.call.gene_id for r in results} == {"ID1"}
    assert len(results) == 3
    assert runner.cancelled
    assert sorted(runner.skipped_genes) == ["ID2", "ID3"]


def test_skipped_genes_reset_between_runs(source, graph):
    """Test that a reused runner only reports genes skipped in its last run."""
    runner = BatchRunner(source, graph)
    runner.cancel()
    list(runner.run(["ID1", "ID3"], source.conditions()))

    runner.cancel_event.clear()
    results = list(runner.run(["ID2"], source.conditions()))

    assert results
    assert runner.skipped_genes == []


# ============================================================================
# run_filters
# ============================================================================

def test_run_filters_returns_requested_accepted_calls(source, graph):
    """Test that only requested conditions and accepted calls come back."""
    requests = {
        cond("Anat_id2"): [CallFilter.of(["ID3"], requirements={DataType.RNA_SEQ: HIGH})],
        cond("Anat_id5"): [CallFilter.of(["ID3"], requirements={DataType.RNA_SEQ: HIGH})],
    }

    results = list(BatchRunner(source, graph).run_filters(requests))

    assert [(r.call.gene_id, r.call.condition.anat_entity_id) for r in results] == [
        ("ID3", "Anat_id2"), ("ID3", "Anat_id5"),
    ]
    assert all(r.call.origin is ExpressedOrigin.DESCENDANT for r in results)


def test_run_filters_rejects_unmet_requirements(source, graph):
    """Test that calls below the requested states are dropped."""
    requests = {cond("Anat_id2"): [CallFilter.of(["ID3"], requirements={DataType.AFFYMETRIX: HIGH})]}

    assert list(BatchRunner(source, graph).run_filters(requests)) == []


def test_run_filters_absence_request(source, graph):
    """Test that absence filters get absence calls even in presence-only runners."""
    requests = {cond("Anat_id1"): [CallFilter.of(["ID2"], call_type=CallType.NOT_EXPRESSED)]}

    results = list(BatchRunner(source, graph, include_not_expressed=False).run_filters(requests))

    assert len(results) == 1
    assert results[0].summary.call_type is SummaryCallType.NOT_EXPRESSED
    assert results[0].call.origin is NotExpressedOrigin.PARENT


def test_run_filters_self_only_request_gets_no_propagated_call(source, graph):
    """Test that a self-only filter never accepts a call built with propagation."""
    requests = {cond("Anat_id2"): [
        CallFilter.of(["ID3"], propagate=False),
        CallFilter.of(["ID3"], requirements={DataType.IN_SITU: HIGH}, propagate=True),
    ]}

    assert list(BatchRunner(source, graph).run_filters(requests)) == []


def test_run_filters_self_only_request_gets_observed_call(source, graph):
    """Test that a self-only filter receives the call observed in its condition."""
    requests = {cond("Anat_id1"): [CallFilter.of(["ID3"], propagate=False)]}

    results = list(BatchRunner(source, graph).run_filters(requests))

    assert len(results) == 1
    assert results[0].call.origin is ExpressedOrigin.SELF
    assert results[0].call.propagated is False


def test_run_filters_mixed_propagation_is_deterministic(source, graph):
    """Test that the propagated call wins when both modes are requested."""
    requests = {
        cond("Anat_id1"): [
            CallFilter.of(["ID1"], propagate=False),
            CallFilter.of(["ID1"], propagate=True),
        ],
        cond("Anat_id5"): [CallFilter.of(["ID1"], call_type=CallType.NOT_EXPRESSED, propagate=False)],
    }

    for workers in (1, 2, 8):
        results = by_key(BatchRunner(source, graph, max_workers=workers).run_filters(requests))

        assert results[("ID1", "Anat_id1")].call.propagated is True
        assert results[("ID1", "Anat_id5")].call.propagated is False


# ============================================================================
# Config
# ============================================================================

def test_from_config(source, graph, tmp_path):
    """Test that the runner picks up batch, quality and propagation settings."""
    config = load_config_with_overrides("config/default.yaml", {
        "data_dir": str(tmp_path / "data"),
        "batch.max_workers": 3,
        "propagation.propagate": False,
        "quality.gold_min_types": 4,
    })

    runner = BatchRunner.from_config(config, source, graph)

    assert runner.max_workers == 3
    assert runner.propagate is False
    assert runner.thresholds.gold_min_types == 4
