"""Closure providers and basic call sources."""

from expression_calls.sources.duckdb_source import (
    ANAT_RELATIONS_TABLE,
    EVIDENCE_TABLE,
    STAGE_RELATIONS_TABLE,
    DuckDBCallSource,
    load_condition_graph,
    save_evidence,
    save_relations,
)
from expression_calls.sources.graph import ConditionGraph
from expression_calls.sources.memory import InMemoryCallSource

__all__ = [
    "ConditionGraph",
    "InMemoryCallSource",
    "DuckDBCallSource",
    "load_condition_graph",
    "save_evidence",
    "save_relations",
    "EVIDENCE_TABLE",
    "ANAT_RELATIONS_TABLE",
    "STAGE_RELATIONS_TABLE",
]
