"""Persistence layer for evidence tables, computed calls and provenance tracking."""

from expression_calls.persistence.duckdb_store import CallStore
from expression_calls.persistence.provenance import ProvenanceTracker

__all__ = ["CallStore", "ProvenanceTracker"]
