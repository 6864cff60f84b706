"""Basic calls and condition relations read from the DuckDB store."""

import threading
from collections import defaultdict
from typing import Iterable, Mapping, Optional

import polars as pl
import structlog

from expression_calls.engine.merge import merge_evidence
from expression_calls.engine.models import (
    BasicCall,
    CallType,
    Condition,
    DataState,
    DataTypeEvidence,
    parse_data_type,
)
from expression_calls.errors import InvalidEvidenceError
from expression_calls.persistence import CallStore, ProvenanceTracker
from expression_calls.sources.graph import ConditionGraph

logger = structlog.get_logger(__name__)

EVIDENCE_TABLE = "basic_call_evidence"
ANAT_RELATIONS_TABLE = "anat_entity_relations"
STAGE_RELATIONS_TABLE = "dev_stage_relations"

EVIDENCE_SCHEMA = {
    "gene_id": pl.Utf8,
    "anat_entity_id": pl.Utf8,
    "dev_stage_id": pl.Utf8,
    "species_id": pl.Utf8,
    "call_type": pl.Utf8,
    "data_type": pl.Utf8,
    "state": pl.Utf8,
    "rank": pl.Float64,
    "evidence_count": pl.Int64,
}
RELATION_SCHEMA = {
    "child_id": pl.Utf8,
    "parent_id": pl.Utf8,
}


def _check_columns(df: pl.DataFrame, schema: dict, what: str) -> pl.DataFrame:
    missing = [col for col in schema if col not in df.columns]
    if missing:
        raise InvalidEvidenceError(f"{what} is missing columns: {missing}")
    return df.select([pl.col(col).cast(dtype) for col, dtype in schema.items()])


def _call_type_from_row(row: dict) -> CallType:
    try:
        return CallType(row["call_type"])
    except ValueError:
        raise InvalidEvidenceError(
            f"Unknown call type {row['call_type']!r} for gene {row['gene_id']}"
        ) from None


def _evidence_from_row(row: dict) -> DataTypeEvidence:
    try:
        return DataTypeEvidence(
            data_type=parse_data_type(row["data_type"]),
            state=DataState.parse(row["state"]),
            rank=row["rank"],
            evidence_count=row["evidence_count"] or 0,
        )
    except ValueError as e:
        raise InvalidEvidenceError(
            f"Invalid evidence for {row['gene_id']} in "
            f"{row['anat_entity_id']}/{row['dev_stage_id']}/{row['species_id']}: {e}"
        ) from e


def save_evidence(
    df: pl.DataFrame,
    store: CallStore,
    provenance: Optional[ProvenanceTracker] = None,
    replace: bool = True,
) -> int:
    """
    Save per-data-type evidence rows to the basic_call_evidence table.

    Rows are parsed before saving so that unknown data types, unknown states
    and EST absence evidence are rejected at import time.

    Returns:
        Number of rows saved

    Raises:
        InvalidEvidenceError: If columns are missing or a row is malformed
        UnknownDataTypeError: If a row names an unknown or disallowed data type
    """
    df = _check_columns(df, EVIDENCE_SCHEMA, EVIDENCE_TABLE)
    logger.info("evidence_load_start", row_count=df.height)

    grouped: dict[tuple, list[DataTypeEvidence]] = defaultdict(list)
    for row in df.iter_rows(named=True):
        key = (
            row["gene_id"],
            Condition(row["anat_entity_id"], row["dev_stage_id"], row["species_id"]),
            _call_type_from_row(row),
        )
        grouped[key].append(_evidence_from_row(row))
    for (gene_id, condition, call_type), records in grouped.items():
        merge_evidence(gene_id, condition, call_type, records)

    store.save_dataframe(
        df,
        EVIDENCE_TABLE,
        description="Per-data-type basic call evidence",
        replace=replace,
    )
    gene_count = df.select(pl.col("gene_id").n_unique()).item()
    if provenance is not None:
        provenance.record_step("load_basic_call_evidence", {
            "row_count": df.height,
            "gene_count": gene_count,
            "call_groups": len(grouped),
        })
    logger.info("evidence_load_complete", row_count=df.height, gene_count=gene_count)
    return df.height


def save_relations(
    df: pl.DataFrame,
    table_name: str,
    store: CallStore,
    provenance: Optional[ProvenanceTracker] = None,
) -> int:
    """
    Save (child_id, parent_id) ontology relations, replacing the table.

    Raises:
        InvalidEvidenceError: If columns are missing
        OntologyCycleError: If the relations contain a cycle
    """
    if table_name not in (ANAT_RELATIONS_TABLE, STAGE_RELATIONS_TABLE):
        raise ValueError(f"Unknown relation table: {table_name}")
    df = _check_columns(df, RELATION_SCHEMA, table_name)
    ConditionGraph(df.iter_rows())

    store.save_dataframe(df, table_name, description="Ontology relations (child -> parent)")
    if provenance is not None:
        provenance.record_step(f"load_{table_name}", {"row_count": df.height})
    return df.height


def load_condition_graph(store: CallStore, restrict_to_known: bool = False) -> ConditionGraph:
    """
    Build the condition closure from the relation tables of the store.

    Args:
        store: CallStore holding the relation tables
        restrict_to_known: Restrict closures to conditions present in the
            evidence table. Calls are then only propagated to conditions
            that were observed for some gene.

    Raises:
        OntologyCycleError: If the stored relations contain a cycle
    """
    anat_df = store.load_dataframe(ANAT_RELATIONS_TABLE)
    stage_df = store.load_dataframe(STAGE_RELATIONS_TABLE)
    anat_relations = list(anat_df.select("child_id", "parent_id").iter_rows()) if anat_df is not None else []
    stage_relations = list(stage_df.select("child_id", "parent_id").iter_rows()) if stage_df is not None else []

    conditions = None
    if restrict_to_known:
        conditions = DuckDBCallSource(store).conditions()

    return ConditionGraph(anat_relations, stage_relations, conditions=conditions)


class DuckDBCallSource:
    """
    Basic call source backed by the basic_call_evidence table.

    Evidence rows of a gene are read and merged once, then cached until
    clear_cache() is called. The DuckDB connection is shared between worker
    threads, so queries and cache fills are serialized.
    """

    def __init__(self, store: CallStore):
        self.store = store
        self._lock = threading.RLock()
        self._cache: dict[str, dict[CallType, dict[Condition, BasicCall]]] = {}

    def _query(self, query: str, params: Optional[list] = None) -> pl.DataFrame:
        with self._lock:
            if not self.store.has_table(EVIDENCE_TABLE):
                return pl.DataFrame(schema=EVIDENCE_SCHEMA)
            return self.store.execute_query(query, params)

    def gene_ids(self) -> list[str]:
        df = self._query(f"SELECT DISTINCT gene_id FROM {EVIDENCE_TABLE} ORDER BY gene_id")
        return df["gene_id"].to_list()

    def conditions(self) -> set[Condition]:
        df = self._query(
            f"SELECT DISTINCT anat_entity_id, dev_stage_id, species_id FROM {EVIDENCE_TABLE}"
        )
        return {Condition(*row) for row in df.iter_rows()}

    def clear_cache(self) -> None:
        """Drop the merged calls of every gene loaded so far."""
        with self._lock:
            self._cache.clear()

    def _load_gene(self, gene_id: str) -> dict[CallType, dict[Condition, BasicCall]]:
        df = self._query(
            f"SELECT * FROM {EVIDENCE_TABLE} WHERE gene_id = ?",
            [gene_id],
        )
        grouped: dict[tuple[Condition, CallType], list[DataTypeEvidence]] = defaultdict(list)
        for row in df.iter_rows(named=True):
            condition = Condition(row["anat_entity_id"], row["dev_stage_id"], row["species_id"])
            grouped[(condition, _call_type_from_row(row))].append(_evidence_from_row(row))

        calls: dict[CallType, dict[Condition, BasicCall]] = {ct: {} for ct in CallType}
        for (condition, call_type), records in grouped.items():
            call = merge_evidence(gene_id, condition, call_type, records)
            if call is not None:
                calls[call_type][condition] = call

        logger.debug("gene_evidence_loaded", gene_id=gene_id, row_count=df.height)
        return calls

    def basic_calls_for(
        self,
        gene_id: str,
        conditions: Iterable[Condition],
        call_type: CallType,
    ) -> Mapping[Condition, BasicCall]:
        with self._lock:
            calls = self._cache.get(gene_id)
            if calls is None:
                calls = self._load_gene(gene_id)
                self._cache[gene_id] = calls
        by_condition = calls[call_type]
        return {
            condition: by_condition[condition]
            for condition in conditions
            if condition in by_condition
        }
