"""Tabular conversion of resolved calls and dual-format TSV+Parquet writer."""

from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

import polars as pl
import yaml

from expression_calls.engine.models import DataType, ExpressionLevel, GeneCondition, ResolvedCall

CALL_SCHEMA = {
    "gene_id": pl.Utf8,
    "anat_entity_id": pl.Utf8,
    "dev_stage_id": pl.Utf8,
    "species_id": pl.Utf8,
    "call_type": pl.Utf8,
    "origin": pl.Utf8,
    "propagated": pl.Boolean,
    "quality": pl.Utf8,
    "rank": pl.Float64,
    "score": pl.Float64,
    "level_relative_to_gene": pl.Utf8,
    "level_relative_to_anat_entity": pl.Utf8,
    "conflict": pl.Boolean,
    "redundant": pl.Boolean,
    **{f"{data_type.value}_state": pl.Utf8 for data_type in DataType},
}


def _level(level: Optional[ExpressionLevel]) -> Optional[str]:
    return level.value if level is not None else None


def resolved_calls_to_frame(
    calls: Iterable[ResolvedCall],
    redundant: Optional[set[GeneCondition]] = None,
) -> pl.DataFrame:
    """
    Flatten resolved calls into one row per gene-condition.

    Args:
        calls: Resolved calls
        redundant: GeneConditions flagged as redundant (column is False for
            every row if None)

    Returns:
        DataFrame with condition columns, summary columns and one
        "<data_type>_state" column per data type
    """
    redundant = redundant or set()
    rows = []
    for resolved in calls:
        call, summary = resolved.call, resolved.summary
        condition = call.condition
        row = {
            "gene_id": call.gene_id,
            "anat_entity_id": condition.anat_entity_id,
            "dev_stage_id": condition.dev_stage_id,
            "species_id": condition.species_id,
            "call_type": summary.call_type.value,
            "origin": call.origin.value,
            "propagated": call.propagated,
            "quality": summary.quality.name,
            "rank": summary.rank,
            "score": summary.score,
            "level_relative_to_gene": _level(summary.level_relative_to_gene),
            "level_relative_to_anat_entity": _level(summary.level_relative_to_anat_entity),
            "conflict": summary.conflict,
            "redundant": call.gene_condition in redundant,
        }
        for data_type, state in call.data_states.items():
            row[f"{data_type.value}_state"] = state.name
        rows.append(row)

    return pl.DataFrame(rows, schema=CALL_SCHEMA)


def write_call_output(
    df: pl.DataFrame | pl.LazyFrame,
    output_dir: Path,
    filename_base: str = "calls",
) -> dict:
    """
    Write resolved calls to TSV and Parquet formats with provenance sidecar.

    Args:
        df: Frame produced by resolved_calls_to_frame
        output_dir: Directory to write output files (created if doesn't exist)
        filename_base: Base filename without extension (default: "calls")

    Returns:
        Dictionary with output file paths:
        {
            "tsv": Path to TSV file,
            "parquet": Path to Parquet file,
            "provenance": Path to YAML provenance sidecar
        }

    Notes:
        - Sorts by gene_id, species, anatomy, stage for deterministic output
        - Parquet uses snappy compression
        - Provenance YAML includes call type, quality and conflict counts
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    if isinstance(df, pl.LazyFrame):
        df = df.collect()

    df = df.sort(["gene_id", "species_id", "anat_entity_id", "dev_stage_id"])

    tsv_path = output_dir / f"{filename_base}.tsv"
    parquet_path = output_dir / f"{filename_base}.parquet"
    provenance_path = output_dir / f"{filename_base}.provenance.yaml"

    df.write_csv(tsv_path, separator="\t", include_header=True)
    df.write_parquet(parquet_path, compression="snappy", use_pyarrow=True)

    def counts(column: str) -> dict:
        if column not in df.columns or df.height == 0:
            return {}
        dist = df.group_by(column).agg(pl.len()).sort(column)
        return {row[column]: row["len"] for row in dist.to_dicts()}

    provenance = {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "output_files": [tsv_path.name, parquet_path.name],
        "statistics": {
            "total_calls": df.height,
            "gene_count": df["gene_id"].n_unique() if df.height else 0,
            "call_type_counts": counts("call_type"),
            "quality_counts": counts("quality"),
            "conflict_count": int(df["conflict"].sum()) if "conflict" in df.columns else 0,
            "redundant_count": int(df["redundant"].sum()) if "redundant" in df.columns else 0,
        },
        "column_count": len(df.columns),
        "column_names": df.columns,
    }

    with open(provenance_path, "w") as f:
        yaml.dump(provenance, f, default_flow_style=False, sort_keys=False)

    return {
        "tsv": tsv_path,
        "parquet": parquet_path,
        "provenance": provenance_path,
    }
