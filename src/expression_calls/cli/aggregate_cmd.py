"""Aggregate command: group per-entity call filters into merged filters."""

import logging
import sys
from pathlib import Path

import click
import polars as pl

from expression_calls.engine import CallFilter, CallType, DataState, aggregate_call_filters, parse_data_type
from expression_calls.errors import CallEngineError

logger = logging.getLogger(__name__)

FILTER_COLUMNS = ["entity_id", "gene_ids", "call_type", "requirements", "propagate"]


def parse_requirements(value: str | None) -> dict:
    """Parse "affymetrix:high_quality;rna_seq:low_quality" into a requirement map."""
    requirements = {}
    if not value:
        return requirements
    for item in value.split(";"):
        item = item.strip()
        if not item:
            continue
        data_type, _, state = item.partition(":")
        requirements[parse_data_type(data_type)] = DataState.parse(state)
    return requirements


def read_filters(path: Path) -> dict[str, list[CallFilter]]:
    """
    Read per-entity filters from a TSV.

    Columns: entity_id, gene_ids (comma-separated), call_type, requirements
    (data_type:state pairs separated by ";", may be empty), propagate
    (true/false).
    """
    df = pl.read_csv(path, separator="\t", infer_schema_length=0)
    missing = [col for col in FILTER_COLUMNS if col not in df.columns]
    if missing:
        raise click.BadParameter(f"filters file is missing columns: {missing}")

    filters: dict[str, list[CallFilter]] = {}
    for row in df.iter_rows(named=True):
        gene_ids = [g.strip() for g in (row["gene_ids"] or "").split(",") if g.strip()]
        call_filter = CallFilter.of(
            gene_ids,
            call_type=CallType(row["call_type"].strip()),
            requirements=parse_requirements(row["requirements"]),
            propagate=(row["propagate"] or "true").strip().lower() in ("true", "1", "yes"),
        )
        filters.setdefault(row["entity_id"], []).append(call_filter)
    return filters


def _describe(call_filter: CallFilter) -> str:
    reqs = ";".join(
        f"{data_type.value}:{state.name.lower()}"
        for data_type, state in sorted(call_filter.requirements, key=lambda r: r[0].value)
    )
    return (
        f"{call_filter.call_type.value} propagate={call_filter.propagate} "
        f"genes={','.join(sorted(call_filter.gene_ids))} requirements={reqs or '-'}"
    )


@click.command('aggregate')
@click.argument('filters_path', type=click.Path(exists=True, path_type=Path))
@click.pass_context
def aggregate(ctx, filters_path):
    """Merge the call filters requested per entity and print the groups.

    FILTERS_PATH is a TSV with columns entity_id, gene_ids, call_type,
    requirements and propagate.
    """
    try:
        filters = read_filters(filters_path)
        aggregated = aggregate_call_filters(filters)
    except (CallEngineError, ValueError) as e:
        click.echo(click.style(f"Error: {e}", fg='red'), err=True)
        sys.exit(1)

    input_count = sum(len(f) for f in filters.values())
    click.echo(click.style(
        f"{input_count} filters for {len(filters)} entities -> {len(aggregated)} merged filters",
        bold=True
    ))
    for call_filter, entities in sorted(aggregated.items(), key=lambda kv: sorted(kv[1])):
        click.echo(f"  [{', '.join(sorted(entities))}] {_describe(call_filter)}")
