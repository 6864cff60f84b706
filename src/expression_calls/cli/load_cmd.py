"""Load command: import evidence and ontology relation TSVs into DuckDB."""

import logging
import sys
from pathlib import Path

import click
import polars as pl

from expression_calls.config.loader import load_config
from expression_calls.errors import CallEngineError
from expression_calls.persistence import CallStore, ProvenanceTracker
from expression_calls.sources import (
    ANAT_RELATIONS_TABLE,
    STAGE_RELATIONS_TABLE,
    save_evidence,
    save_relations,
)

logger = logging.getLogger(__name__)


def _read_tsv(path: Path) -> pl.DataFrame:
    return pl.read_csv(path, separator="\t", infer_schema_length=10000)


@click.command('load')
@click.option(
    '--evidence',
    'evidence_path',
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help='TSV of per-data-type evidence rows'
)
@click.option(
    '--anat-relations',
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help='TSV of anatomical entity relations (child_id, parent_id)'
)
@click.option(
    '--stage-relations',
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help='TSV of developmental stage relations (child_id, parent_id)'
)
@click.option(
    '--append',
    is_flag=True,
    help='Append evidence rows instead of replacing the evidence table'
)
@click.pass_context
def load(ctx, evidence_path, anat_relations, stage_relations, append):
    """Import evidence and ontology relations into the DuckDB store.

    Evidence TSV columns: gene_id, anat_entity_id, dev_stage_id, species_id,
    call_type, data_type, state, rank, evidence_count.

    Relation TSV columns: child_id, parent_id.

    Examples:

        expression-calls load --evidence evidence.tsv --anat-relations anat.tsv
    """
    config_path = ctx.obj['config_path']

    if evidence_path is None and anat_relations is None and stage_relations is None:
        click.echo(click.style("Nothing to load: give at least one input file.", fg='yellow'))
        return

    store = None
    try:
        config = load_config(config_path)
        store = CallStore.from_config(config, read_only=False)
        provenance = ProvenanceTracker.from_config(config)

        if anat_relations is not None:
            count = save_relations(_read_tsv(anat_relations), ANAT_RELATIONS_TABLE, store, provenance)
            click.echo(click.style(f"  Anatomy relations: {count} rows", fg='green'))

        if stage_relations is not None:
            count = save_relations(_read_tsv(stage_relations), STAGE_RELATIONS_TABLE, store, provenance)
            click.echo(click.style(f"  Stage relations:   {count} rows", fg='green'))

        if evidence_path is not None:
            count = save_evidence(_read_tsv(evidence_path), store, provenance, replace=not append)
            click.echo(click.style(f"  Evidence:          {count} rows", fg='green'))

        provenance.save_to_store(store)
        click.echo(f"Store: {config.duckdb_path}")

    except CallEngineError as e:
        click.echo(click.style(f"Error: {e}", fg='red'), err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(click.style(f"Load failed: {e}", fg='red'), err=True)
        logger.exception("Failed to load input files")
        sys.exit(1)
    finally:
        if store is not None:
            store.close()
