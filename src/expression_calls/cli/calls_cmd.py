"""Calls command: propagate, resolve and write expression calls."""

import logging
import sys
from pathlib import Path

import click

from expression_calls.config.loader import load_config
from expression_calls.engine import BatchRunner, identify_redundant_calls
from expression_calls.errors import CallEngineError
from expression_calls.output import resolved_calls_to_frame, write_call_output
from expression_calls.persistence import CallStore, ProvenanceTracker
from expression_calls.sources import DuckDBCallSource, load_condition_graph

logger = logging.getLogger(__name__)


@click.command('calls')
@click.option(
    '--gene',
    'genes',
    multiple=True,
    help='Gene to compute calls for (repeatable; default: all genes in the store)'
)
@click.option(
    '--self-only',
    is_flag=True,
    help='Do not propagate through the ontologies'
)
@click.option(
    '--no-absence',
    is_flag=True,
    help='Only compute presence calls'
)
@click.option(
    '--workers',
    type=int,
    default=None,
    help='Number of worker threads (default: batch.max_workers from config)'
)
@click.option(
    '--output-dir',
    type=click.Path(path_type=Path),
    default=None,
    help='Output directory (default: {data_dir}/calls)'
)
@click.option(
    '--flag-redundant',
    is_flag=True,
    help='Flag presence calls made redundant by a more precise call'
)
@click.pass_context
def calls(ctx, genes, self_only, no_absence, workers, output_dir, flag_redundant):
    """Compute resolved expression calls from the evidence store.

    Run this after 'expression-calls load'. Writes calls.tsv, calls.parquet
    and calls.provenance.yaml to the output directory.

    Examples:

        # All genes, with propagation
        expression-calls calls

        # Two genes, observed conditions only
        expression-calls calls --gene ENSG01 --gene ENSG02 --self-only
    """
    config_path = ctx.obj['config_path']

    click.echo(click.style("=== Expression Call Computation ===", bold=True))
    click.echo()

    store = None
    try:
        config = load_config(config_path)
        store = CallStore.from_config(config)
        provenance = ProvenanceTracker.from_config(config)

        source = DuckDBCallSource(store)
        graph = load_condition_graph(store)

        runner = BatchRunner.from_config(config, source, graph)
        if self_only:
            runner.propagate = False
        if no_absence:
            runner.include_not_expressed = False
        if workers is not None:
            runner.max_workers = workers

        gene_ids = list(genes) if genes else source.gene_ids()
        conditions = source.conditions()
        click.echo(f"Genes: {len(gene_ids)}  Observed conditions: {len(conditions)}")

        resolved = list(runner.run(gene_ids, conditions))
        provenance.record_step('compute_calls', {
            'gene_count': len(gene_ids),
            'call_count': len(resolved),
            'propagate': runner.propagate,
            'include_not_expressed': runner.include_not_expressed,
        })

        redundant = None
        if flag_redundant:
            redundant = identify_redundant_calls(resolved, graph)
            provenance.record_step('identify_redundant_calls', {
                'redundant_count': len(redundant),
            })

        df = resolved_calls_to_frame(resolved, redundant)

        if output_dir is None:
            output_dir = Path(config.data_dir) / "calls"
        output_paths = write_call_output(df, output_dir)
        provenance.save_sidecar(output_paths['tsv'])

        click.echo(click.style(f"  Calls:      {df.height}", fg='green'))
        click.echo(click.style(f"  TSV:        {output_paths['tsv']}", fg='green'))
        click.echo(click.style(f"  Parquet:    {output_paths['parquet']}", fg='green'))
        click.echo(click.style(f"  Provenance: {output_paths['provenance']}", fg='green'))

    except CallEngineError as e:
        click.echo(click.style(f"Error: {e}", fg='red'), err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(click.style(f"Call computation failed: {e}", fg='red'), err=True)
        logger.exception("Failed to compute calls")
        sys.exit(1)
    finally:
        if store is not None:
            store.close()
