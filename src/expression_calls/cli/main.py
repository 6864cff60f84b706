"""Main CLI entry point for expression-calls.

Provides command group with global options and subcommands for evidence
import, call computation and filter aggregation.
"""

import logging
from pathlib import Path

import click

from expression_calls import __version__
from expression_calls.config.loader import load_config
from expression_calls.cli.load_cmd import load
from expression_calls.cli.calls_cmd import calls
from expression_calls.cli.aggregate_cmd import aggregate


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@click.group()
@click.option(
    '--config',
    type=click.Path(exists=True, path_type=Path),
    default='config/default.yaml',
    help='Path to engine configuration YAML file'
)
@click.option(
    '--verbose',
    is_flag=True,
    help='Enable verbose logging (DEBUG level)'
)
@click.pass_context
def cli(ctx, config, verbose):
    """Expression-calls: propagate and resolve gene expression calls over condition ontologies.

    Imports per-data-type evidence, propagates presence and absence calls
    through the anatomy and developmental stage ontologies, and resolves
    them into graded, scored calls.
    """
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['verbose'] = verbose

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.debug("Verbose logging enabled")


@cli.command()
@click.pass_context
def info(ctx):
    """Display engine information and configuration summary."""
    config_path = ctx.obj['config_path']

    click.echo(f"Expression Calls v{__version__}")
    click.echo(f"Config: {config_path}")
    click.echo()

    try:
        config = load_config(config_path)

        config_hash = config.config_hash()
        click.echo(f"Config Hash: {config_hash[:16]}...")
        click.echo()

        click.echo(click.style("Paths:", bold=True))
        click.echo(f"  Data Directory: {config.data_dir}")
        click.echo(f"  DuckDB Path: {config.duckdb_path}")
        click.echo()

        click.echo(click.style("Quality Thresholds:", bold=True))
        click.echo(
            f"  GOLD:   >= {config.quality.gold_min_high} high-quality types "
            f"or >= {config.quality.gold_min_types} types"
        )
        click.echo(
            f"  SILVER: >= {config.quality.silver_min_high} high-quality types "
            f"or >= {config.quality.silver_min_types} types"
        )
        click.echo()

        click.echo(click.style("Propagation:", bold=True))
        click.echo(f"  Propagate: {config.propagation.propagate}")
        click.echo(f"  Include Not Expressed: {config.propagation.include_not_expressed}")
        click.echo()

        click.echo(click.style("Batch:", bold=True))
        click.echo(f"  Max Workers: {config.batch.max_workers}")
        click.echo(f"  Store Read-Only: {config.storage.read_only}")
        click.echo(f"  Store Max Retries: {config.storage.max_retries}")

    except Exception as e:
        click.echo(click.style(f"Error loading config: {e}", fg='red'), err=True)
        ctx.exit(1)


# Register commands
cli.add_command(load)
cli.add_command(calls)
cli.add_command(aggregate)


if __name__ == '__main__':
    cli()
