"""CLI tools for scheduled matching runs and database setup."""
import asyncio
import json
from typing import Optional

import click
from pydantic import ValidationError

from screening_match.config.logging_config import setup_logging
from screening_match.config.settings import get_settings
from screening_match.matching.orchestrator import MatchingOrchestrator
from screening_match.models.matching import MatchingConfigOverrides
from screening_match.storage.database import dispose_engine, init_db


@click.group()
def cli():
    """Screening match CLI tools."""
    settings = get_settings()
    setup_logging(log_level=settings.log_level, log_file=settings.log_file or None)


@cli.command(name="init-db")
def init_database():
    """Create all tables."""
    async def _init():
        try:
            await init_db()
        finally:
            await dispose_engine()

    asyncio.run(_init())
    click.echo("✓ Database initialized")


@cli.command()
@click.option("--batch-size", type=int, default=None, help="Patients per screening type (1-100)")
@click.option("--max-total", type=int, default=None, help="Maximum patients per run (1-1000)")
@click.option("--parallel/--sequential", default=None, help="Process screening types concurrently")
@click.option("--concurrency", type=int, default=None, help="Screening types processed at once (1-10)")
@click.option("--demographic-targeting/--no-demographic-targeting", default=None)
@click.option("--geographic-targeting/--no-geographic-targeting", default=None)
@click.option("--expiry-days", type=int, default=None, help="Days before a match expires (1-365)")
@click.option("--timeout", type=float, default=None, help="Stop starting new screening types after N seconds")
def run_matching(
    batch_size: Optional[int],
    max_total: Optional[int],
    parallel: Optional[bool],
    concurrency: Optional[int],
    demographic_targeting: Optional[bool],
    geographic_targeting: Optional[bool],
    expiry_days: Optional[int],
    timeout: Optional[float],
):
    """
    Run one matching pass and print the result as JSON.

    Exits non-zero when the run could not be tracked or loaded.

    Example:
        python -m screening_match.cli run-matching --batch-size 20 --parallel
    """
    try:
        overrides = MatchingConfigOverrides(
            patients_per_screening_type=batch_size,
            max_total_patients=max_total,
            enable_parallel_processing=parallel,
            max_concurrent_screening_types=concurrency,
            enable_demographic_targeting=demographic_targeting,
            enable_geographic_targeting=geographic_targeting,
            allocation_expiry_days=expiry_days,
        )
    except ValidationError as e:
        raise click.BadParameter(str(e))

    async def _run():
        try:
            await init_db()
            return await MatchingOrchestrator().run(overrides=overrides, deadline_seconds=timeout)
        finally:
            await dispose_engine()

    result = asyncio.run(_run())
    click.echo(json.dumps(result.model_dump(mode="json", exclude={"metrics"}), indent=2))
    if result.success:
        click.echo(f"✓ {result.execution_ref}: {result.summary['successful_matches']} match(es)")
    else:
        click.echo(f"❌ Error: {result.error}")
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
