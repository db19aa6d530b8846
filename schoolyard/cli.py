"""schoolyard CLI: scrape divisions, inspect the cache, serve the API.

Usage:
    schoolyard scrape 98                       # Print division 98 as JSON
    schoolyard scrape 98 --force-refresh       # Ignore the cache
    schoolyard scrape 98 --strategy content -o schools.json
    schoolyard cache show 98                   # Show the cached entry
    schoolyard serve --port 8000               # Start the HTTP API
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import click

from schoolyard.cache.freshness import FingerprintStrategy
from schoolyard.cache.stores import StorageBackend
from schoolyard.common.exceptions import CrawlJobException
from schoolyard.config import CrawlerConfig
from schoolyard.data_types import cache_key
from schoolyard.driver.channels import BufferedChannel
from schoolyard.orchestrator import Orchestrator

DEFAULT_DB = "schoolyard.db"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.group()
@click.version_option(package_name="schoolyard")
def cli() -> None:
    """schoolyard: division school directory scraper."""


@cli.command()
@click.argument("division_code", type=int)
@click.option(
    "--force-refresh",
    is_flag=True,
    help="Crawl even if the cached entry is still fresh.",
)
@click.option(
    "--db",
    "db_path",
    type=click.Path(),
    default=DEFAULT_DB,
    show_default=True,
    help="SQLite database for the cache.",
)
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in FingerprintStrategy]),
    default=None,
    help="Fingerprint strategy for the freshness check.",
)
@click.option(
    "--max-concurrency", type=int, default=None, help="Fetches in flight."
)
@click.option("--rpm", type=int, default=None, help="Requests per minute.")
@click.option(
    "--retries", type=int, default=None, help="Retries per request."
)
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False, writable=True),
    default=None,
    help="Write the JSON array to this file instead of stdout.",
)
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging.")
def scrape(
    division_code: int,
    force_refresh: bool,
    db_path: str,
    strategy: str | None,
    max_concurrency: int | None,
    rpm: int | None,
    retries: int | None,
    output: str | None,
    verbose: bool,
) -> None:
    """Scrape one division and print its schools as JSON."""
    _configure_logging(verbose)
    config = CrawlerConfig.from_env(
        fingerprint_strategy=strategy,
        max_concurrency=max_concurrency,
        max_requests_per_minute=rpm,
        max_request_retries=retries,
    )
    channel = BufferedChannel()

    async def _go() -> None:
        async with Orchestrator.open(config, db_path) as orchestrator:
            await orchestrator.scrape(
                division_code, channel, force_refresh=force_refresh
            )

    try:
        asyncio.run(_go())
    except CrawlJobException as e:
        raise click.ClickException(str(e)) from e

    payload = json.dumps(channel.json(), indent=2)
    if output:
        Path(output).write_text(payload + "\n")
        click.echo(
            f"Wrote {len(channel.json())} schools to {output}", err=True
        )
    else:
        click.echo(payload)


@cli.group()
def cache() -> None:
    """Inspect the change-detection cache."""


@cache.command("show")
@click.argument("division_code", type=int)
@click.option(
    "--db",
    "db_path",
    type=click.Path(exists=True, dir_okay=False),
    default=DEFAULT_DB,
    show_default=True,
    help="SQLite database for the cache.",
)
def cache_show(division_code: int, db_path: str) -> None:
    """Show the cached entry for a division."""

    async def _load() -> dict | None:
        async with StorageBackend.open(db_path) as storage:
            entry = await storage.cache.get(cache_key(division_code))
            return entry.model_dump(by_alias=True) if entry else None

    entry = asyncio.run(_load())
    if entry is None:
        raise click.ClickException(
            f"No cache entry for division {division_code}"
        )
    click.echo(f"Key:         {cache_key(division_code)}")
    click.echo(f"Fingerprint: {entry['fingerprint']}")
    click.echo(f"Timestamp:   {entry['timestamp']}")
    click.echo(f"Schools:     {len(entry['data'])}")
    for school in entry["data"]:
        click.echo(
            f"  {school['name']} ({school['gradeSpan']}): {school['address']}"
        )


@cli.command()
@click.option(
    "--host",
    default="127.0.0.1",
    show_default=True,
    help="Host to bind the server to.",
)
@click.option(
    "--port",
    default=8000,
    show_default=True,
    type=int,
    help="Port to bind the server to.",
)
@click.option(
    "--db",
    "db_path",
    type=click.Path(),
    default=DEFAULT_DB,
    show_default=True,
    help="SQLite database for the cache.",
)
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging.")
def serve(host: str, port: int, db_path: str, verbose: bool) -> None:
    """Start the HTTP API."""
    import uvicorn

    from schoolyard.web.app import create_app

    _configure_logging(verbose)
    app = create_app(CrawlerConfig.from_env(), db_path=db_path)

    click.echo(f"Starting web server at http://{host}:{port}")
    click.echo(f"Database: {Path(db_path).absolute()}")

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info" if verbose else "warning",
    )


def main() -> None:
    """Entry point for the ``schoolyard`` console script."""
    cli()
