"""CLI for Studiolink: run the API and manage its database."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
import uvicorn

from studiolink import __version__
from studiolink.config import ConfigError, StudioConfig, load_config

logger = logging.getLogger(__name__)


def _load_or_exit(config_path: Path | None) -> StudioConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Studiolink: calendar linking and pricing for a booking studio."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")


_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to studio.toml (or a directory containing it)",
)


@cli.command()
@_config_option
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind address")
@click.option("--port", type=int, default=None, help="Override studio.port")
def serve(config_path: Path | None, host: str, port: int | None) -> None:
    """Run the studio API server."""
    from studiolink.api.app import create_app

    config = _load_or_exit(config_path)
    bind_port = port or config.port
    click.echo(f"Starting studio {config.name!r} on {host}:{bind_port}")
    app = create_app(config)
    uvicorn.run(app, host=host, port=bind_port, log_level=config.logging.level.lower())


@cli.command("init-db")
@_config_option
def init_db(config_path: Path | None) -> None:
    """Create the studio database and its tables if missing."""
    config = _load_or_exit(config_path)
    asyncio.run(_init_db(config.db_name))
    click.echo(f"Database ready: {config.db_name}")


async def _init_db(db_name: str) -> None:
    from studiolink import catalog, credential_store
    from studiolink.db import Database

    db = Database.from_env(db_name)
    await db.provision()
    pool = await db.connect()
    try:
        # Credentials reference artists, so the catalog goes first.
        await catalog.ensure_schema(pool)
        await credential_store.ensure_schema(pool)
    finally:
        await db.close()


@cli.command("check-config")
@_config_option
def check_config(config_path: Path | None) -> None:
    """Validate studio.toml and print a redacted summary."""
    config = _load_or_exit(config_path)
    click.echo(f"studio:    {config.name}")
    click.echo(f"port:      {config.port}")
    click.echo(f"database:  {config.db_name}")
    click.echo(f"timezone:  {config.timezone}")
    click.echo(f"lookahead: {config.calendar.lookahead_days} days")
    click.echo(f"oauth:     {config.oauth!r}")
    click.echo(f"admin:     {config.admin!r}")
    if config.feeds:
        for feed in config.feeds:
            scope = feed.artist_id or "all artists"
            click.echo(f"feed:      {feed.name} ({scope})")
    else:
        click.echo("feeds:     none")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
