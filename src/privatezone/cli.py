"""CLI for the private zone portal — serve the API, migrate, run a sync."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
import uvicorn

from privatezone.config import ConfigError, PortalConfig, load_config

logger = logging.getLogger(__name__)

SYNC_KINDS = ("calendar", "microsoft-calendar", "messages", "tasks")


def _load_config_or_exit(config_path: Path | None) -> PortalConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """Private zone: mirror Google and Microsoft accounts into a local store."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")


@cli.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to portal.toml (defaults to $PORTAL_CONFIG or ./portal.toml)",
)
@click.option("--host", default="0.0.0.0", show_default=True, help="Interface to bind")
@click.option("--port", type=int, default=None, help="Port to bind (defaults to portal.port)")
def serve(config_path: Path | None, host: str, port: int | None) -> None:
    """Run the HTTP API."""
    from privatezone.api.app import create_app

    config = _load_config_or_exit(config_path)
    bind_port = port or config.port
    click.echo(f"Starting {config.name} on {host}:{bind_port}")
    uvicorn.run(create_app(config=config), host=host, port=bind_port, log_level="info")


@cli.command()
@click.option("--revision", default="head", show_default=True, help="Target revision")
def migrate(revision: str) -> None:
    """Create the database if needed and apply schema migrations."""
    from privatezone.db import Database
    from privatezone.migrations import run_migrations

    db = Database.from_env()
    asyncio.run(db.provision())
    run_migrations(db.dsn, revision=revision)
    click.echo(f"Database {db.db_name} migrated to {revision}")


@cli.command()
@click.argument("user_id")
@click.option(
    "--kind",
    type=click.Choice(SYNC_KINDS),
    default="calendar",
    show_default=True,
    help="Which provider domain to sync",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to portal.toml",
)
def sync(user_id: str, kind: str, config_path: Path | None) -> None:
    """Run one sync pass for USER_ID and print the summary."""
    config = _load_config_or_exit(config_path)
    result = asyncio.run(_run_sync(config, user_id, kind))
    click.echo(
        f"{result.kind}: fetched={result.fetched} inserted={result.inserted} "
        f"updated={result.updated} unchanged={result.unchanged} skipped={result.skipped}"
    )


async def _run_sync(config: PortalConfig, user_id: str, kind: str):
    from privatezone.api.deps import build_services
    from privatezone.db import Database

    db = Database.from_env()
    await db.connect()
    services = build_services(config, db)
    try:
        if kind == "calendar":
            return await services.sync.sync_calendar(user_id)
        if kind == "microsoft-calendar":
            return await services.sync.sync_microsoft_calendar(user_id)
        if kind == "messages":
            return await services.sync.sync_messages(user_id)
        return await services.sync.sync_tasks(user_id)
    finally:
        await services.close()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
