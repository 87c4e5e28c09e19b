#!/usr/bin/env python
"""
ClickHouse schema migration CLI.

Usage:
    python scripts/migrate.py up
    python scripts/migrate.py down
    python scripts/migrate.py down-all
    python scripts/migrate.py status
"""

import asyncio
import sys
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

import click

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from core.config import Settings, load_settings
from core.exceptions import EventStoreError
from core.logging import configure_logging
from core.storage.factory import create_clickhouse_database
from core.storage.migrations import ClickHouseMigrator


T = TypeVar("T")


def _run(settings: Settings, action: Callable[[ClickHouseMigrator], Awaitable[T]]) -> T:
    async def _main() -> T:
        database = create_clickhouse_database(settings)
        try:
            await database.check_connection()
            migrator = ClickHouseMigrator(database, settings.clickhouse_migrations_dir)
            return await action(migrator)
        finally:
            await database.close()

    try:
        return asyncio.run(_main())
    except EventStoreError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group(name="migrate")
@click.option("--migrations-dir", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Override the migrations directory")
@click.pass_context
def main(ctx: click.Context, migrations_dir: Path | None) -> None:
    """Manage the ClickHouse event store schema."""
    overrides = {}
    if migrations_dir is not None:
        overrides["clickhouse_migrations_dir"] = migrations_dir
    settings = load_settings(**overrides)
    configure_logging(settings)
    ctx.obj = settings


@main.command()
@click.pass_obj
def up(settings: Settings) -> None:
    """Apply all pending migrations."""
    applied = _run(settings, lambda migrator: migrator.up())
    if not applied:
        click.echo("Schema is up to date")
    for migration in applied:
        click.echo(f"applied  {migration.filename}")


@main.command()
@click.pass_obj
def down(settings: Settings) -> None:
    """Roll back the most recently applied migration."""
    migration = _run(settings, lambda migrator: migrator.down())
    if migration is None:
        click.echo("No migrations to roll back")
    else:
        click.echo(f"rolled back  {migration.filename}")


@main.command("down-all")
@click.confirmation_option(prompt="Roll back ALL migrations? This drops the events table.")
@click.pass_obj
def down_all(settings: Settings) -> None:
    """Roll back every applied migration."""
    rolled_back = _run(settings, lambda migrator: migrator.down_all())
    for migration in rolled_back:
        click.echo(f"rolled back  {migration.filename}")


@main.command()
@click.pass_obj
def status(settings: Settings) -> None:
    """Show which migrations are applied."""
    statuses = _run(settings, lambda migrator: migrator.status())
    for item in statuses:
        marker = "x" if item.applied else " "
        click.echo(f"[{marker}] {item.version}  {item.name}")


if __name__ == "__main__":
    main()
