"""mshape backup: dump a collection with mongodump and prune old backups."""

from __future__ import annotations

import asyncio

import typer

from mongoshape.backup import backup_collection
from mongoshape.cli import _exitcodes as ec
from mongoshape.cli._output import print_error, print_json
from mongoshape.config import load_config
from mongoshape.errors import ConfigError
from mongoshape.log import configure_logging


def backup_cmd(
    database: str = typer.Argument(..., help="Database name"),
    collection: str = typer.Argument(..., help="Collection name"),
    max_backups: int = typer.Option(10, "--max-backups", min=1, help="Backups to keep"),
    gzip: bool = typer.Option(False, "--gzip", help="Compress the dump"),
) -> None:
    """Back up one collection into the configured backup directory."""
    from mongoshape.cli import state

    try:
        config = load_config(state.config)
    except ConfigError as e:
        print_error(str(e))
        raise typer.Exit(ec.USAGE_ERROR)
    configure_logging(config.log_level)

    ok = asyncio.run(
        backup_collection(
            config.mongo_uri,
            database,
            collection,
            config.backup_dir,
            max_backups=max_backups,
            compressed=gzip,
        )
    )
    if state.json_output:
        print_json({"database": database, "collection": collection, "ok": ok})
    elif ok:
        print(f"Backed up {database}.{collection} to {config.backup_dir}")
    if not ok:
        print_error(f"Backup of {database}.{collection} failed")
        raise typer.Exit(ec.DATABASE_ERROR)
