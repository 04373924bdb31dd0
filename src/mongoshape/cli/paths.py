"""mshape paths / mshape check: inspect flattened collection schemas."""

from __future__ import annotations

from typing import Any, Optional

import typer

from mongoshape.cli import _exitcodes as ec
from mongoshape.cli._loader import load_collections
from mongoshape.cli._output import print_error, print_json, print_table, write_output
from mongoshape.errors import SchemaDefinitionError
from mongoshape.registry import CollectionSchema

FORMATS = ("table", "json", "yaml")


def _load(models: str | None, models_path: str | None) -> dict[str, Any]:
    if not models and not models_path:
        print_error("One of --models or --models-path is required")
        raise typer.Exit(ec.USAGE_ERROR)
    try:
        return load_collections(models, models_path)
    except Exception as e:
        print_error(f"Failed to load models: {e}")
        raise typer.Exit(ec.GENERAL_ERROR)


def paths_cmd(
    models: Optional[str] = typer.Option(None, "--models", help="Python import path for models"),
    models_path: Optional[str] = typer.Option(
        None, "--models-path", help="Filesystem path to models"
    ),
    collection: Optional[str] = typer.Option(
        None, "--collection", help="Only show this collection"
    ),
    fmt: str = typer.Option("table", "--format", help="Output format: table, json or yaml"),
    output: Optional[str] = typer.Option(None, "--output", help="Output file path"),
) -> None:
    """Show the dotted-path map derived from each collection schema."""
    from mongoshape.cli import state

    if fmt not in FORMATS:
        print_error(f"--format must be one of {', '.join(FORMATS)}")
        raise typer.Exit(ec.USAGE_ERROR)

    collections = _load(models, models_path)
    if collection is not None:
        if collection not in collections:
            print_error(f"Unknown collection '{collection}'")
            raise typer.Exit(ec.USAGE_ERROR)
        collections = {collection: collections[collection]}

    described: dict[str, list[dict[str, Any]]] = {}
    for name, model in collections.items():
        try:
            described[name] = CollectionSchema(name, model).describe_paths()
        except SchemaDefinitionError as e:
            print_error(str(e))
            raise typer.Exit(ec.SCHEMA_ERROR)

    if state.json_output and fmt == "table":
        fmt = "json"
    if fmt != "table":
        write_output(described, output, fmt)
        return

    headers = ["collection", "path", "kind", "optional", "type"]
    rows = [
        [name, row["path"], row["kind"], row["optional"], row["type"]]
        for name, entries in described.items()
        for row in entries
    ]
    if not rows:
        print("No paths found.")
        return
    print_table(headers, rows)


def check_cmd(
    models: Optional[str] = typer.Option(None, "--models", help="Python import path for models"),
    models_path: Optional[str] = typer.Option(
        None, "--models-path", help="Filesystem path to models"
    ),
) -> None:
    """Check that every collection schema can be registered."""
    from mongoshape.cli import state

    collections = _load(models, models_path)
    failures: list[dict[str, str]] = []
    path_count = 0
    for name, model in collections.items():
        try:
            path_count += len(CollectionSchema(name, model).paths)
        except SchemaDefinitionError as e:
            failures.append({"collection": name, "error": str(e)})

    if state.json_output:
        status = "error" if failures else "ok"
        print_json(
            {
                "status": status,
                "collections": len(collections),
                "paths": path_count,
                "errors": failures,
            }
        )
    elif failures:
        for failure in failures:
            print_error(f"{failure['collection']}: {failure['error']}")
    else:
        print(f"Schema OK: {len(collections)} collection(s), {path_count} path(s).")

    if failures:
        raise typer.Exit(ec.SCHEMA_ERROR)
