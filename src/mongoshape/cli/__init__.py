"""mshape CLI: inspect collection schemas and manage backups."""

from __future__ import annotations

from typing import Optional

import typer

from mongoshape.cli import backup, paths

app = typer.Typer(
    name="mshape",
    help="mshape: inspect mongoshape collection schemas and back up collections.",
    no_args_is_help=True,
)


class _State:
    """Global CLI state shared across subcommands."""

    config: str | None = None
    json_output: bool = False


state = _State()


def _version_callback(value: bool) -> None:
    if value:
        try:
            from importlib.metadata import version

            v = version("mongoshape")
        except Exception:
            v = "unknown"
        print(f"mshape {v}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="MONGOSHAPE_CONFIG",
        help="Config file path (default: mongoshape_config.json if present)",
    ),
    json_output: bool = typer.Option(False, "--json", help="JSON output when supported"),
    version: bool = typer.Option(
        False, "--version", help="Show version", is_eager=True, callback=_version_callback
    ),
) -> None:
    """Global options for all mshape commands."""
    state.config = config
    state.json_output = json_output
    if ctx.invoked_subcommand is None and not version:
        print(ctx.get_help())
        raise typer.Exit()


app.command(name="paths")(paths.paths_cmd)
app.command(name="check")(paths.check_cmd)
app.command(name="backup")(backup.backup_cmd)


def main() -> None:
    """Entry point for the mshape CLI."""
    app()
