"""Output formatting helpers for the CLI."""

from __future__ import annotations

import json
import sys
from typing import Any

import yaml


def print_table(headers: list[str], rows: list[list[Any]]) -> None:
    """Print rows as left-aligned columns under a dashed header rule."""
    cells = [[str(value) for value in row] for row in rows]
    widths = [max([len(h)] + [len(row[i]) for row in cells]) for i, h in enumerate(headers)]

    print("  ".join(h.ljust(w) for h, w in zip(headers, widths)).rstrip())
    print("  ".join("-" * w for w in widths))
    for row in cells:
        print("  ".join(value.ljust(w) for value, w in zip(row, widths)).rstrip())


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def write_output(data: dict[str, Any], output: str | None, fmt: str) -> None:
    """Write structured data as JSON or YAML to a file or stdout."""
    if fmt == "yaml":
        content = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    else:
        content = json.dumps(data, indent=2, default=str)

    if output:
        with open(output, "w") as f:
            f.write(content)
        print(f"Written to {output}")
    else:
        print(content)


def print_error(msg: str) -> None:
    """Print an error message to stderr."""
    print(f"Error: {msg}", file=sys.stderr)
