"""Dotted-path flattening of collection schemas and path helpers for documents."""

from __future__ import annotations

import logging
from typing import Any

from mongoshape.errors import UnsupportedSchemaConstructError
from mongoshape.schema import UNSET, SchemaKind, SchemaNode

logger = logging.getLogger(__name__)


def join_path(parent: str, key: str | int) -> str:
    return f"{parent}.{key}" if parent else str(key)


def ancestor_paths(path: str) -> list[str]:
    """Proper prefixes of a dotted path, shortest first ("a.b.c" -> ["a", "a.b"])."""
    segments = path.split(".")
    return [".".join(segments[:i]) for i in range(1, len(segments))]


def _options(node: SchemaNode) -> tuple[SchemaNode, ...]:
    return node.alternatives or (node,)


def merge_nodes(existing: SchemaNode, new: SchemaNode) -> SchemaNode:
    """Merge two governing schemas into one flat set of alternatives."""
    options = list(_options(existing))
    for option in _options(new):
        if option not in options:
            options.append(option)
    if len(options) == 1:
        return options[0]
    return SchemaNode(
        annotation=None,
        required=all(option.required for option in options),
        alternatives=tuple(options),
    )


def _check_elements(element: SchemaNode, path: str, enclosing: frozenset[Any]) -> None:
    """Reject unsupported constructs anywhere inside an array element type.

    Array elements get no path entries, but what they contain still has to
    be storable.
    """
    stack: list[tuple[SchemaNode, frozenset[Any]]] = [(element, enclosing)]
    while stack:
        node, seen = stack.pop()
        core = node.unwrap().core
        kind = core.kind
        if kind is SchemaKind.UNSUPPORTED:
            raise UnsupportedSchemaConstructError(path, core.describe())
        if kind is SchemaKind.UNION:
            stack.extend((branch, seen) for branch in core.branches())
        elif kind is SchemaKind.ARRAY:
            stack.append((core.element_type(), seen))
        elif kind is SchemaKind.TUPLE:
            stack.extend((item, seen) for item in core.items())
        elif kind is SchemaKind.OBJECT and core.annotation not in seen:
            inner = seen | {core.annotation}
            stack.extend((child, inner) for child in core.fields().values())


def flatten(root: SchemaNode) -> dict[str, SchemaNode]:
    """Map every dotted path reachable through objects and tuples to its governing schema.

    Wrappers (optional, nullable, ``Annotated``) are peeled to decide how to
    descend, but the wrapped node is what gets stored so validation keeps
    seeing optionality. Union branches are all walked at the same path; the
    path then maps to the alternatives reached. Arrays and scalars are
    leaves, though array element types are still checked. A model nested
    inside itself is stored but not descended again.

    Raises UnsupportedSchemaConstructError for types the engine cannot map.
    """
    paths: dict[str, SchemaNode] = {}
    native_unions: set[str] = set()
    stack: list[tuple[SchemaNode, str, frozenset[Any]]] = [(root, "", frozenset())]

    while stack:
        node, path, enclosing = stack.pop()
        core, required, nullable = node.unwrap()
        kind = core.kind

        if kind is SchemaKind.UNSUPPORTED:
            raise UnsupportedSchemaConstructError(path, core.describe())

        if kind is SchemaKind.UNION:
            native_unions.add(path)
            branches = [
                branch.with_wrappers(required=required, nullable=nullable)
                for branch in core.branches()
            ]
            stack.extend((branch, path, enclosing) for branch in reversed(branches))
            continue

        if path:
            existing = paths.get(path)
            if existing is None:
                paths[path] = node
            elif path in native_unions:
                paths[path] = merge_nodes(existing, node)
            elif existing != node:
                logger.debug("Path %s is reachable through several union branches; merging", path)
                paths[path] = merge_nodes(existing, node)

        if kind is SchemaKind.OBJECT:
            if core.annotation in enclosing:
                continue
            inner = enclosing | {core.annotation}
            children = [
                (child, join_path(path, key), inner) for key, child in core.fields().items()
            ]
            stack.extend(reversed(children))
        elif kind is SchemaKind.TUPLE:
            items = [
                (item, join_path(path, index), enclosing)
                for index, item in enumerate(core.items())
            ]
            stack.extend(reversed(items))
        elif kind is SchemaKind.ARRAY:
            _check_elements(core.element_type(), path, enclosing)

    return paths


def get_path(document: Any, path: str) -> Any:
    """Read the value at a dotted path, returning UNSET when any segment is missing."""
    current = document
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return UNSET
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return UNSET
            current = current[index]
        else:
            return UNSET
    return current


def assign_path(document: dict[str, Any], path: str, value: Any) -> None:
    """Write ``value`` at a dotted path in place; UNSET removes the key.

    Missing intermediate objects are created. List segments must be existing
    indices.
    """
    segments = path.split(".")
    current: Any = document
    for segment in segments[:-1]:
        if isinstance(current, list):
            current = current[int(segment)]
            continue
        child = current.get(segment, UNSET)
        if child is UNSET or child is None:
            if value is UNSET:
                return
            child = {}
            current[segment] = child
        current = child

    last = segments[-1]
    if isinstance(current, list):
        index = int(last)
        if value is UNSET:
            current[index] = None
        else:
            current[index] = value
    elif value is UNSET:
        current.pop(last, None)
    else:
        current[last] = value
