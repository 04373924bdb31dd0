"""Splitting sparse updates into MongoDB $set/$unset patches."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from mongoshape.paths import assign_path, join_path
from mongoshape.registry import ID_FIELD
from mongoshape.schema import UNSET

UNSET_MARKER = ""


@dataclass(frozen=True)
class SetUnsetPatch:
    """A partial update expressed as assigned paths plus removed paths."""

    set: dict[str, Any] = field(default_factory=dict)
    unset: dict[str, Any] = field(default_factory=dict)
    ignored: tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.set or self.unset)

    def to_update_document(self) -> dict[str, dict[str, Any]]:
        update: dict[str, dict[str, Any]] = {}
        if self.set:
            update["$set"] = dict(self.set)
        if self.unset:
            update["$unset"] = dict(self.unset)
        return update


def split_set_unset(update: Mapping[str, Any]) -> SetUnsetPatch:
    """Separate a sparse update whose leaves may be UNSET into $set and $unset maps.

    Nested mappings are walked and their keys joined into dotted paths.
    Lists, dates and other values are leaves, so UNSET inside a list is not
    turned into a removal. A nested mapping that yields nothing is stored
    whole. A top-level identity key is dropped and reported in ``ignored``.
    """
    if not isinstance(update, Mapping):
        raise TypeError(f"Cannot split {type(update).__name__}; an update must be a mapping")

    ignored = tuple(key for key in update if key == ID_FIELD)
    set_ops, unset_ops = _split({k: v for k, v in update.items() if k != ID_FIELD})
    return SetUnsetPatch(set=set_ops, unset=unset_ops, ignored=ignored)


def _split(update: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    set_ops: dict[str, Any] = {}
    unset_ops: dict[str, Any] = {}

    for key, value in update.items():
        if value is UNSET:
            unset_ops[key] = UNSET_MARKER
        elif isinstance(value, Mapping) and len(value) > 0:
            nested_set, nested_unset = _split(value)
            if nested_set or nested_unset:
                for path, nested_value in nested_set.items():
                    set_ops[join_path(key, path)] = nested_value
                for path in nested_unset:
                    unset_ops[join_path(key, path)] = UNSET_MARKER
            else:
                set_ops[key] = value
        else:
            set_ops[key] = value

    return set_ops, unset_ops


def apply_patch(document: dict[str, Any], patch: SetUnsetPatch) -> dict[str, Any]:
    """Apply a patch to a plain document in place and return it."""
    for path, value in patch.set.items():
        assign_path(document, path, value)
    for path in patch.unset:
        assign_path(document, path, UNSET)
    return document
