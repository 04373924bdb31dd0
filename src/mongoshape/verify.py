"""Validation of sparse query/update objects against a collection's path map."""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from typing import Any

from mongoshape.errors import SchemaViolationError, UnknownPathError
from mongoshape.log import WarningRegistry
from mongoshape.patch import UNSET_MARKER, SetUnsetPatch
from mongoshape.registry import ID_FIELD, CollectionSchema, to_storage

logger = logging.getLogger(__name__)

LOGICAL_OPERATORS = frozenset({"$and", "$or", "$nor"})


class VerifyMode(str, enum.Enum):
    QUERY = "query"
    SET = "set"
    UNSET = "unset"


class PathVerifier:
    """Resolve each key of a sparse object against the path map and validate its value.

    Unknown paths fail closed with UnknownPathError. In query mode, mapping
    values are taken to be MongoDB operator expressions and are passed
    through unchecked; that is reported once per verifier.
    """

    def __init__(self, warnings: WarningRegistry | None = None) -> None:
        self._warnings = warnings or WarningRegistry(logger)

    def verify(
        self,
        schema: CollectionSchema,
        sparse: Mapping[str, Any],
        mode: VerifyMode,
    ) -> dict[str, Any]:
        if mode is VerifyMode.QUERY:
            return self._verify_query(schema, sparse)
        verified: dict[str, Any] = {}
        for path, value in sparse.items():
            node = schema.node_at(path)
            if mode is VerifyMode.SET:
                verified[path] = to_storage(schema.validate_at(path, value))
            else:
                if not node.accepts_absent():
                    raise SchemaViolationError(
                        schema.name, path, "field is required and cannot be removed"
                    )
                verified[path] = UNSET_MARKER
        return verified

    def verify_patch(self, schema: CollectionSchema, patch: SetUnsetPatch) -> SetUnsetPatch:
        if patch.ignored:
            self._warnings.warn_once(
                f"identity-update:{schema.name}",
                "The identity field is immutable; update of %s in collection '%s' was ignored",
                ID_FIELD,
                schema.name,
            )
        return SetUnsetPatch(
            set=self.verify(schema, patch.set, VerifyMode.SET),
            unset=self.verify(schema, patch.unset, VerifyMode.UNSET),
        )

    def verify_paths(self, schema: CollectionSchema, paths: list[str]) -> None:
        """Check that every path exists, without looking at values."""
        for path in paths:
            schema.node_at(path)

    def _verify_query(self, schema: CollectionSchema, query: Mapping[str, Any]) -> dict[str, Any]:
        verified: dict[str, Any] = {}
        for path, value in query.items():
            if path == ID_FIELD:
                verified[path] = value
            elif path in LOGICAL_OPERATORS:
                if not isinstance(value, list):
                    raise SchemaViolationError(
                        schema.name, path, f"{path} expects a list of query documents"
                    )
                verified[path] = [self._verify_query(schema, clause) for clause in value]
            elif path.startswith("$"):
                raise UnknownPathError(schema.name, path)
            else:
                node = schema.node_at(path)
                if isinstance(value, Mapping):
                    self._warnings.warn_once(
                        "query-operators",
                        "Query operator values are passed through without schema validation "
                        "(first seen at path '%s' in collection '%s')",
                        path,
                        schema.name,
                    )
                    verified[path] = value
                elif value is None and node.accepts_absent():
                    verified[path] = None
                else:
                    verified[path] = to_storage(schema.validate_at(path, value))
        return verified
