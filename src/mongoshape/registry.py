"""Per-collection schema registry and the storage codec for validated values."""

from __future__ import annotations

import datetime
import enum
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, create_model
from pydantic import Field as PydanticField
from pydantic import ValidationError as PydanticValidationError

from mongoshape.errors import (
    ReservedFieldError,
    SchemaDefinitionError,
    SchemaViolationError,
    UnknownPathError,
)
from mongoshape.paths import flatten
from mongoshape.schema import UNSET, SchemaNode

ID_FIELD = "_id"
ID_ATTRIBUTE = "id_"


def to_storage(value: Any) -> Any:
    """Convert a validated value into the plain form handed to the driver."""
    if isinstance(value, BaseModel):
        return to_storage(_dump_model(value))
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Mapping):
        return {key: to_storage(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_storage(item) for item in value]
    if isinstance(value, datetime.date) and not isinstance(value, datetime.datetime):
        return datetime.datetime.combine(value, datetime.time())
    return value


def _dump_model(model: BaseModel) -> dict[str, Any]:
    return _drop_unset_none(model, model.model_dump(by_alias=True))


def _drop_unset_none(value: Any, dumped: Any) -> Any:
    # A None that came from a default and was never provided means "absent".
    if isinstance(value, BaseModel) and isinstance(dumped, dict):
        for name, info in type(value).model_fields.items():
            key = info.serialization_alias or info.alias or name
            if key not in dumped:
                continue
            item = getattr(value, name)
            if item is None and name not in value.model_fields_set:
                del dumped[key]
            else:
                dumped[key] = _drop_unset_none(item, dumped[key])
    elif isinstance(value, Mapping) and isinstance(dumped, dict):
        for key in dumped.keys() & value.keys():
            dumped[key] = _drop_unset_none(value[key], dumped[key])
    elif isinstance(value, (list, tuple)) and isinstance(dumped, (list, tuple)):
        if len(value) == len(dumped):
            return [_drop_unset_none(item, out) for item, out in zip(value, dumped)]
    return dumped


def remove_unset_values(value: Any) -> Any:
    """Drop keys explicitly assigned UNSET, recursing through dicts and lists."""
    if isinstance(value, Mapping):
        return {
            key: remove_unset_values(item) for key, item in value.items() if item is not UNSET
        }
    if isinstance(value, list):
        return [remove_unset_values(item) for item in value]
    return value


def _violation(collection: str, path: str | None, exc: ValueError) -> SchemaViolationError:
    errors = exc.errors() if isinstance(exc, PydanticValidationError) else []
    return SchemaViolationError(collection, path, str(exc), errors)


class CollectionSchema:
    """Schema registry entry for one collection.

    Holds the declared model, its flattened path map, and the model used to
    parse documents read back from storage (the declared model plus ``_id``).
    """

    def __init__(self, name: str, model: type[BaseModel]) -> None:
        if not (isinstance(model, type) and issubclass(model, BaseModel)):
            raise SchemaDefinitionError(
                f"Schema for collection '{name}' must be a pydantic model class, got {model!r}"
            )
        for field_name, info in model.model_fields.items():
            if field_name == ID_ATTRIBUTE:
                raise ReservedFieldError(name, field_name)
            if ID_FIELD in (info.alias, info.validation_alias, info.serialization_alias):
                raise ReservedFieldError(name, ID_FIELD)

        self.name = name
        self.model = model
        self.root = SchemaNode(model)
        self.paths: Mapping[str, SchemaNode] = MappingProxyType(flatten(self.root))
        self.top_level_fields: tuple[str, ...] = tuple(self.root.fields())
        self.has_optional_fields = any(node.accepts_absent() for node in self.paths.values())
        self.document_model: type[BaseModel] = create_model(
            f"{model.__name__}Document",
            __base__=model,
            id_=(Any, PydanticField(default=None, alias=ID_FIELD)),
        )

    def __repr__(self) -> str:
        return f"CollectionSchema({self.name!r}, {self.model.__name__}, paths={len(self.paths)})"

    def node_at(self, path: str) -> SchemaNode:
        try:
            return self.paths[path]
        except KeyError:
            raise UnknownPathError(self.name, path) from None

    def has_path(self, path: str) -> bool:
        return path in self.paths

    def validate(self, document: Mapping[str, Any] | BaseModel) -> BaseModel:
        """Validate a full document for writing; the identity field is not accepted."""
        if isinstance(document, Mapping):
            if ID_FIELD in document:
                raise SchemaViolationError(
                    self.name, ID_FIELD, "the identity field is assigned by storage"
                )
            if self.has_optional_fields:
                document = remove_unset_values(document)
        try:
            return self.model.model_validate(document)
        except PydanticValidationError as exc:
            raise _violation(self.name, None, exc) from exc

    def to_document(self, document: Mapping[str, Any] | BaseModel) -> dict[str, Any]:
        stored = to_storage(self.validate(document))
        # parsed read-path documents carry the identity; writes never do
        stored.pop(ID_FIELD, None)
        return stored

    def validate_at(self, path: str, value: Any) -> Any:
        """Validate a value against the governing schema of ``path``."""
        node = self.node_at(path)
        try:
            return node.validate(value)
        except ValueError as exc:
            raise _violation(self.name, path, exc) from exc

    def parse_document(self, raw: Mapping[str, Any]) -> BaseModel:
        """Parse a stored document, identity included."""
        try:
            return self.document_model.model_validate(raw)
        except PydanticValidationError as exc:
            raise _violation(self.name, None, exc) from exc

    def parse_snapshot(self, raw: Mapping[str, Any]) -> BaseModel:
        """Parse a stored document against the declared schema, identity excluded."""
        body = {key: value for key, value in raw.items() if key != ID_FIELD}
        try:
            return self.model.model_validate(body)
        except PydanticValidationError as exc:
            raise _violation(self.name, None, exc) from exc

    def describe_paths(self) -> list[dict[str, Any]]:
        return [
            {
                "path": path,
                "kind": node.unwrap().core.kind.value,
                "optional": node.accepts_absent(),
                "type": node.describe(),
            }
            for path, node in self.paths.items()
        ]
