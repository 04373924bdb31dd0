"""Structural introspection of pydantic/typing annotations for the path engine.

A ``SchemaNode`` wraps one annotation (a pydantic model, a ``TypedDict``, a
container generic, a union, ...) together with the two wrapper flags that
are not expressed in the annotation itself: whether the value may be absent
(a pydantic field with a default, a ``NotRequired`` key) and whether ``None``
is additionally accepted (carried onto union branches during flattening).

Everything downstream asks the node for its ``kind`` and uses the
shape-specific accessors instead of inspecting annotations directly.
"""

from __future__ import annotations

import collections.abc
import datetime
import enum
import types
import typing
import uuid
from dataclasses import dataclass, replace
from functools import cached_property
from typing import Annotated, Any, Literal, NamedTuple, Union, get_args, get_origin

from bson import ObjectId
from pydantic import BaseModel, TypeAdapter
from pydantic import Field as PydanticField
from pydantic.fields import FieldInfo


class _Unset:
    """Marker for "remove this field" in sparse updates and transform output."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> _Unset:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> _Unset:
        return self

    def __reduce__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


class SchemaKind(str, enum.Enum):
    OBJECT = "object"
    ARRAY = "array"
    TUPLE = "tuple"
    UNION = "union"
    OPTIONAL = "optional"
    NULLABLE = "nullable"
    REFINED = "refined"
    SCALAR = "scalar"
    UNSUPPORTED = "unsupported"


WRAPPER_KINDS = frozenset({SchemaKind.OPTIONAL, SchemaKind.NULLABLE, SchemaKind.REFINED})

_NONE_TYPE = type(None)

_SCALAR_TYPES: tuple[type, ...] = (
    str,
    int,
    float,
    bool,
    bytes,
    datetime.datetime,
    datetime.date,
    uuid.UUID,
    ObjectId,
)

_ARRAY_ORIGINS = frozenset({list, collections.abc.Sequence, collections.abc.MutableSequence})

_UNSUPPORTED_ORIGINS = frozenset(
    {
        dict,
        set,
        frozenset,
        collections.abc.Mapping,
        collections.abc.MutableMapping,
        collections.abc.Set,
        collections.abc.MutableSet,
        collections.abc.Callable,
    }
)

_TYPED_DICT_QUALIFIERS = tuple(
    getattr(typing, name) for name in ("Required", "NotRequired", "ReadOnly") if hasattr(typing, name)
)


def _is_union(origin: Any) -> bool:
    return origin is Union or origin is types.UnionType


def _is_model(annotation: Any) -> bool:
    return isinstance(annotation, type) and issubclass(annotation, BaseModel)


def is_typed_dict(annotation: Any) -> bool:
    """Check if annotation is a TypedDict class."""
    if not isinstance(annotation, type):
        return False
    return (
        hasattr(annotation, "__annotations__")
        and hasattr(annotation, "__required_keys__")
        and hasattr(annotation, "__optional_keys__")
    )


def _strip_qualifiers(annotation: Any) -> Any:
    while get_origin(annotation) in _TYPED_DICT_QUALIFIERS:
        annotation = get_args(annotation)[0]
    return annotation


def field_annotation(info: FieldInfo) -> Any:
    """Rebuild the full annotation of a pydantic field, constraints included."""
    metadata = list(info.metadata)
    if info.discriminator is not None:
        metadata.append(PydanticField(discriminator=info.discriminator))
    if metadata:
        return Annotated[(info.annotation, *metadata)]  # type: ignore[valid-type]
    return info.annotation


def classify(annotation: Any) -> SchemaKind:
    """Classify a bare annotation, ignoring the node-level wrapper flags."""
    origin = get_origin(annotation)
    if origin is Annotated:
        return SchemaKind.REFINED
    if _is_union(origin):
        if any(arg is _NONE_TYPE for arg in get_args(annotation)):
            return SchemaKind.NULLABLE
        return SchemaKind.UNION
    if annotation is Any or origin is Literal:
        return SchemaKind.SCALAR
    if origin in _ARRAY_ORIGINS:
        return SchemaKind.ARRAY
    if origin is tuple:
        args = get_args(annotation)
        if len(args) == 2 and args[1] is Ellipsis:
            return SchemaKind.ARRAY
        return SchemaKind.TUPLE
    if origin is not None:
        # dict/set/Callable and any other parametrised generic
        return SchemaKind.UNSUPPORTED
    if _is_model(annotation) or is_typed_dict(annotation):
        return SchemaKind.OBJECT
    if isinstance(annotation, type):
        if issubclass(annotation, enum.Enum) or issubclass(annotation, _SCALAR_TYPES):
            return SchemaKind.SCALAR
        if annotation in (list, tuple):
            return SchemaKind.ARRAY
        if annotation in _UNSUPPORTED_ORIGINS or annotation is _NONE_TYPE:
            return SchemaKind.UNSUPPORTED
        if hasattr(annotation, "__get_pydantic_core_schema__"):
            return SchemaKind.SCALAR
    return SchemaKind.UNSUPPORTED


def type_name(annotation: Any) -> str:
    if annotation is Any:
        return "Any"
    if isinstance(annotation, type) and get_origin(annotation) is None:
        return annotation.__name__
    return repr(annotation).replace("typing.", "")


class Unwrapped(NamedTuple):
    core: SchemaNode
    required: bool
    nullable: bool


@dataclass(frozen=True)
class SchemaNode:
    """The governing schema for values at one path."""

    annotation: Any
    required: bool = True
    nullable: bool = False
    alternatives: tuple[SchemaNode, ...] = ()

    @property
    def kind(self) -> SchemaKind:
        if self.alternatives:
            return SchemaKind.UNION
        if not self.required:
            return SchemaKind.OPTIONAL
        if self.nullable:
            return SchemaKind.NULLABLE
        return classify(self.annotation)

    def inner_type(self) -> SchemaNode:
        """Peel exactly one wrapper layer (optional, nullable or refinement)."""
        kind = self.kind
        if kind is SchemaKind.OPTIONAL:
            return replace(self, required=True)
        if kind is SchemaKind.NULLABLE:
            if self.nullable:
                return replace(self, nullable=False)
            members = [a for a in get_args(self.annotation) if a is not _NONE_TYPE]
            inner = members[0] if len(members) == 1 else Union[tuple(members)]  # noqa: UP007
            return SchemaNode(inner)
        if kind is SchemaKind.REFINED:
            return SchemaNode(get_args(self.annotation)[0])
        raise TypeError(f"{self.describe()} is not a wrapper type")

    def unwrap(self) -> Unwrapped:
        """Peel every wrapper layer, remembering whether any allowed absence or None."""
        node = self
        required = True
        nullable = False
        while node.kind in WRAPPER_KINDS:
            if node.kind is SchemaKind.OPTIONAL:
                required = False
            elif node.kind is SchemaKind.NULLABLE:
                nullable = True
            node = node.inner_type()
        return Unwrapped(node, required, nullable)

    def with_wrappers(self, *, required: bool, nullable: bool) -> SchemaNode:
        return replace(
            self,
            required=self.required and required,
            nullable=self.nullable or nullable,
        )

    def fields(self) -> dict[str, SchemaNode]:
        """Child nodes of an object, keyed by their storage (alias) name."""
        ann = self.annotation
        if _is_model(ann):
            return {
                info.alias or name: SchemaNode(field_annotation(info), required=info.is_required())
                for name, info in ann.model_fields.items()
            }
        if is_typed_dict(ann):
            hints = typing.get_type_hints(ann, include_extras=True)
            required_keys = ann.__required_keys__
            return {
                name: SchemaNode(_strip_qualifiers(hint), required=name in required_keys)
                for name, hint in hints.items()
            }
        raise TypeError(f"{self.describe()} is not an object type")

    def element_type(self) -> SchemaNode:
        if self.kind is not SchemaKind.ARRAY:
            raise TypeError(f"{self.describe()} is not an array type")
        args = get_args(self.annotation)
        return SchemaNode(args[0] if args else Any)

    def items(self) -> list[SchemaNode]:
        if self.kind is not SchemaKind.TUPLE:
            raise TypeError(f"{self.describe()} is not a tuple type")
        return [SchemaNode(arg) for arg in get_args(self.annotation)]

    def branches(self) -> list[SchemaNode]:
        if self.alternatives:
            return list(self.alternatives)
        if self.kind is not SchemaKind.UNION:
            raise TypeError(f"{self.describe()} is not a union type")
        return [SchemaNode(arg) for arg in get_args(self.annotation)]

    def accepts_absent(self) -> bool:
        if self.alternatives:
            return any(alt.accepts_absent() for alt in self.alternatives)
        return not self.required

    @cached_property
    def _adapter(self) -> TypeAdapter[Any]:
        return TypeAdapter(self.annotation)

    def validate(self, value: Any) -> Any:
        """Validate a concrete value, returning the parsed form.

        Raises ``ValueError`` (pydantic's ``ValidationError`` for plain nodes).
        """
        if self.alternatives:
            failures: list[str] = []
            for alt in self.alternatives:
                try:
                    return alt.validate(value)
                except ValueError as exc:
                    failures.append(f"{alt.describe()}: {exc}")
            raise ValueError(
                f"value matches none of {len(self.alternatives)} alternatives; "
                + "; ".join(failures)
            )
        if value is None and self.nullable:
            return None
        return self._adapter.validate_python(value)

    def describe(self) -> str:
        if self.alternatives:
            return " | ".join(alt.describe() for alt in self.alternatives)
        text = type_name(self.annotation)
        if self.nullable:
            text = f"{text} | None"
        return text
