"""mongoshape: typed validation and dotted-path addressing for MongoDB collections."""

__version__ = "0.1.0"

from mongoshape.config import MongoShapeConfig, load_config
from mongoshape.database import Database
from mongoshape.errors import (
    ConcurrentModificationError,
    ConfigError,
    DocumentVanishedError,
    MongoShapeError,
    ReservedFieldError,
    SchemaDefinitionError,
    SchemaViolationError,
    UnknownCollectionError,
    UnknownPathError,
    UnsupportedSchemaConstructError,
)
from mongoshape.log import configure_logging
from mongoshape.patch import SetUnsetPatch, split_set_unset
from mongoshape.paths import flatten
from mongoshape.registry import CollectionSchema
from mongoshape.schema import UNSET, SchemaKind, SchemaNode
from mongoshape.storage import DocumentStore, MongoDocumentStore
from mongoshape.storage_memory import MemoryDocumentStore
from mongoshape.transform import (
    PathTransform,
    TransactionSupport,
    TransformManyResult,
    TransformOptions,
    TransformResult,
    whole_document,
)

__all__ = [
    "__version__",
    "Database",
    "CollectionSchema",
    "SchemaNode",
    "SchemaKind",
    "UNSET",
    "flatten",
    "split_set_unset",
    "SetUnsetPatch",
    "PathTransform",
    "whole_document",
    "TransformOptions",
    "TransformResult",
    "TransformManyResult",
    "TransactionSupport",
    "DocumentStore",
    "MongoDocumentStore",
    "MemoryDocumentStore",
    "MongoShapeConfig",
    "load_config",
    "configure_logging",
    "MongoShapeError",
    "ConfigError",
    "UnknownCollectionError",
    "UnknownPathError",
    "SchemaViolationError",
    "SchemaDefinitionError",
    "ReservedFieldError",
    "UnsupportedSchemaConstructError",
    "ConcurrentModificationError",
    "DocumentVanishedError",
]
