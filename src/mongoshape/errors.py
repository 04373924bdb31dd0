"""Structured error types for mongoshape."""

from __future__ import annotations

from typing import Any


class MongoShapeError(Exception):
    """Base error for all mongoshape errors."""


class ConfigError(MongoShapeError):
    """Raised when configuration values are missing or malformed."""


class UnknownCollectionError(MongoShapeError):
    """Raised when an operation names a collection with no registered schema."""

    def __init__(self, collection: str) -> None:
        self.collection = collection
        super().__init__(f"No schema registered for collection '{collection}'")


class UnknownPathError(MongoShapeError):
    """Raised when a query/update/index/transform path is absent from the path map."""

    def __init__(self, collection: str, path: str) -> None:
        self.collection = collection
        self.path = path
        super().__init__(f"Invalid path '{path}' in collection '{collection}'")


class SchemaViolationError(MongoShapeError):
    """Raised when a value fails validation against its governing schema."""

    def __init__(
        self,
        collection: str,
        path: str | None,
        detail: str,
        errors: list[dict[str, Any]] | None = None,
    ) -> None:
        self.collection = collection
        self.path = path
        self.detail = detail
        self.errors = errors or []
        where = f"path '{path}'" if path else "document"
        super().__init__(f"Schema violation at {where} in collection '{collection}': {detail}")


class SchemaDefinitionError(MongoShapeError):
    """Raised at registration time when a collection schema cannot be used."""


class ReservedFieldError(SchemaDefinitionError):
    """Raised when a schema declares a field that collides with a reserved name."""

    def __init__(self, collection: str, field_name: str) -> None:
        self.collection = collection
        self.field_name = field_name
        super().__init__(
            f"Schema for collection '{collection}' declares reserved field '{field_name}'. "
            "The identity field is assigned by storage and must not be declared."
        )


class UnsupportedSchemaConstructError(SchemaDefinitionError):
    """Raised when flattening meets a type the path engine cannot represent."""

    def __init__(self, path: str, construct: str) -> None:
        self.path = path
        self.construct = construct
        where = f"'{path}'" if path else "the schema root"
        super().__init__(f"Unsupported schema construct {construct} at {where}")


class ConcurrentModificationError(MongoShapeError):
    """Raised when optimistic transform retries are exhausted."""

    def __init__(
        self,
        collection: str,
        document_id: Any,
        attempts: int,
        message: str | None = None,
    ) -> None:
        self.collection = collection
        self.document_id = document_id
        self.attempts = attempts
        super().__init__(
            message
            or f"Document {document_id!r} in collection '{collection}' was modified "
            f"concurrently; gave up after {attempts} attempt(s)"
        )


class DocumentVanishedError(ConcurrentModificationError):
    """Raised when a document disappears between locate and commit of a transform."""

    def __init__(self, collection: str, document_id: Any) -> None:
        super().__init__(
            collection,
            document_id,
            1,
            f"Document {document_id!r} in collection '{collection}' was removed "
            "before the transform could commit",
        )
