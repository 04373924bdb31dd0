"""Database facade: schema-checked collection operations over a DocumentStore."""

from __future__ import annotations

import datetime
import logging
from collections.abc import Mapping, Sequence
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel

from mongoshape import backup
from mongoshape.config import MongoShapeConfig
from mongoshape.errors import SchemaViolationError, UnknownCollectionError
from mongoshape.log import WarningRegistry
from mongoshape.patch import SetUnsetPatch, split_set_unset
from mongoshape.registry import ID_FIELD, CollectionSchema
from mongoshape.schema import SchemaNode
from mongoshape.storage import (
    DeleteResult,
    DocumentStore,
    InsertResult,
    SortSpec,
    UpdateResult,
    open_store,
)
from mongoshape.transform import (
    TransactionSupport,
    TransformEngine,
    TransformFn,
    TransformManyResult,
    TransformOptions,
    TransformResult,
    Transforms,
)
from mongoshape.verify import PathVerifier, VerifyMode

logger = logging.getLogger(__name__)

IndexKeys = Mapping[str, int] | Sequence[tuple[str, int]]


def _index_keys(keys: IndexKeys) -> list[tuple[str, int]]:
    if isinstance(keys, Mapping):
        return list(keys.items())
    return [(path, direction) for path, direction in keys]


class Database:
    """Typed access to one MongoDB database.

    Each collection is declared with a pydantic model. Queries, updates,
    index keys and transform paths are checked against the model's
    flattened path map before anything reaches storage.

    Example::

        async with Database("shop", {"people": Person}) as db:
            await db.insert_one("people", Person(name="Ada", cars=[]))
            ada = await db.find_one("people", {"name": "Ada"})
    """

    def __init__(
        self,
        name: str,
        schemas: Mapping[str, type[BaseModel]],
        *,
        store: DocumentStore | None = None,
        config: MongoShapeConfig | None = None,
        indexes: Mapping[str, Sequence[IndexKeys]] | None = None,
    ) -> None:
        self.name = name
        self.config = config or MongoShapeConfig()
        self._schemas: dict[str, CollectionSchema] = {
            collection: CollectionSchema(collection, model) for collection, model in schemas.items()
        }
        self._indexes = {collection: list(specs) for collection, specs in (indexes or {}).items()}
        for collection in self._indexes:
            self.schema(collection)

        self.warnings = WarningRegistry(logger)
        self._verifier = PathVerifier(self.warnings)
        self._store = store if store is not None else open_store(self.config, name)
        self._engine = TransformEngine(self._store, self._verifier, self.config)
        logger.debug(
            "Database '%s' ready with collections %s", name, ", ".join(self._schemas) or "(none)"
        )

    async def __aenter__(self) -> Database:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def initialize(self) -> None:
        """Create the indexes declared at construction. Failures are logged, not raised."""
        for collection, specs in self._indexes.items():
            await self.create_indexes(collection, specs)

    async def close(self) -> None:
        await self._store.close()

    @property
    def store(self) -> DocumentStore:
        return self._store

    @property
    def collections(self) -> tuple[str, ...]:
        return tuple(self._schemas)

    @property
    def paths(self) -> Mapping[str, Mapping[str, SchemaNode]]:
        """Read-only flattened path map of every collection."""
        return MappingProxyType({name: schema.paths for name, schema in self._schemas.items()})

    @property
    def transaction_support(self) -> TransactionSupport:
        return self._engine.support

    def schema(self, collection: str) -> CollectionSchema:
        try:
            return self._schemas[collection]
        except KeyError:
            raise UnknownCollectionError(collection) from None

    def _query(self, schema: CollectionSchema, query: Mapping[str, Any] | None) -> dict[str, Any]:
        return self._verifier.verify(schema, query or {}, VerifyMode.QUERY)

    def _sort(self, schema: CollectionSchema, sort: SortSpec | None) -> SortSpec | None:
        if sort:
            self._verifier.verify_paths(schema, [path for path, _ in sort if path != ID_FIELD])
        return sort

    # -- inserts and reads ----------------------------------------------------

    async def insert_one(
        self, collection: str, document: Mapping[str, Any] | BaseModel
    ) -> InsertResult:
        schema = self.schema(collection)
        return await self._store.insert_one(collection, schema.to_document(document))

    async def insert_many(
        self, collection: str, documents: Sequence[Mapping[str, Any] | BaseModel]
    ) -> InsertResult:
        schema = self.schema(collection)
        prepared = [schema.to_document(document) for document in documents]
        if not prepared:
            return InsertResult()
        return await self._store.insert_many(collection, prepared)

    async def find_one(
        self,
        collection: str,
        query: Mapping[str, Any] | None = None,
        *,
        sort: SortSpec | None = None,
    ) -> BaseModel | None:
        schema = self.schema(collection)
        verified = self._query(schema, query)
        raw = await self._store.find_one(collection, verified, sort=self._sort(schema, sort))
        return None if raw is None else schema.parse_document(raw)

    async def find_many(
        self,
        collection: str,
        query: Mapping[str, Any] | None = None,
        *,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int = 0,
    ) -> list[BaseModel]:
        schema = self.schema(collection)
        verified = self._query(schema, query)
        found = await self._store.find(
            collection, verified, sort=self._sort(schema, sort), skip=skip, limit=limit
        )
        return [schema.parse_document(raw) for raw in found]

    # -- updates and deletes --------------------------------------------------

    def _patch(
        self, schema: CollectionSchema, update: Mapping[str, Any], upsert: bool
    ) -> SetUnsetPatch:
        patch = split_set_unset(update)
        if upsert:
            if patch.unset:
                raise SchemaViolationError(
                    schema.name, None, "an upsert must assign a complete document without removals"
                )
            schema.validate({key: value for key, value in update.items() if key != ID_FIELD})
        return self._verifier.verify_patch(schema, patch)

    async def update_one(
        self,
        collection: str,
        query: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        upsert: bool = False,
    ) -> UpdateResult:
        """Apply a sparse update to the first matching document.

        Nested mappings become dotted ``$set`` paths and UNSET leaves become
        ``$unset``. With ``upsert=True`` the update must be a complete valid
        document.
        """
        schema = self.schema(collection)
        verified = self._query(schema, query)
        patch = self._patch(schema, update, upsert)
        return await self._store.update_one(collection, verified, patch, upsert=upsert)

    async def update_many(
        self,
        collection: str,
        query: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        upsert: bool = False,
    ) -> UpdateResult:
        schema = self.schema(collection)
        verified = self._query(schema, query)
        patch = self._patch(schema, update, upsert)
        return await self._store.update_many(collection, verified, patch, upsert=upsert)

    async def find_one_and_update(
        self,
        collection: str,
        query: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        upsert: bool = False,
        return_updated: bool = False,
        sort: SortSpec | None = None,
    ) -> BaseModel | None:
        """Atomically update the first matching document and return it.

        The document comes back as it was before the update unless
        ``return_updated`` is set. Returns None when nothing matched, and also
        after an upsert that inserted unless ``return_updated`` is set.
        """
        schema = self.schema(collection)
        verified = self._query(schema, query)
        patch = self._patch(schema, update, upsert)
        raw = await self._store.find_one_and_update(
            collection,
            verified,
            patch,
            upsert=upsert,
            return_updated=return_updated,
            sort=self._sort(schema, sort),
        )
        return None if raw is None else schema.parse_document(raw)

    async def delete_one(self, collection: str, query: Mapping[str, Any]) -> DeleteResult:
        schema = self.schema(collection)
        return await self._store.delete_one(collection, self._query(schema, query))

    async def delete_many(self, collection: str, query: Mapping[str, Any]) -> DeleteResult:
        schema = self.schema(collection)
        return await self._store.delete_many(collection, self._query(schema, query))

    # -- transforms -----------------------------------------------------------

    def _transform_options(self, options: TransformOptions | None) -> TransformOptions:
        return options or TransformOptions(max_retries=self.config.transform_max_retries)

    async def transform_one(
        self,
        collection: str,
        query: Mapping[str, Any],
        transforms: Transforms | TransformFn,
        options: TransformOptions | None = None,
    ) -> TransformResult | None:
        """Read, transform, revalidate and write back one document.

        ``transforms`` is a PathTransform, a list of them, a ``{path: fn}``
        mapping, or a callable applied to the whole document. Returns None
        when no document matches.
        """
        return await self._engine.transform_one(
            self.schema(collection), query, transforms, self._transform_options(options)
        )

    async def transform_many(
        self,
        collection: str,
        query: Mapping[str, Any],
        transforms: Transforms | TransformFn,
        options: TransformOptions | None = None,
    ) -> TransformManyResult:
        return await self._engine.transform_many(
            self.schema(collection), query, transforms, self._transform_options(options)
        )

    # -- indexes --------------------------------------------------------------

    async def create_index(self, collection: str, keys: IndexKeys, **options: Any) -> str:
        """Create an index whose key paths must all exist in the collection's path map."""
        schema = self.schema(collection)
        key_list = _index_keys(keys)
        self._verifier.verify_paths(schema, [path for path, _ in key_list if path != ID_FIELD])
        name = await self._store.create_index(collection, key_list, **options)
        logger.debug("Created index %s on collection '%s'", name, collection)
        return name

    async def create_indexes(
        self, collection: str, specs: Sequence[IndexKeys], **options: Any
    ) -> bool:
        """Create several indexes, logging the first failure and returning False."""
        for keys in specs:
            try:
                await self.create_index(collection, keys, **options)
            except Exception as e:  # noqa: BLE001
                logger.error(
                    "Error creating index %s for collection '%s': %s",
                    _index_keys(keys),
                    collection,
                    e,
                )
                return False
        return True

    # -- maintenance ----------------------------------------------------------

    def _timestamp_query(
        self, schema: CollectionSchema, timestamp_path: str, older_than: datetime.datetime
    ) -> dict[str, Any]:
        try:
            schema.validate_at(timestamp_path, datetime.datetime.now(datetime.timezone.utc))
        except SchemaViolationError as e:
            raise SchemaViolationError(
                schema.name, timestamp_path, "values at this path are not datetimes", e.errors
            ) from e
        return {timestamp_path: {"$lt": older_than}}

    async def delete_old_documents(
        self, collection: str, timestamp_path: str, older_than: datetime.datetime
    ) -> DeleteResult:
        schema = self.schema(collection)
        query = self._timestamp_query(schema, timestamp_path, older_than)
        result = await self._store.delete_many(collection, query)
        logger.debug(
            "Cleared %d old documents from collection '%s'", result.deleted_count, collection
        )
        return result

    async def find_old_documents(
        self,
        collection: str,
        timestamp_path: str,
        older_than: datetime.datetime,
        *,
        sort: SortSpec | None = None,
        limit: int = 0,
    ) -> list[BaseModel]:
        schema = self.schema(collection)
        query = self._timestamp_query(schema, timestamp_path, older_than)
        found = await self._store.find(
            collection, query, sort=self._sort(schema, sort), limit=limit
        )
        return [schema.parse_document(raw) for raw in found]

    async def list_collection_infos(self) -> list[dict[str, Any]]:
        return await self._store.list_collections()

    async def backup_collection(
        self, collection: str, max_backups: int = 10, *, compressed: bool = False
    ) -> bool:
        self.schema(collection)
        return await backup.backup_collection(
            self.config.mongo_uri,
            self.name,
            collection,
            self.config.backup_dir,
            max_backups=max_backups,
            compressed=compressed,
        )
