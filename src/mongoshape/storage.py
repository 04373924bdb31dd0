"""Storage capability used by the database facade, and the PyMongo async implementation."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar, runtime_checkable

from pymongo import AsyncMongoClient, ReturnDocument

from mongoshape.config import MongoShapeConfig
from mongoshape.patch import SetUnsetPatch

logger = logging.getLogger(__name__)

T = TypeVar("T")

Filter = Mapping[str, Any]
SortSpec = Sequence[tuple[str, int]]

# Server error code for a transaction attempted outside a replica set or mongos.
ILLEGAL_OPERATION = 20
REPLICA_SET_REQUIRED = "Transaction numbers are only allowed on a replica set member or mongos"


@dataclass(frozen=True)
class InsertResult:
    inserted_ids: list[Any] = field(default_factory=list)
    acknowledged: bool = True


@dataclass(frozen=True)
class UpdateResult:
    matched_count: int = 0
    modified_count: int = 0
    upserted_id: Any = None
    acknowledged: bool = True

    @property
    def upserted_count(self) -> int:
        return 0 if self.upserted_id is None else 1


@dataclass(frozen=True)
class DeleteResult:
    deleted_count: int = 0
    acknowledged: bool = True


@runtime_checkable
class DocumentStore(Protocol):
    """Minimum surface of a document database the core calls through."""

    async def insert_one(
        self, collection: str, document: dict[str, Any], *, session: Any = None
    ) -> InsertResult: ...

    async def insert_many(
        self, collection: str, documents: list[dict[str, Any]], *, session: Any = None
    ) -> InsertResult: ...

    async def find_one(
        self,
        collection: str,
        filter: Filter,
        *,
        sort: SortSpec | None = None,
        session: Any = None,
    ) -> dict[str, Any] | None: ...

    async def find(
        self,
        collection: str,
        filter: Filter,
        *,
        projection: Mapping[str, Any] | None = None,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int = 0,
        session: Any = None,
    ) -> list[dict[str, Any]]: ...

    async def update_one(
        self,
        collection: str,
        filter: Filter,
        patch: SetUnsetPatch,
        *,
        upsert: bool = False,
        session: Any = None,
    ) -> UpdateResult: ...

    async def update_many(
        self,
        collection: str,
        filter: Filter,
        patch: SetUnsetPatch,
        *,
        upsert: bool = False,
        session: Any = None,
    ) -> UpdateResult: ...

    async def find_one_and_update(
        self,
        collection: str,
        filter: Filter,
        patch: SetUnsetPatch,
        *,
        upsert: bool = False,
        return_updated: bool = False,
        sort: SortSpec | None = None,
        session: Any = None,
    ) -> dict[str, Any] | None: ...

    async def delete_one(
        self, collection: str, filter: Filter, *, session: Any = None
    ) -> DeleteResult: ...

    async def delete_many(
        self, collection: str, filter: Filter, *, session: Any = None
    ) -> DeleteResult: ...

    async def create_index(
        self, collection: str, keys: list[tuple[str, int]], **options: Any
    ) -> str: ...

    async def list_collections(self) -> list[dict[str, Any]]: ...

    async def with_transaction(self, callback: Callable[[Any], Awaitable[T]]) -> T:
        """Run ``callback(session)`` inside a transaction; commit, or roll back on error."""
        ...

    async def close(self) -> None: ...


class MongoDocumentStore:
    """DocumentStore over a pooled PyMongo async client for one database."""

    def __init__(
        self,
        uri: str,
        database: str,
        *,
        min_pool_size: int = 6,
        max_pool_size: int = 10,
        client_options: Mapping[str, Any] | None = None,
        client: AsyncMongoClient | None = None,
    ) -> None:
        options: dict[str, Any] = {
            "minPoolSize": min_pool_size,
            "maxPoolSize": max_pool_size,
            "uuidRepresentation": "standard",
        }
        if client_options:
            options.update(client_options)
        self._client = client or AsyncMongoClient(uri, **options)
        self._db = self._client[database]
        self.database = database

    def _collection(self, name: str) -> Any:
        return self._db[name]

    async def insert_one(
        self, collection: str, document: dict[str, Any], *, session: Any = None
    ) -> InsertResult:
        result = await self._collection(collection).insert_one(document, session=session)
        return InsertResult([result.inserted_id], result.acknowledged)

    async def insert_many(
        self, collection: str, documents: list[dict[str, Any]], *, session: Any = None
    ) -> InsertResult:
        result = await self._collection(collection).insert_many(documents, session=session)
        return InsertResult(list(result.inserted_ids), result.acknowledged)

    async def find_one(
        self,
        collection: str,
        filter: Filter,
        *,
        sort: SortSpec | None = None,
        session: Any = None,
    ) -> dict[str, Any] | None:
        return await self._collection(collection).find_one(
            dict(filter), sort=list(sort) if sort else None, session=session
        )

    async def find(
        self,
        collection: str,
        filter: Filter,
        *,
        projection: Mapping[str, Any] | None = None,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int = 0,
        session: Any = None,
    ) -> list[dict[str, Any]]:
        cursor = self._collection(collection).find(
            dict(filter),
            projection=dict(projection) if projection else None,
            sort=list(sort) if sort else None,
            skip=skip,
            limit=limit,
            session=session,
        )
        return await cursor.to_list(length=None)

    async def update_one(
        self,
        collection: str,
        filter: Filter,
        patch: SetUnsetPatch,
        *,
        upsert: bool = False,
        session: Any = None,
    ) -> UpdateResult:
        return await self._update(collection, filter, patch, upsert, session, many=False)

    async def update_many(
        self,
        collection: str,
        filter: Filter,
        patch: SetUnsetPatch,
        *,
        upsert: bool = False,
        session: Any = None,
    ) -> UpdateResult:
        return await self._update(collection, filter, patch, upsert, session, many=True)

    async def _update(
        self,
        collection: str,
        filter: Filter,
        patch: SetUnsetPatch,
        upsert: bool,
        session: Any,
        *,
        many: bool,
    ) -> UpdateResult:
        coll = self._collection(collection)
        update = patch.to_update_document()
        if not update:
            # MongoDB rejects an empty update document
            matched = await coll.count_documents(
                dict(filter), session=session, **({} if many else {"limit": 1})
            )
            return UpdateResult(matched_count=matched)
        method = coll.update_many if many else coll.update_one
        result = await method(dict(filter), update, upsert=upsert, session=session)
        return UpdateResult(
            matched_count=result.matched_count,
            modified_count=result.modified_count,
            upserted_id=result.upserted_id,
            acknowledged=result.acknowledged,
        )

    async def find_one_and_update(
        self,
        collection: str,
        filter: Filter,
        patch: SetUnsetPatch,
        *,
        upsert: bool = False,
        return_updated: bool = False,
        sort: SortSpec | None = None,
        session: Any = None,
    ) -> dict[str, Any] | None:
        update = patch.to_update_document()
        if not update:
            return await self.find_one(collection, filter, sort=sort, session=session)
        return await self._collection(collection).find_one_and_update(
            dict(filter),
            update,
            upsert=upsert,
            sort=list(sort) if sort else None,
            return_document=ReturnDocument.AFTER if return_updated else ReturnDocument.BEFORE,
            session=session,
        )

    async def delete_one(
        self, collection: str, filter: Filter, *, session: Any = None
    ) -> DeleteResult:
        result = await self._collection(collection).delete_one(dict(filter), session=session)
        return DeleteResult(result.deleted_count, result.acknowledged)

    async def delete_many(
        self, collection: str, filter: Filter, *, session: Any = None
    ) -> DeleteResult:
        result = await self._collection(collection).delete_many(dict(filter), session=session)
        return DeleteResult(result.deleted_count, result.acknowledged)

    async def create_index(
        self, collection: str, keys: list[tuple[str, int]], **options: Any
    ) -> str:
        return await self._collection(collection).create_index(keys, **options)

    async def list_collections(self) -> list[dict[str, Any]]:
        cursor = await self._db.list_collections()
        return await cursor.to_list(length=None)

    async def with_transaction(self, callback: Callable[[Any], Awaitable[T]]) -> T:
        async with self._client.start_session() as session:
            return await session.with_transaction(callback)

    async def close(self) -> None:
        await self._client.close()


def open_store(config: MongoShapeConfig, database: str) -> MongoDocumentStore:
    """Open a MongoDB store using pool settings from config."""
    logger.debug("Opening MongoDB store for database '%s'", database)
    return MongoDocumentStore(
        config.mongo_uri,
        database,
        min_pool_size=config.min_pool_size,
        max_pool_size=config.max_pool_size,
    )
