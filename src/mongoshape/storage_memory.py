"""In-process DocumentStore with MongoDB-like filter and update semantics."""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from bson import ObjectId
from pymongo.errors import DuplicateKeyError, OperationFailure

from mongoshape.patch import SetUnsetPatch, apply_patch
from mongoshape.registry import ID_FIELD
from mongoshape.storage import (
    ILLEGAL_OPERATION,
    REPLICA_SET_REQUIRED,
    DeleteResult,
    Filter,
    InsertResult,
    SortSpec,
    UpdateResult,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def resolve_values(document: Any, path: str) -> list[Any]:
    """Candidate values at a dotted path, fanning out through arrays like MongoDB."""
    current: list[Any] = [document]
    for segment in path.split("."):
        following: list[Any] = []
        for value in current:
            if isinstance(value, dict):
                if segment in value:
                    following.append(value[segment])
            elif isinstance(value, list):
                if segment.isdigit():
                    index = int(segment)
                    if index < len(value):
                        following.append(value[index])
                else:
                    following.extend(
                        item[segment]
                        for item in value
                        if isinstance(item, dict) and segment in item
                    )
        current = following
    candidates: list[Any] = []
    for value in current:
        candidates.append(value)
        if isinstance(value, list):
            candidates.extend(value)
    return candidates


def _compare(op: str, candidate: Any, operand: Any) -> bool:
    try:
        if op == "$gt":
            return candidate > operand
        if op == "$gte":
            return candidate >= operand
        if op == "$lt":
            return candidate < operand
        if op == "$lte":
            return candidate <= operand
    except TypeError:
        return False
    raise ValueError(f"Unsupported comparison operator {op}")


def _equals(candidates: list[Any], operand: Any) -> bool:
    if operand is None and not candidates:
        return True
    return any(candidate == operand for candidate in candidates)


def _matches_condition(candidates: list[Any], condition: Any) -> bool:
    if not (isinstance(condition, Mapping) and condition and all(
        key.startswith("$") for key in condition
    )):
        return _equals(candidates, condition)
    for op, operand in condition.items():
        if op == "$eq":
            ok = _equals(candidates, operand)
        elif op == "$ne":
            ok = not _equals(candidates, operand)
        elif op == "$in":
            ok = any(_equals(candidates, item) for item in operand)
        elif op == "$nin":
            ok = not any(_equals(candidates, item) for item in operand)
        elif op == "$exists":
            ok = bool(candidates) == bool(operand)
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            ok = any(_compare(op, candidate, operand) for candidate in candidates)
        else:
            raise OperationFailure(f"unknown operator: {op}", code=2)
        if not ok:
            return False
    return True


def matches(document: dict[str, Any], query: Filter) -> bool:
    """Evaluate a MongoDB-style filter against one document."""
    for key, condition in query.items():
        if key == "$and":
            if not all(matches(document, clause) for clause in condition):
                return False
        elif key == "$or":
            if not any(matches(document, clause) for clause in condition):
                return False
        elif key == "$nor":
            if any(matches(document, clause) for clause in condition):
                return False
        elif key.startswith("$"):
            raise OperationFailure(f"unknown top level operator: {key}", code=2)
        elif not _matches_condition(resolve_values(document, key), condition):
            return False
    return True


def _sort_key(path: str) -> Callable[[dict[str, Any]], Any]:
    def key(document: dict[str, Any]) -> Any:
        values = resolve_values(document, path)
        value = values[0] if values else None
        return (value is not None, value)

    return key


class _MemorySession:
    def __init__(self, store: MemoryDocumentStore) -> None:
        self.store = store
        self.in_transaction = False
        # (collection, _id) -> document before this session first wrote it, None if absent
        self.undo: dict[tuple[str, Any], dict[str, Any] | None] = {}


class MemoryDocumentStore:
    """DocumentStore kept in process memory.

    Every call yields to the event loop first, so concurrent tasks interleave
    at the same points they would against a real server. Transactions are
    serialised; when the callback raises, only the documents written through
    its session are restored. With ``supports_transactions=False`` starting a
    transaction fails the way it does on a standalone mongod.
    """

    def __init__(self, *, supports_transactions: bool = True, latency: float = 0.0) -> None:
        self.supports_transactions = supports_transactions
        self.latency = latency
        self._collections: dict[str, dict[Any, dict[str, Any]]] = {}
        self._indexes: dict[str, dict[str, dict[str, Any]]] = {}
        self._transaction_lock = asyncio.Lock()
        self.closed = False

    async def _yield(self) -> None:
        await asyncio.sleep(self.latency)

    def _docs(self, collection: str) -> dict[Any, dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    def _select(self, collection: str, query: Filter) -> list[dict[str, Any]]:
        return [doc for doc in self._docs(collection).values() if matches(doc, query)]

    def _touch(self, session: Any, collection: str, document_id: Any) -> None:
        if not isinstance(session, _MemorySession) or not session.in_transaction:
            return
        key = (collection, document_id)
        if key not in session.undo:
            current = self._docs(collection).get(document_id)
            session.undo[key] = copy.deepcopy(current) if current is not None else None

    def _store(self, collection: str, document: dict[str, Any], session: Any = None) -> Any:
        stored = copy.deepcopy(document)
        stored.setdefault(ID_FIELD, ObjectId())
        docs = self._docs(collection)
        if stored[ID_FIELD] in docs:
            raise DuplicateKeyError(f"duplicate key: {{ _id: {stored[ID_FIELD]!r} }}")
        self._touch(session, collection, stored[ID_FIELD])
        docs[stored[ID_FIELD]] = stored
        return stored[ID_FIELD]

    async def insert_one(
        self, collection: str, document: dict[str, Any], *, session: Any = None
    ) -> InsertResult:
        await self._yield()
        return InsertResult([self._store(collection, document, session)])

    async def insert_many(
        self, collection: str, documents: list[dict[str, Any]], *, session: Any = None
    ) -> InsertResult:
        await self._yield()
        return InsertResult(
            [self._store(collection, document, session) for document in documents]
        )

    async def find_one(
        self,
        collection: str,
        filter: Filter,
        *,
        sort: SortSpec | None = None,
        session: Any = None,
    ) -> dict[str, Any] | None:
        found = await self.find(collection, filter, sort=sort, limit=1, session=session)
        return found[0] if found else None

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
        await self._yield()
        found = self._sorted(self._select(collection, filter), sort)
        found = found[skip:]
        if limit:
            found = found[:limit]
        if projection:
            included = [key for key, flag in projection.items() if flag]
            found = [
                {
                    key: value
                    for key, value in doc.items()
                    if key == ID_FIELD or key in included
                }
                for doc in found
            ]
        return copy.deepcopy(found)

    @staticmethod
    def _sorted(found: list[dict[str, Any]], sort: SortSpec | None) -> list[dict[str, Any]]:
        for path, direction in reversed(list(sort or [])):
            found.sort(key=_sort_key(path), reverse=direction < 0)
        return found

    async def update_one(
        self,
        collection: str,
        filter: Filter,
        patch: SetUnsetPatch,
        *,
        upsert: bool = False,
        session: Any = None,
    ) -> UpdateResult:
        await self._yield()
        return self._update(collection, filter, patch, upsert, session, many=False)

    async def update_many(
        self,
        collection: str,
        filter: Filter,
        patch: SetUnsetPatch,
        *,
        upsert: bool = False,
        session: Any = None,
    ) -> UpdateResult:
        await self._yield()
        return self._update(collection, filter, patch, upsert, session, many=True)

    def _upsert(
        self, collection: str, filter: Filter, patch: SetUnsetPatch, session: Any
    ) -> Any:
        seed = {
            key: value
            for key, value in filter.items()
            if not key.startswith("$") and not isinstance(value, Mapping)
        }
        return self._store(collection, apply_patch(seed, patch), session)

    def _apply(
        self, collection: str, target: dict[str, Any], patch: SetUnsetPatch, session: Any
    ) -> bool:
        self._touch(session, collection, target[ID_FIELD])
        before = copy.deepcopy(target)
        apply_patch(target, copy.deepcopy(patch))
        return target != before

    def _update(
        self,
        collection: str,
        filter: Filter,
        patch: SetUnsetPatch,
        upsert: bool,
        session: Any,
        *,
        many: bool,
    ) -> UpdateResult:
        targets = self._select(collection, filter)
        if not many:
            targets = targets[:1]
        if not targets:
            if upsert and patch:
                return UpdateResult(upserted_id=self._upsert(collection, filter, patch, session))
            return UpdateResult()
        modified = sum(self._apply(collection, target, patch, session) for target in targets)
        return UpdateResult(matched_count=len(targets), modified_count=modified)

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
        await self._yield()
        targets = self._sorted(self._select(collection, filter), sort)
        if not targets:
            if not (upsert and patch):
                return None
            document_id = self._upsert(collection, filter, patch, session)
            if not return_updated:
                return None
            return copy.deepcopy(self._docs(collection)[document_id])
        target = targets[0]
        before = copy.deepcopy(target)
        self._apply(collection, target, patch, session)
        return copy.deepcopy(target) if return_updated else before

    async def delete_one(
        self, collection: str, filter: Filter, *, session: Any = None
    ) -> DeleteResult:
        await self._yield()
        return self._delete(collection, filter, session, many=False)

    async def delete_many(
        self, collection: str, filter: Filter, *, session: Any = None
    ) -> DeleteResult:
        await self._yield()
        return self._delete(collection, filter, session, many=True)

    def _delete(self, collection: str, filter: Filter, session: Any, *, many: bool) -> DeleteResult:
        targets = self._select(collection, filter)
        if not many:
            targets = targets[:1]
        docs = self._docs(collection)
        for target in targets:
            self._touch(session, collection, target[ID_FIELD])
            del docs[target[ID_FIELD]]
        return DeleteResult(len(targets))

    async def create_index(
        self, collection: str, keys: list[tuple[str, int]], **options: Any
    ) -> str:
        await self._yield()
        name = options.get("name") or "_".join(f"{path}_{direction}" for path, direction in keys)
        self._indexes.setdefault(collection, {})[name] = {"key": list(keys), **options}
        self._docs(collection)
        return name

    def indexes(self, collection: str) -> dict[str, dict[str, Any]]:
        return dict(self._indexes.get(collection, {}))

    async def list_collections(self) -> list[dict[str, Any]]:
        await self._yield()
        return [{"name": name, "type": "collection"} for name in self._collections]

    def _roll_back(self, session: _MemorySession) -> None:
        for (collection, document_id), original in session.undo.items():
            docs = self._docs(collection)
            if original is None:
                docs.pop(document_id, None)
            else:
                docs[document_id] = original
        logger.debug("Memory transaction rolled back %d document(s)", len(session.undo))

    async def with_transaction(self, callback: Callable[[Any], Awaitable[T]]) -> T:
        if not self.supports_transactions:
            await self._yield()
            raise OperationFailure(REPLICA_SET_REQUIRED, code=ILLEGAL_OPERATION)
        async with self._transaction_lock:
            session = _MemorySession(self)
            session.in_transaction = True
            try:
                return await callback(session)
            except BaseException:
                self._roll_back(session)
                raise
            finally:
                session.in_transaction = False

    async def close(self) -> None:
        self.closed = True
