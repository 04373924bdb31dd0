"""Read-modify-write transforms with transactional or optimistic commit."""

from __future__ import annotations

import asyncio
import copy
import enum
import logging
import random
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, NamedTuple

from pydantic import BaseModel
from pymongo.errors import OperationFailure

from mongoshape.config import MongoShapeConfig
from mongoshape.errors import ConcurrentModificationError, DocumentVanishedError
from mongoshape.patch import SetUnsetPatch, split_set_unset
from mongoshape.paths import ancestor_paths, assign_path, get_path, join_path
from mongoshape.registry import ID_FIELD, CollectionSchema, remove_unset_values, to_storage
from mongoshape.schema import UNSET
from mongoshape.storage import ILLEGAL_OPERATION, DocumentStore, UpdateResult
from mongoshape.verify import PathVerifier, VerifyMode

logger = logging.getLogger(__name__)

TransformFn = Callable[[Any], Any]


@dataclass(frozen=True)
class PathTransform:
    """A transform function bound to a dotted path, or to the whole document when path is None."""

    path: str | None
    fn: TransformFn


def whole_document(fn: TransformFn) -> PathTransform:
    return PathTransform(None, fn)


Transforms = PathTransform | Sequence[PathTransform] | Mapping[str, TransformFn]


def as_transforms(spec: Transforms | TransformFn) -> list[PathTransform]:
    """Normalize the accepted transform shapes into a list of PathTransform.

    A mapping is read as ``{path: fn}``; a bare callable transforms the
    whole document.
    """
    if isinstance(spec, PathTransform):
        transforms = [spec]
    elif isinstance(spec, Mapping):
        transforms = [PathTransform(path, fn) for path, fn in spec.items()]
    elif callable(spec):
        transforms = [whole_document(spec)]
    else:
        transforms = list(spec)
        for item in transforms:
            if not isinstance(item, PathTransform):
                raise TypeError(f"Expected PathTransform, got {type(item).__name__}")
    if not transforms:
        raise ValueError("At least one transform is required")
    return transforms


@dataclass(frozen=True)
class TransformOptions:
    max_retries: int = 3
    detailed: bool = False


@dataclass(frozen=True)
class TransformResult:
    previous: BaseModel
    updated: BaseModel
    result: UpdateResult


@dataclass
class TransformManyResult:
    matched_count: int = 0
    modified_count: int = 0
    not_acknowledged_count: int = 0
    conflicts: list[Any] = field(default_factory=list)
    results: list[TransformResult] | None = None


class TransactionSupport(str, enum.Enum):
    UNKNOWN = "unknown"
    SUPPORTED = "supported"
    UNSUPPORTED = "unsupported"


class _Prepared(NamedTuple):
    previous: BaseModel
    updated: BaseModel
    patch: SetUnsetPatch


def snapshot_filter(schema: CollectionSchema, raw: Mapping[str, Any]) -> dict[str, Any]:
    """Filter matching a document only while every top-level field still equals ``raw``."""
    conditions: dict[str, Any] = {ID_FIELD: raw[ID_FIELD]}
    for key, value in raw.items():
        if key == ID_FIELD:
            continue
        # {field: null} would also match a missing field
        conditions[key] = {"$exists": True, "$eq": None} if value is None else value
    for key in schema.top_level_fields:
        if key not in raw:
            conditions[key] = {"$exists": False}
    return conditions


def _collect_changes(
    schema: CollectionSchema,
    path: str,
    old: Any,
    new: Any,
    sparse: dict[str, Any],
    replaced: dict[str, Any],
) -> None:
    if new is UNSET:
        if old is not UNSET:
            sparse[path] = UNSET
        return
    if old == new:
        return
    if (
        isinstance(old, dict)
        and isinstance(new, dict)
        and set(old) <= set(new)
        and all(schema.has_path(join_path(path, key)) for key in new)
    ):
        for key, value in new.items():
            _collect_changes(
                schema, join_path(path, key), old.get(key, UNSET), value, sparse, replaced
            )
    elif isinstance(new, dict):
        # whole replacement: the splitter would turn it into child paths
        replaced[path] = new
    else:
        sparse[path] = new


def changed_paths(
    schema: CollectionSchema,
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    roots: Sequence[str],
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Sparse changes under ``roots`` between two stored documents.

    Returns ``(sparse, replaced)``. ``sparse`` holds dotted paths mapped to
    their new value or UNSET; ``replaced`` holds objects to be written
    whole because the old value was not an object or lost keys.
    """
    sparse: dict[str, Any] = {}
    replaced: dict[str, Any] = {}
    for root in roots:
        _collect_changes(
            schema, root, get_path(before, root), get_path(after, root), sparse, replaced
        )
    return sparse, replaced


class TransformEngine:
    """Applies path and whole-document transforms to stored documents.

    The commit strategy is picked once per engine: a trial transaction
    against a scratch collection decides between multi-document
    transactions and optimistic conditional writes. Any failure there
    selects the optimistic strategy.
    """

    def __init__(
        self,
        store: DocumentStore,
        verifier: PathVerifier,
        config: MongoShapeConfig | None = None,
    ) -> None:
        self._store = store
        self._verifier = verifier
        self._config = config or MongoShapeConfig()
        self._support = {
            "transactional": TransactionSupport.SUPPORTED,
            "optimistic": TransactionSupport.UNSUPPORTED,
        }.get(self._config.transaction_mode, TransactionSupport.UNKNOWN)
        self._detection_task: asyncio.Future[TransactionSupport] | None = None

    @property
    def support(self) -> TransactionSupport:
        return self._support

    async def transaction_support(self) -> TransactionSupport:
        if self._support is not TransactionSupport.UNKNOWN:
            return self._support
        if self._detection_task is None:
            self._detection_task = asyncio.ensure_future(self._detect_support())
        return await self._detection_task

    async def _detect_support(self) -> TransactionSupport:
        collection = self._config.detection_collection

        async def touch(session: Any) -> None:
            await self._store.find_one(collection, {}, session=session)

        try:
            await self._store.with_transaction(touch)
        except OperationFailure as exc:
            if exc.code == ILLEGAL_OPERATION:
                logger.info("Server does not support transactions; transforms use optimistic writes")
            else:
                logger.warning(
                    "Transaction check failed (%s); transforms use optimistic writes", exc
                )
            support = TransactionSupport.UNSUPPORTED
        except Exception as exc:  # noqa: BLE001
            logger.warning("Transaction check failed (%s); transforms use optimistic writes", exc)
            support = TransactionSupport.UNSUPPORTED
        else:
            logger.info("Transactions supported; transforms run inside transactions")
            support = TransactionSupport.SUPPORTED
        self._support = support
        return support

    def _check(
        self,
        schema: CollectionSchema,
        query: Mapping[str, Any],
        transforms: Transforms | TransformFn,
    ) -> tuple[dict[str, Any], list[PathTransform]]:
        verified = self._verifier.verify(schema, query, VerifyMode.QUERY)
        specs = as_transforms(transforms)
        self._verifier.verify_paths(
            schema, [spec.path for spec in specs if spec.path is not None]
        )
        return verified, specs

    async def transform_one(
        self,
        schema: CollectionSchema,
        query: Mapping[str, Any],
        transforms: Transforms | TransformFn,
        options: TransformOptions | None = None,
    ) -> TransformResult | None:
        """Transform the first document matching ``query``; None when nothing matches."""
        verified, specs = self._check(schema, query, transforms)
        return await self._run(schema, verified, specs, options or TransformOptions())

    async def transform_many(
        self,
        schema: CollectionSchema,
        query: Mapping[str, Any],
        transforms: Transforms | TransformFn,
        options: TransformOptions | None = None,
    ) -> TransformManyResult:
        """Transform every matching document, one at a time.

        Identities are collected before any write. A document whose
        optimistic retries run out is listed in ``conflicts`` and the batch
        continues; a schema violation aborts the batch.
        """
        options = options or TransformOptions()
        verified, specs = self._check(schema, query, transforms)
        found = await self._store.find(schema.name, verified, projection={ID_FIELD: 1})
        outcome = TransformManyResult(results=[] if options.detailed else None)

        for document_id in [doc[ID_FIELD] for doc in found]:
            selector: dict[str, Any] = {ID_FIELD: document_id}
            if verified:
                selector = {"$and": [verified, selector]}
            try:
                result = await self._run(schema, selector, specs, options)
            except ConcurrentModificationError as exc:
                logger.warning("Skipping document in '%s': %s", schema.name, exc)
                outcome.conflicts.append(document_id)
                continue
            if result is None:
                continue
            outcome.matched_count += result.result.matched_count
            outcome.modified_count += result.result.modified_count
            if not result.result.acknowledged:
                outcome.not_acknowledged_count += 1
            if outcome.results is not None:
                outcome.results.append(result)

        return outcome

    async def _run(
        self,
        schema: CollectionSchema,
        query: dict[str, Any],
        specs: list[PathTransform],
        options: TransformOptions,
    ) -> TransformResult | None:
        if await self.transaction_support() is TransactionSupport.SUPPORTED:
            return await self._transactional(schema, query, specs)
        return await self._optimistic(schema, query, specs, options)

    async def _transactional(
        self,
        schema: CollectionSchema,
        query: dict[str, Any],
        specs: list[PathTransform],
    ) -> TransformResult | None:
        located = await self._store.find_one(schema.name, query)
        if located is None:
            return None
        document_id = located[ID_FIELD]
        by_id = {ID_FIELD: document_id}
        refetch = {"$and": [query, by_id]}

        async def commit(session: Any) -> TransformResult | None:
            raw = await self._store.find_one(schema.name, refetch, session=session)
            if raw is None:
                # changed so it no longer matches, same as an optimistic re-locate
                if await self._store.find_one(schema.name, by_id, session=session):
                    return None
                raise DocumentVanishedError(schema.name, document_id)
            prepared = self._prepare(schema, raw, specs)
            result = await self._store.update_one(
                schema.name, by_id, prepared.patch, session=session
            )
            return TransformResult(prepared.previous, prepared.updated, result)

        return await self._store.with_transaction(commit)

    async def _optimistic(
        self,
        schema: CollectionSchema,
        query: dict[str, Any],
        specs: list[PathTransform],
        options: TransformOptions,
    ) -> TransformResult | None:
        attempts = max(1, options.max_retries)
        document_id: Any = None

        for attempt in range(1, attempts + 1):
            raw = await self._store.find_one(schema.name, query)
            if raw is None:
                return None
            document_id = raw[ID_FIELD]
            prepared = self._prepare(schema, raw, specs)
            result = await self._store.update_one(
                schema.name, snapshot_filter(schema, raw), prepared.patch
            )
            if result.matched_count:
                return TransformResult(prepared.previous, prepared.updated, result)
            logger.debug(
                "Document %r in '%s' changed during transform (attempt %d of %d)",
                document_id,
                schema.name,
                attempt,
                attempts,
            )
            if attempt < attempts:
                await asyncio.sleep(random.uniform(0, 0.01))

        raise ConcurrentModificationError(schema.name, document_id, attempts)

    def _prepare(
        self,
        schema: CollectionSchema,
        raw: Mapping[str, Any],
        specs: list[PathTransform],
    ) -> _Prepared:
        previous = schema.parse_snapshot(raw)
        before = {key: value for key, value in raw.items() if key != ID_FIELD}
        candidate = copy.deepcopy(before)

        for spec in specs:
            if spec.path is None:
                candidate = self._apply_whole(schema, candidate, spec.fn)
            else:
                current = get_path(candidate, spec.path)
                if current is not UNSET:
                    current = schema.validate_at(spec.path, current)
                value = spec.fn(current)
                assign_path(candidate, spec.path, value if value is UNSET else to_storage(value))

        updated = schema.validate(candidate)
        after = to_storage(updated)

        if any(spec.path is None for spec in specs):
            roots: list[str] = list(schema.top_level_fields)
        else:
            listed = list(dict.fromkeys(spec.path for spec in specs if spec.path is not None))
            roots = [
                path
                for path in listed
                if not any(ancestor in listed for ancestor in ancestor_paths(path))
            ]

        sparse, replaced = changed_paths(schema, before, after, roots)
        split = split_set_unset(sparse)
        patch = self._verifier.verify_patch(
            schema, SetUnsetPatch(set={**split.set, **replaced}, unset=split.unset)
        )
        return _Prepared(previous, updated, patch)

    @staticmethod
    def _apply_whole(
        schema: CollectionSchema, candidate: dict[str, Any], fn: TransformFn
    ) -> dict[str, Any]:
        document = schema.parse_snapshot(candidate)
        value = fn(document)
        # in-place mutation of the snapshot is allowed
        if value is None:
            value = document
        if isinstance(value, BaseModel):
            stored = to_storage(value)
        elif isinstance(value, Mapping):
            stored = to_storage(remove_unset_values(value))
        else:
            raise TypeError(
                f"Whole-document transform must return a model or mapping, "
                f"got {type(value).__name__}"
            )
        stored.pop(ID_FIELD, None)
        return stored
