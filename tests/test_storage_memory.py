"""Tests for the in-memory DocumentStore."""

import asyncio

import pytest
from pymongo.errors import DuplicateKeyError, OperationFailure

from mongoshape.patch import SetUnsetPatch
from mongoshape.storage import DocumentStore
from mongoshape.storage_memory import MemoryDocumentStore, matches


class TestMatches:
    DOC = {
        "name": "John",
        "age": 40,
        "home": {"city": "LA", "address_2": None},
        "cars": [{"make": "Ford", "year": 2001}, {"make": "Toyota", "year": 2025}],
        "tags": ["a", "b"],
    }

    def test_equality_and_dotted_paths(self):
        assert matches(self.DOC, {"name": "John", "home.city": "LA"})
        assert not matches(self.DOC, {"home.city": "NY"})

    def test_array_fan_out(self):
        assert matches(self.DOC, {"cars.make": "Toyota"})
        assert matches(self.DOC, {"tags": "a"})
        assert matches(self.DOC, {"tags": ["a", "b"]})
        assert matches(self.DOC, {"cars.1.year": 2025})

    def test_null_matches_missing(self):
        assert matches(self.DOC, {"home.address_2": None})
        assert matches(self.DOC, {"home.zip": None})
        assert not matches(self.DOC, {"home.zip": {"$exists": True, "$eq": None}})
        assert matches(self.DOC, {"home.address_2": {"$exists": True, "$eq": None}})

    def test_comparison_operators(self):
        assert matches(self.DOC, {"age": {"$gt": 30, "$lte": 40}})
        assert not matches(self.DOC, {"age": {"$lt": 40}})
        assert matches(self.DOC, {"cars.year": {"$gte": 2020}})
        assert not matches(self.DOC, {"name": {"$gt": 5}})

    def test_membership_operators(self):
        assert matches(self.DOC, {"name": {"$in": ["Jane", "John"]}})
        assert matches(self.DOC, {"name": {"$nin": ["Jane"]}})
        assert matches(self.DOC, {"name": {"$ne": "Jane"}})
        assert not matches(self.DOC, {"tags": {"$nin": ["b"]}})

    def test_logical_operators(self):
        assert matches(self.DOC, {"$or": [{"name": "Jane"}, {"age": 40}]})
        assert not matches(self.DOC, {"$and": [{"name": "John"}, {"age": 41}]})
        assert matches(self.DOC, {"$nor": [{"name": "Jane"}]})

    def test_exists(self):
        assert matches(self.DOC, {"home": {"$exists": True}})
        assert matches(self.DOC, {"boat": {"$exists": False}})

    def test_unknown_operator(self):
        with pytest.raises(OperationFailure):
            matches(self.DOC, {"name": {"$regex": "J"}})


class TestMemoryDocumentStore:
    def test_implements_protocol(self):
        assert isinstance(MemoryDocumentStore(), DocumentStore)

    def test_insert_and_find(self):
        async def scenario():
            store = MemoryDocumentStore()
            result = await store.insert_many("c", [{"n": 3}, {"n": 1}, {"n": 2}])
            assert len(result.inserted_ids) == 3
            found = await store.find("c", {}, sort=[("n", 1)], skip=1, limit=1)
            assert [doc["n"] for doc in found] == [2]
            desc = await store.find("c", {"n": {"$gte": 2}}, sort=[("n", -1)])
            assert [doc["n"] for doc in desc] == [3, 2]
            ids = await store.find("c", {}, projection={"_id": 1})
            assert all(set(doc) == {"_id"} for doc in ids)
            assert await store.find_one("c", {"n": 9}) is None

        asyncio.run(scenario())

    def test_returned_documents_are_copies(self):
        async def scenario():
            store = MemoryDocumentStore()
            await store.insert_one("c", {"tags": ["a"]})
            doc = await store.find_one("c", {})
            doc["tags"].append("b")
            assert (await store.find_one("c", {}))["tags"] == ["a"]

        asyncio.run(scenario())

    def test_duplicate_identity(self):
        async def scenario():
            store = MemoryDocumentStore()
            await store.insert_one("c", {"_id": 1})
            with pytest.raises(DuplicateKeyError):
                await store.insert_one("c", {"_id": 1})

        asyncio.run(scenario())

    def test_update_counts(self):
        async def scenario():
            store = MemoryDocumentStore()
            await store.insert_many("c", [{"n": 1, "x": 1}, {"n": 1, "x": 2}])
            result = await store.update_many(
                "c", {"n": 1}, SetUnsetPatch(set={"x": 2}, unset={"n": ""})
            )
            assert (result.matched_count, result.modified_count) == (2, 2)
            again = await store.update_one("c", {"x": 2}, SetUnsetPatch(set={"x": 2}))
            assert (again.matched_count, again.modified_count) == (1, 0)
            assert await store.find("c", {"n": {"$exists": True}}) == []

        asyncio.run(scenario())

    def test_upsert_seeds_from_filter(self):
        async def scenario():
            store = MemoryDocumentStore()
            result = await store.update_one(
                "c", {"name": "A", "age": {"$gt": 1}}, SetUnsetPatch(set={"age": 5}), upsert=True
            )
            assert result.upserted_count == 1
            doc = await store.find_one("c", {"_id": result.upserted_id})
            assert doc == {"_id": result.upserted_id, "name": "A", "age": 5}

        asyncio.run(scenario())

    def test_find_one_and_update_returns_before_or_after(self):
        async def scenario():
            store = MemoryDocumentStore()
            await store.insert_many("c", [{"_id": 1, "n": 1}, {"_id": 2, "n": 1}])
            before = await store.find_one_and_update(
                "c", {"n": 1}, SetUnsetPatch(set={"n": 5}), sort=[("_id", -1)]
            )
            assert before == {"_id": 2, "n": 1}
            after = await store.find_one_and_update(
                "c", {"n": 1}, SetUnsetPatch(unset={"n": ""}), return_updated=True
            )
            assert after == {"_id": 1}
            missing = await store.find_one_and_update("c", {"n": 7}, SetUnsetPatch(set={"n": 8}))
            assert missing is None
            assert [doc.get("n") for doc in await store.find("c", {})] == [None, 5]

        asyncio.run(scenario())

    def test_find_one_and_update_upserts(self):
        async def scenario():
            store = MemoryDocumentStore()
            created = await store.find_one_and_update(
                "c", {"name": "A"}, SetUnsetPatch(set={"age": 3}), upsert=True, return_updated=True
            )
            assert created is not None
            assert (created["name"], created["age"]) == ("A", 3)
            assert (
                await store.find_one_and_update(
                    "c", {"name": "B"}, SetUnsetPatch(set={"age": 4}), upsert=True
                )
                is None
            )
            assert len(await store.find("c", {})) == 2

        asyncio.run(scenario())

    def test_delete(self):
        async def scenario():
            store = MemoryDocumentStore()
            await store.insert_many("c", [{"n": 1}, {"n": 1}, {"n": 2}])
            assert (await store.delete_one("c", {"n": 1})).deleted_count == 1
            assert (await store.delete_many("c", {})).deleted_count == 2

        asyncio.run(scenario())

    def test_indexes_and_collections(self):
        async def scenario():
            store = MemoryDocumentStore()
            name = await store.create_index("c", [("a", 1), ("b", -1)], unique=True)
            assert name == "a_1_b_-1"
            assert store.indexes("c")[name] == {"key": [("a", 1), ("b", -1)], "unique": True}
            assert await store.list_collections() == [{"name": "c", "type": "collection"}]

        asyncio.run(scenario())

    def test_transaction_commits(self):
        async def scenario():
            store = MemoryDocumentStore()

            async def work(session):
                assert session.in_transaction
                await store.insert_one("c", {"n": 1}, session=session)
                return "done"

            assert await store.with_transaction(work) == "done"
            assert len(await store.find("c", {})) == 1

        asyncio.run(scenario())

    def test_transaction_rolls_back(self):
        async def scenario():
            store = MemoryDocumentStore()
            await store.insert_one("c", {"n": 1})

            async def work(session):
                await store.update_many("c", {}, SetUnsetPatch(set={"n": 2}), session=session)
                raise RuntimeError("boom")

            with pytest.raises(RuntimeError):
                await store.with_transaction(work)
            assert [doc["n"] for doc in await store.find("c", {})] == [1]

        asyncio.run(scenario())

    def test_rollback_only_restores_session_writes(self):
        async def scenario():
            store = MemoryDocumentStore()
            await store.insert_many("c", [{"_id": 1, "n": 1}, {"_id": 2, "n": 2}])

            async def outside():
                await store.update_one("c", {"_id": 2}, SetUnsetPatch(set={"n": 20}))
                await store.insert_one("other", {"_id": 3})

            async def work(session):
                await store.update_one(
                    "c", {"_id": 1}, SetUnsetPatch(set={"n": 10}), session=session
                )
                await store.delete_one("c", {"_id": 2}, session=session)
                await store.insert_one("c", {"_id": 4}, session=session)
                await asyncio.create_task(outside())
                raise RuntimeError("boom")

            with pytest.raises(RuntimeError):
                await store.with_transaction(work)
            assert await store.find("c", {}, sort=[("_id", 1)]) == [
                {"_id": 1, "n": 1},
                {"_id": 2, "n": 2},
            ]
            assert await store.find("other", {}) == [{"_id": 3}]

        asyncio.run(scenario())

    def test_transactions_unsupported(self):
        async def scenario():
            store = MemoryDocumentStore(supports_transactions=False)

            async def work(session):
                raise AssertionError("callback must not run")

            with pytest.raises(OperationFailure) as exc_info:
                await store.with_transaction(work)
            assert exc_info.value.code == 20

        asyncio.run(scenario())
