"""Tests for the Database facade."""

import asyncio
import datetime
import logging

import pytest

from mongoshape import (
    UNSET,
    Database,
    MemoryDocumentStore,
    SchemaViolationError,
    UnknownCollectionError,
    UnknownPathError,
)
from tests.models import COLLECTIONS, CREATED_AT, Person, john_doe, main_street, make_db


class CountingStore(MemoryDocumentStore):
    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    async def _yield(self) -> None:
        self.calls += 1
        await super()._yield()


class TestConstruction:
    def test_paths_exposed_read_only(self, db):
        assert "property.cars" in db.paths["people"]
        assert db.collections == ("people", "owners")
        with pytest.raises(TypeError):
            db.paths["pets"] = {}  # type: ignore[index]

    def test_unknown_collection(self, db):
        with pytest.raises(UnknownCollectionError):
            db.schema("pets")

        async def scenario():
            with pytest.raises(UnknownCollectionError):
                await db.find_one("pets", {})

        asyncio.run(scenario())

    def test_indexes_must_name_declared_collections(self):
        with pytest.raises(UnknownCollectionError):
            make_db(indexes={"pets": [{"name": 1}]})


class TestReadWrite:
    def test_insert_then_find(self, db):
        """Insert a person and read it back by name."""

        async def scenario():
            result = await db.insert_one("people", john_doe())
            assert len(result.inserted_ids) == 1
            john = await db.find_one("people", {"name": "John Doe"})
            assert isinstance(john, Person)
            assert john.id_ == result.inserted_ids[0]
            assert john.property.cars[0].model == "Passat"
            assert await db.find_one("people", {"name": "Jane"}) is None

        asyncio.run(scenario())

    def test_insert_rejects_invalid_document(self, db):
        async def scenario():
            with pytest.raises(SchemaViolationError):
                await db.insert_one("people", john_doe(name=None))
            assert await db.find_many("people") == []

        asyncio.run(scenario())

    def test_insert_many_and_paging(self, db):
        async def scenario():
            assert (await db.insert_many("people", [])).inserted_ids == []
            await db.insert_many("people", [john_doe(name=n) for n in ("c", "a", "b")])
            page = await db.find_many("people", sort=[("name", 1)], skip=1, limit=2)
            assert [p.name for p in page] == ["b", "c"]
            first = await db.find_one("people", sort=[("name", -1)])
            assert first.name == "c"

        asyncio.run(scenario())

    def test_unknown_query_path_touches_nothing(self):
        store = CountingStore()
        db = make_db(store=store)

        async def scenario():
            with pytest.raises(UnknownPathError):
                await db.find_many("people", {"property.boats": []})
            with pytest.raises(UnknownPathError):
                await db.update_one("people", {}, {"property.boats": []})
            with pytest.raises(UnknownPathError):
                await db.delete_many("people", {"nmae": "x"})

        asyncio.run(scenario())
        assert store.calls == 0

    def test_unknown_sort_path_touches_nothing(self):
        store = CountingStore()
        db = make_db(store=store)

        async def scenario():
            with pytest.raises(UnknownPathError):
                await db.find_one("people", sort=[("nmae", 1)])
            with pytest.raises(UnknownPathError):
                await db.find_many("people", sort=[("_id", 1), ("property.boats", -1)])
            with pytest.raises(UnknownPathError):
                await db.find_old_documents(
                    "people", "created_at", datetime.datetime(2023, 1, 1), sort=[("nmae", 1)]
                )
            with pytest.raises(UnknownPathError):
                await db.find_one_and_update("people", {}, {"name": "x"}, sort=[("nmae", 1)])

        asyncio.run(scenario())
        assert store.calls == 0


class TestUpdates:
    def test_set_and_unset_nested(self, db):
        """Replace homes and remove cars in one sparse update."""

        async def scenario():
            await db.insert_one("people", john_doe())
            result = await db.update_many(
                "people",
                {"name": "John Doe"},
                {"property.homes": [main_street()], "property.cars": UNSET},
            )
            assert (result.matched_count, result.modified_count) == (1, 1)
            raw = await db.store.find_one("people", {})
            assert "cars" not in raw["property"]
            assert len(raw["property"]["homes"]) == 1

        asyncio.run(scenario())

    def test_nested_mapping_update(self, db):
        async def scenario():
            await db.insert_one("people", john_doe())
            await db.update_one("people", {}, {"property": {"homes": []}})
            raw = await db.store.find_one("people", {})
            assert raw["property"]["homes"] == []
            assert len(raw["property"]["cars"]) == 1

        asyncio.run(scenario())

    def test_invalid_value_rejected(self, db):
        async def scenario():
            await db.insert_one("people", john_doe())
            with pytest.raises(SchemaViolationError):
                await db.update_one("people", {}, {"property.homes": [dict(main_street(), zip=1)]})
            with pytest.raises(SchemaViolationError):
                await db.update_one("people", {}, {"name": UNSET})

        asyncio.run(scenario())

    def test_identity_update_is_dropped_with_one_warning(self, db, caplog):
        async def scenario():
            await db.insert_one("people", john_doe())
            with caplog.at_level(logging.WARNING, logger="mongoshape"):
                for name in ("A", "B"):
                    await db.update_one("people", {}, {"_id": "other", "name": name})
            assert (await db.find_one("people", {})).name == "B"

        asyncio.run(scenario())
        assert len([r for r in caplog.records if "immutable" in r.getMessage()]) == 1

    def test_upsert_requires_complete_document(self, db):
        async def scenario():
            result = await db.update_one("people", {"name": "Jane"}, john_doe(name="Jane"), upsert=True)
            assert result.upserted_count == 1
            assert (await db.find_one("people", {"name": "Jane"})).created_at == CREATED_AT
            with pytest.raises(SchemaViolationError):
                await db.update_one("people", {"name": "Ann"}, {"name": "Ann"}, upsert=True)
            with pytest.raises(SchemaViolationError):
                await db.update_one(
                    "people", {"name": "Ann"}, john_doe(name="Ann", property=UNSET), upsert=True
                )

        asyncio.run(scenario())

    def test_find_one_and_update(self, db):
        async def scenario():
            await db.insert_many("people", [john_doe(name=n) for n in ("a", "b")])
            before = await db.find_one_and_update(
                "people", {}, {"property.homes": [main_street()]}, sort=[("name", -1)]
            )
            assert isinstance(before, Person)
            assert (before.name, before.property.homes) == ("b", None)
            after = await db.find_one_and_update(
                "people", {"name": "a"}, {"name": "c"}, return_updated=True
            )
            assert after.name == "c"
            assert await db.find_one_and_update("people", {"name": "zzz"}, {"name": "d"}) is None
            updated = await db.find_one("people", {"name": "b"})
            assert updated.property.homes[0].city == "Los Angeles"

        asyncio.run(scenario())

    def test_find_one_and_update_checks_update_and_upserts(self, db):
        async def scenario():
            await db.insert_one("people", john_doe())
            with pytest.raises(SchemaViolationError):
                await db.find_one_and_update("people", {}, {"name": UNSET})
            with pytest.raises(UnknownPathError):
                await db.find_one_and_update("people", {}, {"property.boats": []})
            created = await db.find_one_and_update(
                "people", {"name": "Jane"}, john_doe(name="Jane"), upsert=True, return_updated=True
            )
            assert (created.name, created.created_at) == ("Jane", CREATED_AT)
            assert len(await db.find_many("people")) == 2

        asyncio.run(scenario())

    def test_delete(self, db):
        async def scenario():
            await db.insert_many("people", [john_doe(name=n) for n in ("a", "a", "b")])
            assert (await db.delete_one("people", {"name": "a"})).deleted_count == 1
            assert (await db.delete_many("people", {"name": {"$in": ["a", "b"]}})).deleted_count == 2

        asyncio.run(scenario())


class TestIndexes:
    def test_create_index_checks_paths(self, db):
        async def scenario():
            name = await db.create_index("people", {"name": 1, "created_at": -1}, unique=True)
            assert db.store.indexes("people")[name]["unique"] is True
            await db.create_index("people", [("_id", 1), ("property.cars", 1)])
            with pytest.raises(UnknownPathError):
                await db.create_index("people", {"nmae": 1})

        asyncio.run(scenario())

    def test_create_indexes_reports_failure(self, db, caplog):
        async def scenario():
            assert await db.create_indexes("people", [{"name": 1}, [("property.homes", 1)]])
            with caplog.at_level(logging.ERROR, logger="mongoshape"):
                assert not await db.create_indexes("people", [{"nmae": 1}, {"name": -1}])
            assert "name_-1" not in db.store.indexes("people")

        asyncio.run(scenario())
        assert any("Error creating index" in r.getMessage() for r in caplog.records)

    def test_context_manager_creates_declared_indexes(self):
        store = MemoryDocumentStore()
        db = Database(
            "shop",
            COLLECTIONS,
            store=store,
            indexes={"people": [{"name": 1}, {"missing": 1}]},
        )

        async def scenario():
            async with db:
                assert "name_1" in store.indexes("people")
            assert store.closed

        asyncio.run(scenario())


class TestMaintenance:
    def test_old_documents(self, db):
        old = datetime.datetime(2020, 1, 1)
        new = datetime.datetime(2025, 1, 1)
        cutoff = datetime.datetime(2023, 1, 1)

        async def scenario():
            await db.insert_many(
                "people",
                [john_doe(name="old", created_at=old), john_doe(name="new", created_at=new)],
            )
            found = await db.find_old_documents("people", "created_at", cutoff)
            assert [p.name for p in found] == ["old"]
            deleted = await db.delete_old_documents("people", "created_at", cutoff)
            assert deleted.deleted_count == 1
            assert [p.name for p in await db.find_many("people")] == ["new"]

        asyncio.run(scenario())

    def test_old_documents_need_datetime_path(self, db):
        async def scenario():
            with pytest.raises(SchemaViolationError, match="not datetimes"):
                await db.delete_old_documents("people", "name", datetime.datetime(2023, 1, 1))
            with pytest.raises(UnknownPathError):
                await db.find_old_documents("people", "updated_at", datetime.datetime(2023, 1, 1))

        asyncio.run(scenario())

    def test_list_collection_infos(self, db):
        async def scenario():
            await db.insert_one("people", john_doe())
            assert await db.list_collection_infos() == [{"name": "people", "type": "collection"}]

        asyncio.run(scenario())

    def test_backup_delegates_with_config(self, db, monkeypatch):
        calls = []

        async def fake_backup(uri, database, collection, backup_dir, **kwargs):
            calls.append((uri, database, collection, backup_dir, kwargs))
            return True

        monkeypatch.setattr("mongoshape.backup.backup_collection", fake_backup)

        async def scenario():
            assert await db.backup_collection("people", 3, compressed=True)
            with pytest.raises(UnknownCollectionError):
                await db.backup_collection("pets")

        asyncio.run(scenario())
        assert calls == [
            (
                db.config.mongo_uri,
                "mongoshape_test",
                "people",
                db.config.backup_dir,
                {"max_backups": 3, "compressed": True},
            )
        ]
