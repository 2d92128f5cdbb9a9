"""Tests for the key-value stores and versioned collections."""

import json

import pytest
import pytest_asyncio

from app.database import MemoryKeyValueStore, SQLiteKeyValueStore, VersionedCollection
from app.errors import SchemaVersionError
from app.models import Teacher


@pytest_asyncio.fixture
async def sqlite_store(tmp_path):
    store = SQLiteKeyValueStore(tmp_path / "nested" / "test.db")
    await store.connect()
    yield store
    await store.close()


@pytest.mark.asyncio
async def test_sqlite_set_get_overwrite(sqlite_store):
    assert await sqlite_store.get("missing") is None
    await sqlite_store.set("a", "1")
    await sqlite_store.set("a", "2")
    await sqlite_store.set("b", "3")

    assert await sqlite_store.get("a") == "2"
    assert await sqlite_store.keys() == ["a", "b"]

    await sqlite_store.delete("a")
    assert await sqlite_store.get("a") is None
    assert await sqlite_store.keys() == ["b"]


@pytest.mark.asyncio
async def test_sqlite_persists_across_connections(tmp_path):
    path = tmp_path / "caller.db"
    first = SQLiteKeyValueStore(path)
    await first.connect()
    await first.set("students", "[]")
    await first.close()

    second = SQLiteKeyValueStore(path)
    await second.connect()
    try:
        assert await second.get("students") == "[]"
    finally:
        await second.close()


@pytest.mark.asyncio
async def test_sqlite_requires_connect(tmp_path):
    store = SQLiteKeyValueStore(tmp_path / "x.db")
    with pytest.raises(RuntimeError):
        await store.get("a")


@pytest.mark.asyncio
async def test_memory_store_delete_missing_is_noop():
    store = MemoryKeyValueStore()
    await store.delete("nothing")
    assert await store.keys() == []


@pytest.mark.asyncio
async def test_collection_round_trip_preserves_order(sqlite_store):
    teachers = VersionedCollection(sqlite_store, "teachers", Teacher)
    assert await teachers.load() == []

    items = [Teacher(id=2, name="Fatima Zahra"), Teacher(id=1, name="Ali Hassan")]
    await teachers.save(items)

    loaded = await teachers.load()
    assert [t.name for t in loaded] == ["Fatima Zahra", "Ali Hassan"]
    envelope = json.loads(await sqlite_store.get("teachers"))
    assert envelope["schema_version"] == 1
    assert len(envelope["items"]) == 2


@pytest.mark.asyncio
async def test_collection_rejects_other_version():
    store = MemoryKeyValueStore()
    await store.set("teachers", json.dumps({"schema_version": 2, "items": []}))

    with pytest.raises(SchemaVersionError) as exc:
        await VersionedCollection(store, "teachers", Teacher).load()
    assert exc.value.found == 2
    assert exc.value.expected == 1


@pytest.mark.asyncio
async def test_collection_rejects_unversioned_list():
    store = MemoryKeyValueStore()
    await store.set("teachers", json.dumps([{"id": 1, "name": "Ali Hassan"}]))

    with pytest.raises(SchemaVersionError):
        await VersionedCollection(store, "teachers", Teacher).load()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw, message",
    [
        ("not json", "is not valid JSON"),
        (json.dumps({"schema_version": 1, "items": [{"id": "x"}]}), "failed validation"),
    ],
)
async def test_collection_rejects_unreadable_data(raw, message):
    store = MemoryKeyValueStore()
    await store.set("teachers", raw)

    with pytest.raises(SchemaVersionError) as exc:
        await VersionedCollection(store, "teachers", Teacher).load()
    assert message in str(exc.value)
    assert "expected 1" not in str(exc.value)
