"""Tests for the state stores."""
import asyncio
import json

import pytest

from resgraph import (
    FileStateStore,
    MemoryStateStore,
    Reference,
    Stack,
    StateRecord,
    StateStoreError,
    apply_stack,
)
from resgraph.state import MongoStateStore, MongoStateConfig


def _record(node_id, **outputs):
    return StateRecord(
        node_id=node_id,
        kind="memory.Network",
        inputs_hash="abc",
        inputs={"cidr": "10.0.0.0/16"},
        outputs={"id": f"{node_id}-1", **outputs},
        provider_id=f"{node_id}-1",
        dependencies={"b", "a"},
    )


def test_record_dependencies_are_sorted():
    assert _record("net").dependencies == ["a", "b"]


def test_missing_file_is_empty_state(tmp_path):
    store = FileStateStore(tmp_path / "nope" / "state.json")
    assert asyncio.run(store.load()) == {}


def test_file_store_persists_each_commit(tmp_path):
    path = tmp_path / "state" / "state.json"

    async def scenario():
        store = FileStateStore(path, stack="prod")
        await store.commit("net", _record("net", name="core"))
        await store.commit("fw", _record("fw"))
        await store.remove("fw")
        await store.remove("never-there")
        return await FileStateStore(path, stack="prod").load()

    records = asyncio.run(scenario())

    assert set(records) == {"net"}
    assert records["net"].outputs == {"id": "net-1", "name": "core"}
    document = json.loads(path.read_text())
    assert document["version"] == 1
    assert document["stack"] == "prod"
    assert list(document["resources"]) == ["net"]
    assert not list(path.parent.glob("*.tmp"))


def test_corrupt_file_is_empty_state(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{ this is not json")
    assert asyncio.run(FileStateStore(path).load()) == {}

    path.write_text(json.dumps({"resources": {"net": {"node_id": "net"}}}))
    assert asyncio.run(FileStateStore(path).load()) == {}


def test_unwritable_location_raises(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory")
    store = FileStateStore(blocker / "state.json")

    with pytest.raises(StateStoreError):
        asyncio.run(store.commit("net", _record("net")))


def test_failed_write_does_not_leak_into_later_commits(tmp_path, monkeypatch):
    path = tmp_path / "state.json"
    store = FileStateStore(path)
    write = store._write
    attempts = []

    def _flaky_write(records):
        attempts.append(sorted(records))
        if len(attempts) in (1, 3):
            raise StateStoreError("disk full")
        write(records)

    monkeypatch.setattr(store, "_write", _flaky_write)

    async def scenario():
        with pytest.raises(StateStoreError):
            await store.commit("a", _record("a"))
        await store.commit("b", _record("b"))
        with pytest.raises(StateStoreError):
            await store.remove("b")
        await store.commit("c", _record("c"))

    asyncio.run(scenario())

    assert attempts == [["a"], ["b"], [], ["b", "c"]]
    assert list(json.loads(path.read_text())["resources"]) == ["b", "c"]


def test_memory_store_returns_copies():
    store = MemoryStateStore()
    asyncio.run(store.commit("net", _record("net")))

    loaded = asyncio.run(store.load())
    loaded["net"].outputs["id"] = "mutated"

    assert store.snapshot()["net"].outputs["id"] == "net-1"
    assert store.commits == ["net"]


def test_apply_survives_process_restart(tmp_path, registry):
    path = tmp_path / "state.json"
    stack = Stack("prod")
    stack.add("net", "memory.Network")
    stack.add("fw", "memory.Firewall", {"network": Reference("net")})

    asyncio.run(apply_stack(stack, registry, FileStateStore(path, stack="prod")))
    rerun = asyncio.run(apply_stack(stack, registry, FileStateStore(path, stack="prod")))

    assert {s.value for s in rerun.statuses().values()} == {"noop"}


class _FakeCollection:
    def __init__(self):
        self.docs = {}

    def find(self, query):
        docs = list(self.docs.values())

        async def _iter():
            for doc in docs:
                yield doc

        return _iter()

    async def replace_one(self, flt, doc, upsert=False):
        self.docs[flt["_id"]] = {"_id": flt["_id"], **doc}

    async def delete_one(self, flt):
        self.docs.pop(flt["_id"], None)


class _FakeDatabase(dict):
    def __getitem__(self, name):
        return self.setdefault(name, _FakeCollection())


class _FakeClient(dict):
    def __getitem__(self, name):
        return self.setdefault(name, _FakeDatabase())

    def close(self):
        pass


def test_mongo_store_documents_per_resource():
    client = _FakeClient()
    store = MongoStateStore(MongoStateConfig(db_name="infra"), stack="prod", client=client)

    async def scenario():
        await store.commit("net", _record("net"))
        await store.commit("fw", _record("fw"))
        await store.remove("fw")
        return await store.load()

    records = asyncio.run(scenario())

    assert set(records) == {"net"}
    assert records["net"].provider_id == "net-1"
    assert set(client["infra"]["state_prod"].docs) == {"net"}
