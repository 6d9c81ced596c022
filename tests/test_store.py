"""
Unit tests for the project store.

Runs against the memory and SQLite backends; LanceDB gets its own
round-trip test.
"""

import sqlite3
from unittest.mock import patch
import pytest

from blockoli.config import Config
from blockoli.errors import AlreadyExists, DimensionMismatch, InvalidProjectName, NotFound, StorageFailure
from blockoli.store import MemoryBackend, ProjectStore, SQLiteBackend, StorageBackend, create_backend
from blockoli.store.lance import LanceBackend


# ===== Projects =====

def test_create_and_get_project(store):
    store.create_project("demo")

    info = store.get_project("demo")
    assert info.name == "demo"
    assert info.total_code_blocks == 0
    assert info.generation == 0
    assert store.list_projects() == ["demo"]


def test_create_existing_project_fails(store):
    store.create_project("demo")

    with pytest.raises(AlreadyExists):
        store.create_project("demo")


@pytest.mark.parametrize("name", ["", "has space", "semi;colon", "dash-name", "dot.name"])
def test_invalid_project_name(store, name):
    with pytest.raises(InvalidProjectName):
        store.create_project(name)


def test_invalid_project_name_is_value_error(store):
    with pytest.raises(ValueError):
        store.create_project("bad name")


def test_missing_project_raises_not_found(store):
    with pytest.raises(NotFound):
        store.get_project("missing")
    with pytest.raises(NotFound):
        store.list_blocks("missing")
    with pytest.raises(NotFound):
        store.find_by_function_name("missing", "foo")
    with pytest.raises(NotFound):
        store.upsert_blocks("missing", [])


def test_delete_project(store, make_block):
    store.create_project("demo")
    store.upsert_blocks("demo", [make_block("foo", embedding=[1.0, 0.0])])

    store.delete_project("demo")

    assert store.list_projects() == []
    with pytest.raises(NotFound):
        store.get_project("demo")


def test_delete_missing_project(store):
    with pytest.raises(NotFound):
        store.delete_project("ghost")


def test_lock_entries_pruned(store):
    with pytest.raises(InvalidProjectName):
        store.get_project("bad name")
    with pytest.raises(NotFound):
        store.list_blocks("missing")

    store.create_project("demo")
    store.upsert_blocks("demo", [])
    store.delete_project("demo")

    assert store._locks == {}


def test_delete_fires_listeners(store):
    deleted = []
    store.add_delete_listener(deleted.append)
    store.create_project("demo")

    store.delete_project("demo")

    assert deleted == ["demo"]


def test_ensure_project(store):
    assert store.ensure_project("demo") is True
    assert store.ensure_project("demo") is False


# ===== Upsert =====

def test_upsert_assigns_ids_in_order(store, make_block):
    store.create_project("demo")

    result = store.upsert_blocks("demo", [make_block("foo"), make_block("bar")])

    assert (result.inserted, result.updated, result.deleted) == (2, 0, 0)
    assert result.generation == 1
    blocks = list(store.list_blocks("demo"))
    assert [(b.id, b.name, b.project) for b in blocks] == [(1, "foo", "demo"), (2, "bar", "demo")]


def test_upsert_same_key_keeps_id(store, make_block):
    store.create_project("demo")
    store.upsert_blocks("demo", [make_block("foo"), make_block("bar")])

    result = store.upsert_blocks("demo", [make_block("foo", text="def foo():\n    return 2"), make_block("bar")])

    assert (result.inserted, result.updated, result.deleted) == (0, 2, 0)
    blocks = list(store.list_blocks("demo"))
    assert [(b.id, b.name) for b in blocks] == [(1, "foo"), (2, "bar")]
    assert blocks[0].text == "def foo():\n    return 2"


def test_upsert_deletes_stale_blocks_of_replaced_files(store, make_block):
    store.create_project("demo")
    store.upsert_blocks("demo", [make_block("foo"), make_block("bar"), make_block("other", path="b.py")])

    result = store.upsert_blocks("demo", [make_block("foo")])

    assert result.deleted == 1
    names = [b.name for b in store.list_blocks("demo")]
    assert names == ["foo", "other"]


def test_upsert_with_files_clears_emptied_file(store, make_block):
    store.create_project("demo")
    store.upsert_blocks("demo", [make_block("foo"), make_block("other", path="b.py")])

    store.upsert_blocks("demo", [], files=["a.py"])

    assert [b.name for b in store.list_blocks("demo")] == ["other"]


def test_ids_never_reused(store, make_block):
    store.create_project("demo")
    store.upsert_blocks("demo", [make_block("foo"), make_block("bar")])
    store.upsert_blocks("demo", [], files=["a.py"])

    store.upsert_blocks("demo", [make_block("baz")])

    assert [b.id for b in store.list_blocks("demo")] == [3]


def test_empty_upsert_bumps_generation(store):
    store.create_project("demo")

    store.upsert_blocks("demo", [])
    result = store.upsert_blocks("demo", [])

    assert result.generation == 2
    assert store.generation("demo") == 2


def test_scope_distinguishes_match_keys(store, make_block):
    store.create_project("demo")
    blocks = [
        make_block("add", scope="Calculator", block_type="method"),
        make_block("add"),
    ]

    result = store.upsert_blocks("demo", blocks)

    assert result.inserted == 2


def test_dimension_fixed_by_first_embedding(store, make_block):
    store.create_project("demo")
    store.upsert_blocks("demo", [make_block("foo", embedding=[1.0, 0.0])])

    with pytest.raises(DimensionMismatch) as exc_info:
        store.upsert_blocks("demo", [make_block("bar", embedding=[1.0, 0.0, 0.0])])

    assert exc_info.value.expected == 2
    assert exc_info.value.actual == 3
    assert store.generation("demo") == 1
    assert [b.name for b in store.list_blocks("demo")] == ["foo"]


def test_mixed_dimensions_in_one_batch(store, make_block):
    store.create_project("demo")

    with pytest.raises(DimensionMismatch):
        store.upsert_blocks("demo", [
            make_block("foo", embedding=[1.0]),
            make_block("bar", embedding=[1.0, 2.0]),
        ])
    assert store.get_project("demo").total_code_blocks == 0


def test_embeddings_round_trip_exactly(store, make_block):
    store.create_project("demo")
    vector = [0.1, 1 / 3, -2.5e-8, 123456.789]

    store.upsert_blocks("demo", [make_block("foo", embedding=vector)])

    assert next(store.list_blocks("demo")).embedding == vector


def test_returned_blocks_are_copies(store, make_block):
    store.create_project("demo")
    store.upsert_blocks("demo", [make_block("foo", embedding=[1.0, 0.0])])

    block = next(store.list_blocks("demo"))
    block.name = "mutated"
    block.embedding.append(9.0)
    store.find_by_function_name("demo", "foo")[0].outgoing_calls.append("x")

    fresh = next(store.list_blocks("demo"))
    assert (fresh.name, fresh.embedding, fresh.outgoing_calls) == ("foo", [1.0, 0.0], [])
    assert store.generation("demo") == 1


def test_project_isolation(store, make_block):
    store.create_project("one")
    store.create_project("two")
    store.upsert_blocks("one", [make_block("foo")])

    assert list(store.list_blocks("two")) == []
    assert store.generation("two") == 0


# ===== Lookup =====

def test_find_by_function_name(store, make_block):
    store.create_project("demo")
    store.upsert_blocks("demo", [
        make_block("foo"),
        make_block("bar"),
        make_block("foo", path="b.py"),
    ])

    found = store.find_by_function_name("demo", "foo")

    assert [(b.id, b.path) for b in found] == [(1, "a.py"), (3, "b.py")]
    assert store.find_by_function_name("demo", "Foo") == []


def test_list_function_blocks_and_search(store, make_block):
    store.create_project("demo")
    store.upsert_blocks("demo", [
        make_block("Widget", block_type="class", text="class Widget:\n    pass"),
        make_block("render", scope="Widget", block_type="method", text="def render(self):\n    draw()"),
        make_block("draw", text="def draw():\n    return None"),
    ])

    assert [b.name for b in store.list_function_blocks("demo")] == ["render", "draw"]
    assert [b.name for b in store.search_function_blocks("demo", "draw")] == ["render", "draw"]
    assert store.search_function_blocks("demo", "Draw") == []
    assert store.search_function_blocks("demo", "class Widget") == []


def test_list_blocks_checks_project_eagerly(store):
    with pytest.raises(NotFound):
        store.list_blocks("missing")


def test_get_project_counts(store, make_block):
    store.create_project("demo")
    store.upsert_blocks("demo", [make_block("foo", embedding=[1.0, 2.0]), make_block("bar")])

    info = store.get_project("demo")

    assert info.total_code_blocks == 2
    assert info.embedded_blocks == 1
    assert info.dimension == 2
    assert info.generation == 1


def test_embedded_snapshot(store, make_block):
    store.create_project("demo")
    store.upsert_blocks("demo", [
        make_block("foo", embedding=[1.0, 2.0]),
        make_block("bar"),
        make_block("baz", embedding=[3.0, 4.0]),
    ])

    snapshot = store.embedded_snapshot("demo")

    assert snapshot.generation == 1
    assert snapshot.ids == [1, 3]
    assert snapshot.vectors.tolist() == [[1.0, 2.0], [3.0, 4.0]]
    assert snapshot.dimension == 2
    assert set(snapshot.blocks) == {1, 3}


def test_empty_snapshot(store):
    store.create_project("demo")

    snapshot = store.embedded_snapshot("demo")

    assert len(snapshot) == 0
    assert snapshot.dimension is None
    assert store.dimension("demo") is None


# ===== Backends =====

def test_backends_satisfy_protocol(temp_dir):
    assert isinstance(MemoryBackend(), StorageBackend)
    assert isinstance(SQLiteBackend(":memory:"), StorageBackend)
    assert isinstance(LanceBackend(temp_dir / "data.lance", dimension=2), StorageBackend)


def test_sqlite_persists_across_connections(temp_dir, make_block):
    db_path = temp_dir / "blockoli.sqlite"
    first = ProjectStore(SQLiteBackend(db_path))
    first.create_project("demo")
    first.upsert_blocks("demo", [make_block("foo", embedding=[0.5, 0.25])])
    first.close()

    second = ProjectStore(SQLiteBackend(db_path))
    blocks = list(second.list_blocks("demo"))
    second.close()

    assert [(b.id, b.name, b.embedding) for b in blocks] == [(1, "foo", [0.5, 0.25])]


def test_ids_continue_after_reopen(temp_dir, make_block):
    db_path = temp_dir / "blockoli.sqlite"
    first = ProjectStore(SQLiteBackend(db_path))
    first.create_project("demo")
    first.upsert_blocks("demo", [make_block("foo"), make_block("bar")])
    first.close()

    second = ProjectStore(SQLiteBackend(db_path))
    second.upsert_blocks("demo", [make_block("baz", path="b.py")])

    assert [b.id for b in second.list_blocks("demo")] == [1, 2, 3]
    second.close()


def test_deleted_top_id_not_reused_after_reopen(temp_dir, make_block):
    db_path = temp_dir / "blockoli.sqlite"
    first = ProjectStore(SQLiteBackend(db_path))
    first.create_project("demo")
    first.upsert_blocks("demo", [make_block("foo"), make_block("bar")])
    first.upsert_blocks("demo", [make_block("foo")])
    first.close()

    second = ProjectStore(SQLiteBackend(db_path))
    second.upsert_blocks("demo", [make_block("baz", path="b.py")])

    assert [(b.id, b.name) for b in second.list_blocks("demo")] == [(1, "foo"), (3, "baz")]
    second.close()


def test_sqlite_adds_next_id_column_to_old_database(temp_dir):
    db_path = temp_dir / "old.sqlite"
    conn = sqlite3.connect(str(db_path))
    conn.execute("CREATE TABLE projects (name TEXT PRIMARY KEY, created_at REAL NOT NULL)")
    conn.execute("INSERT INTO projects VALUES ('demo', 0)")
    conn.commit()
    conn.close()

    backend = SQLiteBackend(db_path)

    assert backend.load_next_id("demo") == 1
    backend.close()


def test_storage_failure_chains_backend_error(make_block):
    backend = SQLiteBackend(":memory:")
    store = ProjectStore(backend)
    store.create_project("demo")

    with patch.object(backend, "_conn") as conn:
        conn.execute.side_effect = sqlite3.OperationalError("disk I/O error")
        with pytest.raises(StorageFailure) as exc_info:
            store.get_project("demo")

    assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
    assert "disk I/O error" in str(exc_info.value)


def test_lance_round_trip(temp_dir, make_block):
    store = ProjectStore(LanceBackend(temp_dir / "data.lance", dimension=2))
    store.create_project("demo")
    store.upsert_blocks("demo", [
        make_block("foo", embedding=[0.5, 0.25]),
        make_block("bar"),
    ])
    store.upsert_blocks("demo", [make_block("foo", embedding=[0.75, 0.5])])

    blocks = list(store.list_blocks("demo"))
    assert [(b.id, b.name) for b in blocks] == [(1, "foo")]
    assert blocks[0].embedding == pytest.approx([0.75, 0.5])
    assert store.find_by_function_name("demo", "foo")[0].id == 1
    assert store.list_projects() == ["demo"]

    store.delete_project("demo")
    assert store.list_projects() == []


def test_lance_block_without_embedding(temp_dir, make_block):
    store = ProjectStore(LanceBackend(temp_dir / "data.lance", dimension=2))
    store.create_project("demo")
    store.upsert_blocks("demo", [make_block("foo")])

    block = next(store.list_blocks("demo"))
    assert block.embedding is None
    assert store.embedded_snapshot("demo").ids == []


def test_create_backend_from_config(temp_dir):
    config = Config(temp_dir)

    config.set("storage", "backend", value="memory")
    assert isinstance(create_backend(config), MemoryBackend)

    config.set("storage", "backend", value="sqlite")
    backend = create_backend(config)
    assert isinstance(backend, SQLiteBackend)
    assert (temp_dir / ".blockoli" / "blockoli.sqlite").exists()
    backend.close()

    config.set("storage", "backend", value="lance")
    assert isinstance(create_backend(config), LanceBackend)

    config.set("storage", "backend", value="redis")
    with pytest.raises(ValueError, match="Unknown storage backend"):
        create_backend(config)
