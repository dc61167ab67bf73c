from __future__ import annotations

import json
from pathlib import Path

import pytest

from memories_core.errors import FileLockTimeoutError
from memories_core.memory.store import (
    FileKeyValueStore,
    InMemoryKeyValueStore,
    acquire_file_lock,
    clean_stale_locks,
    load_json_records,
    release_file_lock,
    save_json_records,
)


def test_lock_timeout_when_held(tmp_path: Path) -> None:
    target = str(tmp_path / "x.json")
    handle = acquire_file_lock(target)
    try:
        with pytest.raises(FileLockTimeoutError) as exc:
            acquire_file_lock(target, timeout_seconds=1, stale_after_seconds=9999)
        assert exc.value.error["code"] == "lock_timeout"
        assert str(tmp_path / "x.json.lock") in exc.value.error["lock_path"]
    finally:
        release_file_lock(handle)


def test_stale_lock_reclaimed(tmp_path: Path) -> None:
    target = tmp_path / "y.json"
    lock_path = Path(f"{target}.lock")
    lock_path.write_text(json.dumps({"created_at": "2000-01-01T00:00:00+00:00"}), encoding="utf-8")
    handle = acquire_file_lock(str(target), timeout_seconds=1, stale_after_seconds=1)
    release_file_lock(handle)
    assert not lock_path.exists()


def test_clean_stale_locks(tmp_path: Path) -> None:
    lock_path = tmp_path / "z.json.lock"
    lock_path.write_text("{}", encoding="utf-8")
    result = clean_stale_locks(str(tmp_path), stale_after_seconds=1)
    assert result.scanned >= 1
    assert result.removed >= 1
    assert not lock_path.exists()


def test_file_store_round_trips_and_leaves_no_lock(tmp_path: Path) -> None:
    store = FileKeyValueStore(tmp_path)
    assert store.get("queued_memories") is None

    store.set("queued_memories", "[]")
    assert store.get("queued_memories") == "[]"
    assert store.path_for("queued_memories") == tmp_path / "prefs" / "queued_memories.json"
    assert not list((tmp_path / "prefs").glob("*.lock"))
    assert not list((tmp_path / "prefs").glob("*.tmp"))

    store.remove("queued_memories")
    assert store.get("queued_memories") is None
    store.remove("queued_memories")


def test_file_store_sanitizes_keys(tmp_path: Path) -> None:
    store = FileKeyValueStore(tmp_path)
    path = store.path_for("../escape me")
    assert path.parent == tmp_path / "prefs"
    assert "/" not in path.name


def test_corrupt_blob_is_backed_up_and_read_as_empty() -> None:
    store = InMemoryKeyValueStore({"queued_memories": "{not json"})
    assert load_json_records(store, "queued_memories") == []
    assert store.get("queued_memories.corrupt") == "{not json"


def test_non_array_blob_is_treated_as_corrupt() -> None:
    store = InMemoryKeyValueStore({"k": json.dumps({"localId": "a"})})
    assert load_json_records(store, "k") == []
    assert store.get("k.corrupt") is not None


def test_non_object_items_are_dropped() -> None:
    store = InMemoryKeyValueStore()
    save_json_records(store, "k", [{"a": 1}])
    store.set("k", json.dumps([{"a": 1}, 3, "x", None]))
    assert load_json_records(store, "k") == [{"a": 1}]
