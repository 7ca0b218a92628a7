from __future__ import annotations

import pytest

from avatar_pipeline.services.errors import LocalPersistenceFailure
from avatar_pipeline.services.storage import (
    AVATAR_URL_KEY,
    InMemoryKeyValueStore,
    SqliteKeyValueStore,
    open_store,
)


def test_sqlite_store_round_trip(tmp_path) -> None:  # noqa: ANN001
    store = SqliteKeyValueStore(str(tmp_path / "nested" / "avatar.sqlite3"))

    assert store.get(AVATAR_URL_KEY) is None
    store.set(AVATAR_URL_KEY, "https://cdn.test/a.glb")
    store.set(AVATAR_URL_KEY, "https://cdn.test/b.glb")
    assert store.get(AVATAR_URL_KEY) == "https://cdn.test/b.glb"

    reopened = SqliteKeyValueStore(str(tmp_path / "nested" / "avatar.sqlite3"))
    assert reopened.get(AVATAR_URL_KEY) == "https://cdn.test/b.glb"

    reopened.delete(AVATAR_URL_KEY)
    assert store.get(AVATAR_URL_KEY) is None


def test_unopenable_database_is_a_persistence_failure(tmp_path) -> None:  # noqa: ANN001
    directory = tmp_path / "not-a-file"
    directory.mkdir()
    with pytest.raises(LocalPersistenceFailure) as excinfo:
        SqliteKeyValueStore(str(directory))
    assert excinfo.value.fatal is True


def test_open_store_memory_shortcut() -> None:
    store = open_store(":memory:")
    assert isinstance(store, InMemoryKeyValueStore)
    store.set("k", "v")
    assert store.get("k") == "v"
    store.delete("k")
    store.delete("k")
    assert store.get("k") is None
