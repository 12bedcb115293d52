from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from simchain.runtime.namespaces import NamespaceAllocator
from simchain.runtime.sqlite_db import SqliteDB, open_sqlite_store
from simchain.runtime.store import MemoryKVStore


def test_writes_are_buffered_until_commit(tmp_path: Path) -> None:
    path = str(tmp_path / "simchain.db")
    store = open_sqlite_store(path)
    store.set(b"bank/a", b"1")
    store.set(b"bank/b", b"2")

    assert store.get(b"bank/a") == b"1"
    assert store.has_pending_writes()
    assert open_sqlite_store(path).get(b"bank/a") is None

    store.commit({"last_height": "3"})
    assert not store.has_pending_writes()

    reopened = open_sqlite_store(path)
    assert reopened.get(b"bank/a") == b"1"
    assert reopened.get_meta("last_height") == "3"


def test_iterate_merges_committed_rows_with_pending_writes(tmp_path: Path) -> None:
    store = open_sqlite_store(str(tmp_path / "simchain.db"))
    for k in (b"a/1", b"a/2", b"a/3", b"b/1"):
        store.set(k, k)
    store.commit()

    store.delete(b"a/2")
    store.set(b"a/4", b"new")
    store.set(b"a/1", b"changed")

    assert list(store.iterate(b"a/", b"a0")) == [(b"a/1", b"changed"), (b"a/3", b"a/3"), (b"a/4", b"new")]

    store.discard()
    assert [k for k, _ in store.iterate()] == [b"a/1", b"a/2", b"a/3", b"b/1"]


def test_root_hash_matches_memory_store_for_same_contents(tmp_path: Path) -> None:
    sq = open_sqlite_store(str(tmp_path / "simchain.db"))
    mem = MemoryKVStore()
    for store in (sq, mem):
        h = NamespaceAllocator(store).allocate_one("bank")
        h.set_json(b"supply/stake", 100)
        h.set_json(b"balances/alice/stake", 100)

    assert sq.root_hash() == mem.root_hash()
    sq.commit()
    assert sq.root_hash() == mem.root_hash()

    mem.set(b"bank/extra", b"1")
    assert sq.root_hash() != mem.root_hash()


def test_schema_version_mismatch_refuses_to_start(tmp_path: Path) -> None:
    path = tmp_path / "simchain.db"
    SqliteDB(path=str(path)).init_schema()

    con = sqlite3.connect(str(path))
    con.execute("UPDATE meta SET value='99' WHERE key='schema_version';")
    con.commit()
    con.close()

    with pytest.raises(RuntimeError):
        SqliteDB(path=str(path)).init_schema()


def test_sqlite_uses_wal(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SIMCHAIN_MODE", "dev")
    monkeypatch.delenv("SIMCHAIN_SQLITE_SYNCHRONOUS", raising=False)
    db = SqliteDB(path=str(tmp_path / "nested" / "simchain.db"))
    db.init_schema()
    with db.connection() as con:
        assert str(con.execute("PRAGMA journal_mode;").fetchone()[0]).lower() == "wal"
        # NORMAL is the non-prod default
        assert int(con.execute("PRAGMA synchronous;").fetchone()[0]) == 1
