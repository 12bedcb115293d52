# src/simchain/runtime/sqlite_db.py
from __future__ import annotations

import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from simchain.runtime.store import BackingStore

SCHEMA_VERSION = 1

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT NOT NULL);",
    "CREATE TABLE IF NOT EXISTS kv (key BLOB PRIMARY KEY, value BLOB NOT NULL);",
)

_SYNC_MODES = ("OFF", "NORMAL", "FULL", "EXTRA")

_UPSERT_KV = "INSERT INTO kv(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value=excluded.value;"
_UPSERT_META = "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value=excluded.value;"


def _ms_setting(name: str, default: int) -> int:
    raw = str(os.environ.get(name, "")).strip()
    if not raw:
        return int(default)
    try:
        return max(0, int(raw))
    except ValueError:
        return int(default)


def synchronous_mode() -> str:
    """PRAGMA synchronous for the store file.

    FULL in prod, NORMAL elsewhere; SIMCHAIN_SQLITE_SYNCHRONOUS overrides.
    """
    mode = (os.environ.get("SIMCHAIN_MODE") or "prod").strip().lower()
    fallback = "FULL" if mode == "prod" else "NORMAL"
    want = (os.environ.get("SIMCHAIN_SQLITE_SYNCHRONOUS") or fallback).strip().upper()
    return want if want in _SYNC_MODES else fallback


def _is_busy(e: sqlite3.OperationalError) -> bool:
    msg = str(e).lower()
    return "locked" in msg or "busy" in msg


class SqliteDB:
    """One SQLite file holding the committed key/value set and commit meta.

    Connections are opened per operation and never shared. The file must be
    in WAL mode; write_tx() retries BEGIN IMMEDIATE with jittered backoff
    while another writer holds the lock, then gives up.
    """

    def __init__(self, *, path: str) -> None:
        self.path = str(path)

    def _open(self) -> sqlite3.Connection:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        timeout_ms = _ms_setting("SIMCHAIN_SQLITE_CONNECT_TIMEOUT_MS", 30_000)
        con = sqlite3.connect(self.path, timeout=timeout_ms / 1000.0, isolation_level=None, check_same_thread=False)
        con.row_factory = sqlite3.Row
        try:
            journal = str(con.execute("PRAGMA journal_mode=WAL;").fetchone()[0]).lower()
            if journal != "wal":
                raise RuntimeError(f"sqlite journal_mode is '{journal}', expected 'wal'")
            con.execute(f"PRAGMA synchronous={synchronous_mode()};")
            con.execute("PRAGMA temp_store=MEMORY;")
            con.execute(f"PRAGMA busy_timeout={_ms_setting('SIMCHAIN_SQLITE_BUSY_TIMEOUT_MS', timeout_ms)};")
        except Exception:
            con.close()
            raise
        return con

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._open()
        try:
            yield con
        finally:
            con.close()

    def _begin_immediate(self, con: sqlite3.Connection) -> None:
        deadline = time.monotonic() + max(250, _ms_setting("SIMCHAIN_SQLITE_WRITE_DEADLINE_MS", 30_000)) / 1000.0
        delay = 0.005
        while True:
            try:
                con.execute("BEGIN IMMEDIATE;")
                return
            except sqlite3.OperationalError as e:
                if not _is_busy(e) or time.monotonic() >= deadline:
                    raise
                time.sleep(delay * (0.5 + random.random()))
                delay = min(0.25, delay * 2)

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        with self.connection() as con:
            self._begin_immediate(con)
            try:
                yield con
            except Exception:
                con.execute("ROLLBACK;")
                raise
            con.execute("COMMIT;")

    def init_schema(self) -> None:
        """Create tables on first open; refuse a file written by another schema version."""
        with self.write_tx() as con:
            for stmt in _SCHEMA:
                con.execute(stmt)
            row = con.execute("SELECT value FROM meta WHERE key='schema_version';").fetchone()
            if row is None:
                con.execute(_UPSERT_META, ("schema_version", str(SCHEMA_VERSION)))
                return
            have = str(row["value"])
            if have != str(SCHEMA_VERSION):
                raise RuntimeError(f"sqlite schema_version mismatch: have={have} want={SCHEMA_VERSION}")


_DELETED = None


class SqliteKVStore(BackingStore):
    """Backing store persisted in SQLite.

    Writes land in an in-memory write set and become durable only on
    commit(), which flushes the whole set (plus commit metadata) inside a
    single write transaction. A step that never commits leaves the file
    untouched.
    """

    def __init__(self, *, db: SqliteDB) -> None:
        super().__init__()
        self._db = db
        self._db.init_schema()
        # key -> value, or _DELETED for a pending delete
        self._pending: Dict[bytes, Optional[bytes]] = {}

    @property
    def path(self) -> str:
        return self._db.path

    def get(self, key: bytes) -> Optional[bytes]:
        k = bytes(key)
        if k in self._pending:
            return self._pending[k]
        with self._db.connection() as con:
            row = con.execute("SELECT value FROM kv WHERE key=?;", (k,)).fetchone()
        return bytes(row["value"]) if row is not None else None

    def set(self, key: bytes, value: bytes) -> None:
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError(f"store values must be bytes, got {type(value)}")
        self._pending[bytes(key)] = bytes(value)

    def delete(self, key: bytes) -> None:
        self._pending[bytes(key)] = _DELETED

    def iterate(self, start: bytes = b"", end: Optional[bytes] = None) -> Iterator[Tuple[bytes, bytes]]:
        lo = bytes(start)
        merged: Dict[bytes, Optional[bytes]] = {}
        with self._db.connection() as con:
            if end is None:
                rows = con.execute("SELECT key, value FROM kv WHERE key >= ? ORDER BY key;", (lo,)).fetchall()
            else:
                rows = con.execute(
                    "SELECT key, value FROM kv WHERE key >= ? AND key < ? ORDER BY key;", (lo, bytes(end))
                ).fetchall()
        for row in rows:
            merged[bytes(row["key"])] = bytes(row["value"])

        for k, v in self._pending.items():
            if k < lo or (end is not None and k >= end):
                continue
            merged[k] = v

        for k in sorted(merged.keys()):
            v = merged[k]
            if v is not _DELETED:
                yield k, v  # type: ignore[misc]

    def has_pending_writes(self) -> bool:
        return bool(self._pending)

    def discard(self) -> None:
        """Drop every uncommitted write."""
        self._pending.clear()

    def commit(self, meta: Optional[Dict[str, str]] = None) -> None:
        pending = self._pending
        with self._db.write_tx() as con:
            for k in sorted(pending.keys()):
                v = pending[k]
                if v is _DELETED:
                    con.execute("DELETE FROM kv WHERE key=?;", (k,))
                else:
                    con.execute(_UPSERT_KV, (k, v))
            for mk, mv in (meta or {}).items():
                con.execute(_UPSERT_META, (str(mk), str(mv)))
        self._pending = {}

    def get_meta(self, key: str) -> Optional[str]:
        with self._db.connection() as con:
            row = con.execute("SELECT value FROM meta WHERE key=?;", (str(key),)).fetchone()
        return str(row["value"]) if row is not None else None


def open_sqlite_store(path: str) -> SqliteKVStore:
    return SqliteKVStore(db=SqliteDB(path=path))
