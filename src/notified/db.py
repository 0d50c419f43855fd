from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from .migrations import apply_migrations

_MIGRATED_PATHS: set[str] = set()
_MIGRATION_LOCK = threading.Lock()


def get_state_db_path() -> str:
    explicit = os.environ.get("NF_DB_PATH")
    if explicit:
        return explicit
    data_dir = os.environ.get("NF_DATA_DIR", "/data")
    return os.path.join(data_dir, "state.sqlite3")


class DBConn:
    def __init__(self, conn: sqlite3.Connection, path: str) -> None:
        self._conn = conn
        self.path = path

    def execute(self, sql: str, params: tuple | list | None = None) -> sqlite3.Cursor:
        return self._conn.execute(sql, params or ())

    def executemany(self, sql: str, seq_of_params) -> sqlite3.Cursor:
        return self._conn.executemany(sql, seq_of_params)

    @contextmanager
    def transaction(self) -> Iterator["DBConn"]:
        # BEGIN IMMEDIATE takes the write lock up front so a read-modify-write
        # inside the block cannot interleave with another writer.
        if self._conn.in_transaction:
            self._conn.commit()
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield self
        except BaseException:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)


def connect_db(path: str | None = None) -> DBConn:
    path = path or get_state_db_path()
    if path != ":memory:":
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
    raw = sqlite3.connect(path, timeout=5.0, check_same_thread=False)
    raw.execute("PRAGMA journal_mode=WAL")
    raw.execute("PRAGMA synchronous=NORMAL")
    raw.execute("PRAGMA busy_timeout=5000")
    with _MIGRATION_LOCK:
        if path == ":memory:" or path not in _MIGRATED_PATHS:
            apply_migrations(raw)
            _MIGRATED_PATHS.add(path)
    return DBConn(raw, path)
