"""SQLite connection adapter.

Wraps a raw :class:`sqlite3.Connection` so store code can run
``execute`` / ``fetchone`` / ``fetchall`` on one object and group
statements into an explicit write transaction.

The underlying connection runs in autocommit mode; :meth:`transaction`
opens ``BEGIN IMMEDIATE`` so the write lock is taken before the first
read of a read-validate-write sequence. A re-entrant lock serializes
threads sharing the adapter.

Usage::

    conn = SqliteConnection(":memory:")
    with conn.transaction():
        conn.execute("INSERT INTO t VALUES (?)", (1,))
    conn.execute("SELECT * FROM t")
    row = conn.fetchone()
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any


def _casefold(value: str | None) -> str | None:
    return value.casefold() if value is not None else None


class SqliteConnection:
    """Adapter around ``sqlite3.Connection`` with explicit transactions.

    Maintains a single cursor so that ``execute`` / ``fetchone`` /
    ``fetchall`` operate on the same result set.
    """

    def __init__(self, path: str = ":memory:", *, row_factory: Any = sqlite3.Row) -> None:
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = row_factory
        self._conn.execute("PRAGMA foreign_keys = ON")
        # SQLite's LOWER() and LIKE fold ASCII only
        self._conn.create_function("casefold", 1, _casefold, deterministic=True)
        self._cursor = self._conn.cursor()
        self._lock = threading.RLock()
        self._depth = 0
        self.path = path

    # -- Connection protocol -----------------------------------------------

    def execute(self, sql: str, params: tuple | list = ()) -> Any:
        with self._lock:
            self._cursor.execute(sql, params)
            return self._cursor

    def executescript(self, script: str) -> None:
        with self._lock:
            self._conn.executescript(script)

    def fetchone(self) -> Any:
        return self._cursor.fetchone()

    def fetchall(self) -> list:
        return self._cursor.fetchall()

    def query(self, sql: str, params: tuple | list = ()) -> list:
        """Execute and fetch all rows while holding the lock."""
        with self._lock:
            self._cursor.execute(sql, params)
            return self._cursor.fetchall()

    def query_one(self, sql: str, params: tuple | list = ()) -> Any:
        with self._lock:
            self._cursor.execute(sql, params)
            return self._cursor.fetchone()

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount

    def commit(self) -> None:
        if self._conn.in_transaction:
            self._conn.commit()

    def rollback(self) -> None:
        if self._conn.in_transaction:
            self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    # -- transactions ------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[SqliteConnection]:
        """Run the enclosed statements as one atomic write unit.

        Nested calls join the outer transaction.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._conn.rollback()
                raise
            else:
                self._conn.commit()
            finally:
                self._depth = 0

    @contextmanager
    def locked(self) -> Iterator[SqliteConnection]:
        """Hold the adapter lock across a multi-statement read."""
        with self._lock:
            yield self

    # -- convenience -------------------------------------------------------

    @property
    def raw(self) -> sqlite3.Connection:
        """Access the underlying ``sqlite3.Connection`` (e.g. for pragmas)."""
        return self._conn

    def __repr__(self) -> str:
        return f"SqliteConnection({self.path!r})"
