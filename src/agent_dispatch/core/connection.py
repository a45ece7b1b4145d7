"""
Connection factory for the execution store.

``create_connection()`` is the canonical way to open the store's database.
It accepts a URL, a bare file path, or a keyword and returns the connection
together with metadata about what was opened.

    create_connection()                          → in-memory SQLite
    create_connection("runs.db")                 → file SQLite
    create_connection("sqlite:///data/runs.db")  → file SQLite
    create_connection("memory", init_schema=True)

Tags:
    database, connection, factory, sqlite, agent-dispatch

Doc-Types:
    api-reference
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path

from agent_dispatch.core.errors import BackendUnconfiguredError, PersistenceError
from agent_dispatch.core.logging import get_logger
from agent_dispatch.core.schema import apply_schema
from agent_dispatch.core.sqlite_conn import SqliteConnection

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConnectionInfo:
    """Metadata about the opened connection."""

    backend: str
    persistent: bool
    url: str
    resolved_path: str | None = None

    @property
    def is_sqlite(self) -> bool:
        return self.backend == "sqlite"


def _parse_url(db: str | None) -> tuple[str, str]:
    """Parse a database URL into (scheme, target).

    scheme is one of ``"memory"``, ``"sqlite"``, ``"file"`` or the
    unsupported scheme that was given.
    """
    if db is None or db in ("", "memory", ":memory:"):
        return "memory", ":memory:"

    for prefix in ("sqlite:///", "sqlite://"):
        if db.startswith(prefix):
            path = db[len(prefix):]
            if not path or path == ":memory:":
                return "memory", ":memory:"
            return "sqlite", path

    if "://" in db:
        return db.split("://", 1)[0], db

    return "file", db


def create_connection(
    db: str | None = None,
    *,
    init_schema: bool = False,
) -> tuple[SqliteConnection, ConnectionInfo]:
    """Create a database connection from a URL, path, or keyword.

    Raises:
        BackendUnconfiguredError: unsupported URL scheme.
        PersistenceError: the database could not be opened or initialised.
    """
    scheme, target = _parse_url(db)

    if scheme not in ("memory", "sqlite", "file"):
        raise BackendUnconfiguredError(
            f"Unsupported database URL scheme {scheme!r}; use sqlite:///path or 'memory'",
            details={"scheme": scheme},
        )

    try:
        if scheme == "memory":
            conn = SqliteConnection(":memory:")
            info = ConnectionInfo(backend="sqlite", persistent=False, url=":memory:")
        else:
            path = Path(target)
            path.parent.mkdir(parents=True, exist_ok=True)
            resolved = str(path.resolve())
            conn = SqliteConnection(resolved)
            info = ConnectionInfo(
                backend="sqlite",
                persistent=True,
                url=target,
                resolved_path=resolved,
            )

        if init_schema:
            tables = apply_schema(conn)
            logger.debug("schema_applied", tables=tables, url=info.url)
    except (sqlite3.Error, OSError) as exc:
        raise PersistenceError(
            f"Cannot open database {target!r}: {exc}",
            cause=exc,
        ) from exc

    logger.info("database_connected", backend=info.backend, persistent=info.persistent)
    return conn, info
