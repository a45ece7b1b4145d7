"""Database schema for the execution store.

``executions`` is the state-machine table, ``status_transitions`` the
append-only audit log (ordered by ``seq``), and ``execution_artifacts``
holds artifact metadata registered by the artifact collector.
"""

from __future__ import annotations

from typing import Any

SCHEMA_VERSION = 1

EXECUTIONS_DDL = """
CREATE TABLE IF NOT EXISTS executions (
    id              TEXT PRIMARY KEY,
    prompt          TEXT NOT NULL,
    model           TEXT NOT NULL,
    max_tokens      INTEGER NOT NULL,
    metadata        TEXT NOT NULL DEFAULT '{}',
    timeout_seconds INTEGER,
    callback_url    TEXT,
    resources       TEXT,
    status          TEXT NOT NULL,
    job_name        TEXT NOT NULL,
    pod_name        TEXT,
    created_at      TEXT NOT NULL,
    started_at      TEXT,
    completed_at    TEXT,
    updated_at      TEXT NOT NULL,
    output          TEXT,
    tokens_used     INTEGER,
    input_tokens    INTEGER,
    output_tokens   INTEGER,
    estimated_cost  REAL,
    error_code      TEXT,
    error_message   TEXT,
    error_details   TEXT,
    retain_until    TEXT,
    is_permanent    INTEGER NOT NULL DEFAULT 0,
    version         INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status);
CREATE INDEX IF NOT EXISTS idx_executions_created_at ON executions(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_executions_model ON executions(model);
"""

STATUS_TRANSITIONS_DDL = """
CREATE TABLE IF NOT EXISTS status_transitions (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    execution_id    TEXT NOT NULL REFERENCES executions(id),
    from_status     TEXT,
    to_status       TEXT NOT NULL,
    transitioned_at TEXT NOT NULL,
    reason          TEXT
);
CREATE INDEX IF NOT EXISTS idx_status_transitions_execution
    ON status_transitions(execution_id, seq);
"""

ARTIFACTS_DDL = """
CREATE TABLE IF NOT EXISTS execution_artifacts (
    id              TEXT PRIMARY KEY,
    execution_id    TEXT NOT NULL REFERENCES executions(id),
    file_name       TEXT NOT NULL,
    file_path       TEXT NOT NULL,
    file_size       INTEGER NOT NULL DEFAULT 0,
    mime_type       TEXT,
    checksum        TEXT,
    type            TEXT NOT NULL DEFAULT 'OTHER',
    status          TEXT NOT NULL DEFAULT 'ACTIVE',
    created_at      TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_execution_artifacts_execution
    ON execution_artifacts(execution_id);
"""

ALL_DDL = (EXECUTIONS_DDL, STATUS_TRANSITIONS_DDL, ARTIFACTS_DDL)

TABLES = ("executions", "status_transitions", "execution_artifacts")


def apply_schema(conn: Any) -> list[str]:
    """Create all tables and indexes (idempotent). Returns table names."""
    for ddl in ALL_DDL:
        conn.executescript(ddl)
    return list(TABLES)
