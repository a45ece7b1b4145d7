"""Execution store - durable record of executions and their transitions.

The ExecutionStore is the single source of truth for execution state.
Every status change goes through :meth:`ExecutionStore.apply_transition`,
which runs read → validate → write → audit as one ``BEGIN IMMEDIATE``
transaction guarded by a ``version`` compare-and-swap.

Architecture:

    .. code-block:: text

        ExecutionStore
        ┌───────────────────────────────────────────────────────────┐
        │  create()            INSERT executions (PENDING, v1)      │
        │                      INSERT status_transitions (∅→PENDING)│
        │                                                           │
        │  apply_transition()  SELECT status, version               │
        │                      validate_execution_transition()      │
        │                      UPDATE … WHERE id=? AND version=?    │
        │                      INSERT status_transitions            │
        │                                                           │
        │  get_by_id() / list() / get_transitions() / list_by_status│
        │  record_artifact()                                        │
        ├───────────────────────────────────────────────────────────┤
        │  executions ──< status_transitions   (ordered by seq)     │
        │  executions ──< execution_artifacts                       │
        └───────────────────────────────────────────────────────────┘

Example:
    >>> conn, _ = create_connection("memory", init_schema=True)
    >>> store = ExecutionStore(conn)
    >>> execution = store.create(prompt="hello", model="m", max_tokens=10)
    >>> store.apply_transition(execution.id, ExecutionStatus.RUNNING)
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from agent_dispatch.core.errors import InvalidInputError, NotFoundError, PersistenceError
from agent_dispatch.core.logging import get_logger
from agent_dispatch.execution.backends._types import ResourceHints
from agent_dispatch.execution.listing import query_summaries, to_db_timestamp
from agent_dispatch.execution.models import (
    MAX_PAGE_SIZE,
    Artifact,
    Execution,
    ExecutionFilter,
    ExecutionStatus,
    ExecutionSummary,
    InvalidTransitionError,
    Pagination,
    StatusTransition,
    TransitionFields,
    stored_job_name,
    utcnow,
    validate_execution_transition,
)

logger = get_logger(__name__)

EXECUTION_COLUMNS = """
    id, prompt, model, max_tokens, metadata, timeout_seconds, callback_url,
    resources, status, job_name, pod_name, created_at, started_at,
    completed_at, updated_at, output, tokens_used, input_tokens,
    output_tokens, estimated_cost, error_code, error_message, error_details,
    retain_until, is_permanent, version
"""


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class ExecutionStore:
    """Persistence for executions, status transitions and artifact metadata.

    Only the lifecycle engine (and the reconciler through it) should call the
    mutating methods.
    """

    def __init__(
        self,
        conn,
        *,
        job_name_prefix: str = "claude-agent",
        max_page_size: int = MAX_PAGE_SIZE,
        persistent: bool = True,
    ):
        """Initialize with a :class:`SqliteConnection` whose schema is applied.

        ``persistent=False`` marks a store that does not outlive the process
        (``memory``); it cannot tell which live jobs belong to it.
        """
        self._conn = conn
        self.job_name_prefix = job_name_prefix
        self.max_page_size = max_page_size
        self.persistent = persistent

    # =========================================================================
    # EXECUTION CRUD
    # =========================================================================

    def create(
        self,
        *,
        prompt: str,
        model: str,
        max_tokens: int,
        metadata: dict[str, Any] | None = None,
        timeout_seconds: int | None = None,
        callback_url: str | None = None,
        resources: ResourceHints | None = None,
    ) -> Execution:
        """Persist a new PENDING execution and its initial transition atomically."""
        execution_id = str(uuid.uuid4())
        now = to_db_timestamp(utcnow())
        job_name = stored_job_name(self.job_name_prefix, execution_id)

        try:
            with self._conn.transaction():
                self._conn.execute(
                    """
                    INSERT INTO executions (
                        id, prompt, model, max_tokens, metadata, timeout_seconds,
                        callback_url, resources, status, job_name, created_at,
                        updated_at, version
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                    """,
                    (
                        execution_id,
                        prompt,
                        model,
                        max_tokens,
                        json.dumps(metadata or {}),
                        timeout_seconds,
                        callback_url,
                        json.dumps(resources.to_dict()) if resources else None,
                        ExecutionStatus.PENDING.value,
                        job_name,
                        now,
                        now,
                    ),
                )
                self._insert_transition(execution_id, None, ExecutionStatus.PENDING, now, None)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to create execution: {exc}", cause=exc) from exc

        logger.info("execution_created", execution_id=execution_id, job_name=job_name, model=model)
        return self._require(execution_id)

    def get_by_id(
        self,
        execution_id: str,
        *,
        include_transitions: bool = False,
        include_artifacts: bool = False,
    ) -> Execution | None:
        """Get an execution by id, or ``None`` if it does not exist."""
        try:
            row = self._conn.query_one(
                f"SELECT {EXECUTION_COLUMNS} FROM executions WHERE id = ?",
                (execution_id,),
            )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to read execution: {exc}", cause=exc) from exc
        if row is None:
            return None
        execution = self._row_to_execution(row)
        if include_transitions:
            execution.status_transitions = self.get_transitions(execution_id)
        if include_artifacts:
            execution.artifacts = self.get_artifacts(execution_id)
        return execution

    def list(
        self,
        flt: ExecutionFilter | None = None,
        pagination: Pagination | None = None,
    ) -> tuple[list[ExecutionSummary], int]:
        """Filtered, paginated summaries, newest first. Returns ``(items, total)``."""
        try:
            return query_summaries(
                self._conn,
                flt,
                pagination or Pagination(),
                max_page_size=self.max_page_size,
            )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to list executions: {exc}", cause=exc) from exc

    def list_by_status(
        self,
        statuses: Iterable[ExecutionStatus],
        *,
        limit: int | None = None,
    ) -> list[Execution]:
        """Full executions in the given statuses, oldest first."""
        values = [ExecutionStatus(s).value for s in statuses]
        if not values:
            return []
        placeholders = ", ".join("?" for _ in values)
        sql = (
            f"SELECT {EXECUTION_COLUMNS} FROM executions "
            f"WHERE status IN ({placeholders}) ORDER BY created_at ASC, rowid ASC"
        )
        params: list[Any] = list(values)
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        try:
            rows = self._conn.query(sql, params)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to list executions: {exc}", cause=exc) from exc
        return [self._row_to_execution(r) for r in rows]

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def apply_transition(
        self,
        execution_id: str,
        new_status: ExecutionStatus,
        fields: TransitionFields | None = None,
        reason: str | None = None,
    ) -> Execution:
        """Validate and apply one status change, appending its audit row.

        Raises:
            NotFoundError: unknown execution id.
            InvalidTransitionError: the current status forbids *new_status*.
            InvalidInputError: result/error fields on a non-terminal target.
        """
        supplied = fields.supplied() if fields else {}
        result_fields = fields.result_fields() if fields else {}
        if result_fields and not new_status.is_terminal:
            raise InvalidInputError(
                f"Result fields are only accepted on terminal transitions, not {new_status.value}",
                field=sorted(result_fields)[0],
            )

        try:
            with self._conn.transaction():
                row = self._conn.query_one(
                    "SELECT status, version, started_at, pod_name FROM executions WHERE id = ?",
                    (execution_id,),
                )
                if row is None:
                    raise NotFoundError("Execution", execution_id)

                current = ExecutionStatus(row["status"])
                validate_execution_transition(current, new_status)

                now = to_db_timestamp(utcnow())
                updates: dict[str, Any] = {"status": new_status.value, "updated_at": now}
                if new_status == ExecutionStatus.RUNNING and row["started_at"] is None:
                    updates["started_at"] = now
                if new_status.is_terminal:
                    updates["completed_at"] = now
                if supplied.get("pod_name") and row["pod_name"] is None:
                    updates["pod_name"] = supplied["pod_name"]
                for name, value in result_fields.items():
                    updates[name] = json.dumps(value) if name == "error_details" else value

                assignments = ", ".join(f"{name} = ?" for name in updates)
                self._conn.execute(
                    f"UPDATE executions SET {assignments}, version = version + 1 "
                    "WHERE id = ? AND version = ?",
                    [*updates.values(), execution_id, row["version"]],
                )
                if self._conn.rowcount != 1:
                    observed = self._conn.query_one(
                        "SELECT status FROM executions WHERE id = ?", (execution_id,)
                    )
                    raise InvalidTransitionError(
                        observed["status"] if observed else current.value,
                        new_status.value,
                    )

                self._insert_transition(execution_id, current, new_status, now, reason)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to apply transition: {exc}", cause=exc) from exc

        logger.info(
            "execution_transitioned",
            execution_id=execution_id,
            from_status=current.value,
            to_status=new_status.value,
            reason=reason,
        )
        return self._require(execution_id)

    def record_pod_name(self, execution_id: str, pod_name: str) -> bool:
        """Set ``pod_name`` if it is still empty. Returns True when it was set.

        Leaves status untouched, so no transition row is written.
        """
        try:
            with self._conn.transaction():
                self._conn.execute(
                    "UPDATE executions SET pod_name = ?, updated_at = ?, version = version + 1 "
                    "WHERE id = ? AND pod_name IS NULL",
                    (pod_name, to_db_timestamp(utcnow()), execution_id),
                )
                updated = self._conn.rowcount == 1
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to record pod name: {exc}", cause=exc) from exc
        if updated:
            logger.debug("pod_name_recorded", execution_id=execution_id, pod_name=pod_name)
        return updated

    def get_transitions(self, execution_id: str) -> list[StatusTransition]:
        """All transitions for an execution in write order."""
        try:
            rows = self._conn.query(
                """
                SELECT seq, execution_id, from_status, to_status, transitioned_at, reason
                FROM status_transitions
                WHERE execution_id = ?
                ORDER BY seq ASC
                """,
                (execution_id,),
            )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to read transitions: {exc}", cause=exc) from exc
        return [self._row_to_transition(r) for r in rows]

    # =========================================================================
    # ARTIFACTS
    # =========================================================================

    def record_artifact(
        self,
        execution_id: str,
        *,
        file_name: str,
        file_path: str,
        file_size: int = 0,
        mime_type: str | None = None,
        checksum: str | None = None,
        type: str = "OTHER",
    ) -> Artifact:
        """Register artifact metadata for an execution. Never changes status."""
        artifact_id = str(uuid.uuid4())
        now = to_db_timestamp(utcnow())
        try:
            with self._conn.transaction():
                if self._conn.query_one("SELECT 1 FROM executions WHERE id = ?", (execution_id,)) is None:
                    raise NotFoundError("Execution", execution_id)
                self._conn.execute(
                    """
                    INSERT INTO execution_artifacts (
                        id, execution_id, file_name, file_path, file_size,
                        mime_type, checksum, type, status, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'ACTIVE', ?)
                    """,
                    (artifact_id, execution_id, file_name, file_path, file_size,
                     mime_type, checksum, type, now),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to record artifact: {exc}", cause=exc) from exc
        logger.debug("artifact_recorded", execution_id=execution_id, file_name=file_name)
        return Artifact(
            id=artifact_id,
            execution_id=execution_id,
            file_name=file_name,
            file_path=file_path,
            file_size=file_size,
            created_at=datetime.fromisoformat(now),
            type=type,
            mime_type=mime_type,
            checksum=checksum,
        )

    def get_artifacts(self, execution_id: str) -> list[Artifact]:
        try:
            rows = self._conn.query(
                """
                SELECT id, execution_id, file_name, file_path, file_size, mime_type,
                       checksum, type, status, created_at
                FROM execution_artifacts
                WHERE execution_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (execution_id,),
            )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to read artifacts: {exc}", cause=exc) from exc
        return [
            Artifact(
                id=r["id"],
                execution_id=r["execution_id"],
                file_name=r["file_name"],
                file_path=r["file_path"],
                file_size=r["file_size"],
                created_at=datetime.fromisoformat(r["created_at"]),
                type=r["type"],
                status=r["status"],
                mime_type=r["mime_type"],
                checksum=r["checksum"],
            )
            for r in rows
        ]

    # =========================================================================
    # ROW MAPPING
    # =========================================================================

    def _require(self, execution_id: str) -> Execution:
        execution = self.get_by_id(execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        return execution

    def _insert_transition(
        self,
        execution_id: str,
        from_status: ExecutionStatus | None,
        to_status: ExecutionStatus,
        at: str,
        reason: str | None,
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO status_transitions (
                execution_id, from_status, to_status, transitioned_at, reason
            ) VALUES (?, ?, ?, ?, ?)
            """,
            (
                execution_id,
                from_status.value if from_status else None,
                to_status.value,
                at,
                reason,
            ),
        )

    def _row_to_execution(self, row: Any) -> Execution:
        """Convert a database row to an Execution object."""
        return Execution(
            id=row["id"],
            prompt=row["prompt"],
            model=row["model"],
            max_tokens=row["max_tokens"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            timeout_seconds=row["timeout_seconds"],
            callback_url=row["callback_url"],
            resources=ResourceHints.from_dict(json.loads(row["resources"])) if row["resources"] else None,
            status=ExecutionStatus(row["status"]),
            job_name=row["job_name"],
            pod_name=row["pod_name"],
            created_at=_parse_ts(row["created_at"]),
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            output=row["output"],
            tokens_used=row["tokens_used"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            estimated_cost=row["estimated_cost"],
            error_code=row["error_code"],
            error_message=row["error_message"],
            error_details=json.loads(row["error_details"]) if row["error_details"] else None,
            retain_until=_parse_ts(row["retain_until"]),
            is_permanent=bool(row["is_permanent"]),
            version=row["version"],
        )

    def _row_to_transition(self, row: Any) -> StatusTransition:
        return StatusTransition(
            seq=row["seq"],
            execution_id=row["execution_id"],
            from_status=ExecutionStatus(row["from_status"]) if row["from_status"] else None,
            to_status=ExecutionStatus(row["to_status"]),
            transitioned_at=datetime.fromisoformat(row["transitioned_at"]),
            reason=row["reason"],
        )


__all__ = ["ExecutionStore"]
