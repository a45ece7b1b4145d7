"""Query/listing layer for executions.

Turns an :class:`ExecutionFilter` + :class:`Pagination` into SQL, runs the
count and page queries, and shapes rows into :class:`ExecutionSummary`
items. Read-only: nothing here takes the write lock.

.. code-block:: text

    ExecutionFilter ──► build_where() ──► WHERE … (AND-ed, parameterised)
    Pagination      ──► clamp page_size ──► LIMIT/OFFSET
                                         ──► ExecutionPage(items, total, page,
                                                           page_size, total_pages)

Ordering is ``created_at DESC`` with later inserts first on equal
timestamps.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from agent_dispatch.execution.models import (
    MAX_PAGE_SIZE,
    SUMMARY_PROMPT_LENGTH,
    ExecutionFilter,
    ExecutionStatus,
    ExecutionSummary,
    Pagination,
)

LIKE_ESCAPE = "\\"

SUMMARY_COLUMNS = """
    e.id, e.prompt, e.model, e.status, e.created_at, e.completed_at,
    e.tokens_used, e.estimated_cost,
    (SELECT COUNT(*) FROM execution_artifacts a WHERE a.execution_id = e.id) AS artifact_count
"""

ORDER_BY = "ORDER BY e.created_at DESC, e.rowid DESC"


@dataclass(frozen=True)
class ExecutionPage:
    """One page of execution summaries."""

    items: list[ExecutionSummary] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = MAX_PAGE_SIZE
    total_pages: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "total": self.total,
            "page": self.page,
            "pageSize": self.page_size,
            "totalPages": self.total_pages,
        }


def to_db_timestamp(value: datetime) -> str:
    """Normalise a datetime to the stored UTC ISO-8601 form (naive means UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so *term* matches literally."""
    return (
        term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


def truncate_prompt(prompt: str, limit: int = SUMMARY_PROMPT_LENGTH) -> str:
    if len(prompt) <= limit:
        return prompt
    return prompt[:limit] + "..."


def build_where(flt: ExecutionFilter | None) -> tuple[str, list[Any]]:
    """Build a ``WHERE`` clause (possibly empty) and its parameters."""
    if flt is None:
        return "", []

    clauses: list[str] = []
    params: list[Any] = []

    statuses = flt.statuses()
    if statuses:
        placeholders = ", ".join("?" for _ in statuses)
        clauses.append(f"e.status IN ({placeholders})")
        params.extend(s.value for s in statuses)
    if flt.model:
        clauses.append("e.model = ?")
        params.append(flt.model)
    if flt.created_after:
        clauses.append("e.created_at >= ?")
        params.append(to_db_timestamp(flt.created_after))
    if flt.created_before:
        clauses.append("e.created_at <= ?")
        params.append(to_db_timestamp(flt.created_before))
    if flt.search:
        # casefold() is registered by SqliteConnection; both sides fold full Unicode
        clauses.append(f"casefold(e.prompt) LIKE ? ESCAPE '{LIKE_ESCAPE}'")
        params.append(f"%{escape_like(flt.search.casefold())}%")
    if flt.has_artifacts is not None:
        exists = "EXISTS (SELECT 1 FROM execution_artifacts a WHERE a.execution_id = e.id)"
        clauses.append(exists if flt.has_artifacts else f"NOT {exists}")

    if not clauses:
        return "", []
    return "WHERE " + " AND ".join(clauses), params


def effective_page_size(pagination: Pagination, max_page_size: int = MAX_PAGE_SIZE) -> int:
    return max(1, min(pagination.page_size, max_page_size, MAX_PAGE_SIZE))


def total_pages(total: int, page_size: int) -> int:
    return math.ceil(total / page_size) if page_size else 0


def row_to_summary(row: Any) -> ExecutionSummary:
    return ExecutionSummary(
        id=row["id"],
        prompt=truncate_prompt(row["prompt"]),
        model=row["model"],
        status=ExecutionStatus(row["status"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
        tokens_used=row["tokens_used"],
        estimated_cost=row["estimated_cost"],
        artifact_count=row["artifact_count"] or 0,
    )


def query_summaries(
    conn: Any,
    flt: ExecutionFilter | None,
    pagination: Pagination,
    *,
    max_page_size: int = MAX_PAGE_SIZE,
) -> tuple[list[ExecutionSummary], int]:
    """Run the count and page queries. Returns ``(items, total)``."""
    where, params = build_where(flt)
    page_size = effective_page_size(pagination, max_page_size)
    offset = (pagination.page - 1) * page_size

    count_row = conn.query_one(f"SELECT COUNT(*) AS n FROM executions e {where}", params)
    total = count_row["n"] if count_row else 0

    rows = conn.query(
        f"SELECT {SUMMARY_COLUMNS} FROM executions e {where} {ORDER_BY} LIMIT ? OFFSET ?",
        [*params, page_size, offset],
    )
    return [row_to_summary(r) for r in rows], total


def build_page(
    items: list[ExecutionSummary],
    total: int,
    pagination: Pagination,
    *,
    max_page_size: int = MAX_PAGE_SIZE,
) -> ExecutionPage:
    page_size = effective_page_size(pagination, max_page_size)
    return ExecutionPage(
        items=items,
        total=total,
        page=pagination.page,
        page_size=page_size,
        total_pages=total_pages(total, page_size),
    )


__all__ = [
    "ExecutionPage",
    "build_page",
    "build_where",
    "escape_like",
    "query_summaries",
    "to_db_timestamp",
    "total_pages",
    "truncate_prompt",
]
