"""Execution Lifecycle Engine: the state machine's only entry point.

The ``ExecutionEngine`` is the facade callers use to create, read, list,
cancel and advance executions. It validates inputs at the boundary,
applies configured defaults, talks to the job backend, and routes every
status change through :meth:`ExecutionStore.apply_transition`.

Architecture:

    .. code-block:: text

        ExecutionEngine — Central Facade
        ┌─────────────────────────────────────────────────────────────┐
        │  create(input)                                              │
        │    ├── validate (CreateExecutionInput, prompt length)       │
        │    ├── apply defaults (model, max tokens, timeout)          │
        │    └── store.create() → PENDING + (∅→PENDING)               │
        │                                                             │
        │  cancel(id, reason?)                                        │
        │    ├── get execution (NotFound first)                       │
        │    ├── status ∈ {PENDING, RUNNING}? else InvalidState       │
        │    ├── backend.delete_job(id)   best-effort, logged         │
        │    └── store.apply_transition(CANCELLED, reason)            │
        │                                                             │
        │  update_status(id, status, fields?)   reconciliation only   │
        │    └── store.apply_transition()  loser of a race → logged   │
        │                                                             │
        │  get_logs(id)                                               │
        │    └── backend.get_job_logs(id) or placeholder              │
        └─────────────────────────────────────────────────────────────┘

Job submission is not done here. A PENDING execution is picked up by
:class:`~agent_dispatch.execution.reconciler.ExecutionReconciler`, which
calls ``create_job`` as a separate, retryable step.

Example:
    >>> engine = ExecutionEngine(store, StubJobBackend(), settings)
    >>> execution = await engine.create({"prompt": "hello"})
    >>> await engine.cancel(execution.id, "test")
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from agent_dispatch.core.errors import (
    BackendError,
    BackendUnconfiguredError,
    InvalidInputError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
)
from agent_dispatch.core.logging import LogContext, get_logger
from agent_dispatch.core.settings import DispatchSettings
from agent_dispatch.execution.backends._types import JobBackend
from agent_dispatch.execution.listing import ExecutionPage, build_page
from agent_dispatch.execution.models import (
    CANCELLABLE_STATUSES,
    CancelResult,
    CreateExecutionInput,
    Execution,
    ExecutionFilter,
    ExecutionStatus,
    LogsResult,
    Pagination,
    TransitionFields,
    parse_execution_id,
    parse_request,
    parse_status,
    utcnow,
)
from agent_dispatch.execution.store import ExecutionStore

logger = get_logger(__name__)

DEFAULT_CANCEL_REASON = "User requested cancellation"


def logs_placeholder(job_name: str) -> str:
    return f"[Logs for job: {job_name}]\nNo logs available yet."


class ExecutionEngine:
    """Lifecycle engine for agent executions.

    The store, backend and settings are injected; the engine keeps no
    other state, so any number of request handlers may share one.
    """

    def __init__(
        self,
        store: ExecutionStore,
        backend: JobBackend,
        settings: DispatchSettings,
    ) -> None:
        self._store = store
        self._backend = backend
        self._settings = settings

    @property
    def store(self) -> ExecutionStore:
        return self._store

    @property
    def backend(self) -> JobBackend:
        return self._backend

    # =========================================================================
    # CREATE / READ
    # =========================================================================

    async def create(self, data: CreateExecutionInput | Mapping[str, Any]) -> Execution:
        """Validate, apply defaults and persist a new PENDING execution."""
        request = parse_request(CreateExecutionInput, data)
        limit = self._settings.prompt_max_length
        if len(request.prompt) > limit:
            raise InvalidInputError(
                f"prompt must be at most {limit} characters (got {len(request.prompt)})",
                field="prompt",
            )

        return self._store.create(
            prompt=request.prompt,
            model=request.model or self._settings.default_model,
            max_tokens=request.max_tokens or self._settings.default_max_tokens,
            metadata=request.metadata,
            timeout_seconds=request.timeout or self._settings.default_timeout_seconds,
            callback_url=request.callback_url,
            resources=request.resources.to_hints() if request.resources else None,
        )

    async def get(
        self,
        execution_id: str,
        *,
        include_transitions: bool = False,
        include_artifacts: bool = False,
    ) -> Execution:
        """Get one execution. Raises InvalidInputError / NotFoundError."""
        return self._get_execution_or_raise(
            parse_execution_id(execution_id),
            include_transitions=include_transitions,
            include_artifacts=include_artifacts,
        )

    async def list(
        self,
        flt: ExecutionFilter | Mapping[str, Any] | None = None,
        pagination: Pagination | Mapping[str, Any] | None = None,
    ) -> ExecutionPage:
        """One page of execution summaries matching *flt*, newest first."""
        query = parse_request(ExecutionFilter, flt)
        if pagination is None:
            pagination = {}
        if isinstance(pagination, Mapping) and not {"page_size", "pageSize"} & pagination.keys():
            pagination = {**pagination, "page_size": self._settings.page_size_default}
        page = parse_request(Pagination, pagination)
        items, total = self._store.list(query, page)
        return build_page(items, total, page, max_page_size=self._settings.page_size_max)

    # =========================================================================
    # CANCEL
    # =========================================================================

    async def cancel(self, execution_id: str, reason: str | None = None) -> CancelResult:
        """Cancel a PENDING or RUNNING execution.

        The job is deleted best-effort; a backend failure is logged and the
        CANCELLED transition is recorded regardless. Orphaned jobs left by
        such failures are removed by the reconciler's sweep.
        """
        execution_id = parse_execution_id(execution_id)
        execution = self._get_execution_or_raise(execution_id)
        allowed = [s.value for s in CANCELLABLE_STATUSES]

        if execution.status not in CANCELLABLE_STATUSES:
            raise InvalidStateError(execution.status.value, allowed)

        with LogContext(execution_id=execution_id):
            try:
                deleted = await self._backend.delete_job(execution_id)
                logger.info("job_deleted_for_cancel", deleted=deleted)
            except (BackendError, BackendUnconfiguredError) as exc:
                logger.warning("job_delete_failed", error=str(exc), code=exc.code)

            try:
                updated = self._store.apply_transition(
                    execution_id,
                    ExecutionStatus.CANCELLED,
                    reason=reason or DEFAULT_CANCEL_REASON,
                )
            except InvalidTransitionError as exc:
                # Raced to a terminal state between the check and the write
                logger.warning("cancel_lost_race", current_status=exc.current)
                raise InvalidStateError(exc.current, allowed) from exc

            logger.info("execution_cancelled", reason=reason or DEFAULT_CANCEL_REASON)

        return CancelResult(
            id=updated.id,
            status=updated.status,
            cancelled_at=updated.completed_at or utcnow(),
        )

    # =========================================================================
    # STATUS UPDATES (reconciliation)
    # =========================================================================

    async def update_status(
        self,
        execution_id: str,
        status: ExecutionStatus | str,
        fields: TransitionFields | Mapping[str, Any] | None = None,
        *,
        reason: str | None = None,
    ) -> Execution:
        """Apply a status reported by reconciliation or a job callback.

        Raises InvalidTransitionError when the current status forbids it;
        the rejected update is logged and never retried here.
        """
        execution_id = parse_execution_id(execution_id)
        target = parse_status(status)
        extra = parse_request(TransitionFields, fields)

        try:
            return self._store.apply_transition(execution_id, target, extra, reason)
        except InvalidTransitionError as exc:
            logger.warning(
                "transition_rejected",
                execution_id=execution_id,
                current_status=exc.current,
                target_status=exc.target,
            )
            raise

    async def record_pod_name(self, execution_id: str, pod_name: str) -> bool:
        """Attach a pod name reported after the execution started running."""
        execution_id = parse_execution_id(execution_id)
        return self._store.record_pod_name(execution_id, pod_name)

    # =========================================================================
    # LOGS
    # =========================================================================

    async def get_logs(self, execution_id: str) -> LogsResult:
        """Job logs, or a placeholder naming the job when none are available."""
        execution_id = parse_execution_id(execution_id)
        execution = self._get_execution_or_raise(execution_id)

        try:
            logs = await self._backend.get_job_logs(execution_id)
        except (BackendError, BackendUnconfiguredError) as exc:
            logger.warning("job_logs_unavailable", execution_id=execution_id, error=str(exc))
            logs = None

        if logs is None:
            return LogsResult(logs=logs_placeholder(execution.job_name))
        return LogsResult(logs=logs)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _get_execution_or_raise(
        self,
        execution_id: str,
        *,
        include_transitions: bool = False,
        include_artifacts: bool = False,
    ) -> Execution:
        execution = self._store.get_by_id(
            execution_id,
            include_transitions=include_transitions,
            include_artifacts=include_artifacts,
        )
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        return execution


__all__ = ["DEFAULT_CANCEL_REASON", "ExecutionEngine", "logs_placeholder"]
