"""Reconciliation between stored executions and live jobs.

One ``run_once()`` pass does three things, in order:

.. code-block:: text

    dispatch_pending   PENDING execution, no job      → backend.create_job()
    sync_statuses      job state → engine.update_status()
                         running   → RUNNING (late pod name recorded on its own)
                         succeeded → COMPLETED   (RUNNING inserted first if PENDING)
                         failed    → FAILED JOB_FAILED
                         missing while RUNNING → FAILED JOB_NOT_FOUND
    sweep_orphans      unfinished job whose execution is missing or
                       terminal → backend.delete_job()
                       (skipped when sweep=False; the CLI turns it off for
                       in-memory stores, which do not own live jobs)

A store read failure is reported for that step and the pass continues.
Every step is idempotent, so a pass can be repeated or interrupted at any
point. Failures are counted in the report and retried on the next pass.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from agent_dispatch.core.errors import BackendError, DispatchError, InvalidTransitionError
from agent_dispatch.core.logging import get_logger
from agent_dispatch.execution.backends._types import JobBackend, JobState, JobStatus
from agent_dispatch.execution.engine import ExecutionEngine
from agent_dispatch.execution.models import ACTIVE_STATUSES, Execution, ExecutionStatus
from agent_dispatch.execution.store import ExecutionStore

logger = get_logger(__name__)

JOB_FAILED = "JOB_FAILED"
JOB_NOT_FOUND = "JOB_NOT_FOUND"


@dataclass
class ReconcileReport:
    """Counts from one reconciliation pass."""

    dispatched: int = 0
    synced: int = 0
    orphans_deleted: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "dispatched": self.dispatched,
            "synced": self.synced,
            "orphansDeleted": self.orphans_deleted,
            "errors": list(self.errors),
        }


class ExecutionReconciler:
    """Feeds observed job state back into the engine."""

    def __init__(
        self,
        store: ExecutionStore,
        backend: JobBackend,
        engine: ExecutionEngine,
        *,
        sweep: bool = True,
    ):
        self._store = store
        self._backend = backend
        self._engine = engine
        self.sweep = sweep

    async def run_once(self) -> ReconcileReport:
        report = ReconcileReport()
        await self.dispatch_pending(report)
        await self.sync_statuses(report)
        if self.sweep:
            await self.sweep_orphans(report)
        logger.info("reconcile_pass_complete", **report.to_dict())
        return report

    async def run_forever(self, interval_seconds: float, stop: asyncio.Event | None = None) -> None:
        """Repeat :meth:`run_once` every *interval_seconds* until *stop* is set."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except TimeoutError:
                continue

    # ── Steps ────────────────────────────────────────────────────────────

    async def dispatch_pending(self, report: ReconcileReport) -> None:
        """Create jobs for PENDING executions that do not have one yet."""
        try:
            pending = self._store.list_by_status([ExecutionStatus.PENDING])
        except DispatchError as exc:
            self._record_error(report, "dispatch", None, exc)
            return

        for execution in pending:
            try:
                if await self._backend.get_job_status(execution.id) is not None:
                    continue
                await self._backend.create_job(
                    execution.id,
                    execution.prompt,
                    execution.resources,
                    execution.timeout_seconds,
                )
                report.dispatched += 1
            except BackendError as exc:
                if exc.details.get("reason") == "AlreadyExists":
                    continue
                self._record_error(report, "dispatch", execution.id, exc)
            except DispatchError as exc:
                self._record_error(report, "dispatch", execution.id, exc)

    async def sync_statuses(self, report: ReconcileReport) -> None:
        """Apply observed job state to every PENDING/RUNNING execution."""
        try:
            active = self._store.list_by_status(ACTIVE_STATUSES)
        except DispatchError as exc:
            self._record_error(report, "sync", None, exc)
            return

        for execution in active:
            try:
                status = await self._backend.get_job_status(execution.id)
                if await self._apply(execution, status):
                    report.synced += 1
            except InvalidTransitionError as exc:
                # Lost a race with another writer (e.g. a cancel); discard
                logger.warning(
                    "reconcile_transition_discarded",
                    execution_id=execution.id,
                    current_status=exc.current,
                    target_status=exc.target,
                )
            except DispatchError as exc:
                self._record_error(report, "sync", execution.id, exc)

    async def sweep_orphans(self, report: ReconcileReport) -> None:
        """Delete unfinished jobs whose execution is gone or already terminal."""
        try:
            jobs = await self._backend.list_jobs()
        except DispatchError as exc:
            self._record_error(report, "sweep", None, exc)
            return

        for job in jobs:
            if job.state.is_finished:
                continue
            try:
                execution = self._store.get_by_id(job.execution_id)
                if execution is not None and not execution.is_terminal:
                    continue
                if await self._backend.delete_job(job.execution_id):
                    report.orphans_deleted += 1
                    logger.info(
                        "orphan_job_deleted",
                        job_name=job.name,
                        execution_id=job.execution_id,
                        execution_status=execution.status.value if execution else None,
                    )
            except DispatchError as exc:
                self._record_error(report, "sweep", job.execution_id, exc)

    # ── Helpers ──────────────────────────────────────────────────────────

    async def _apply(self, execution: Execution, status: JobStatus | None) -> bool:
        """Translate one job status into engine transitions. Returns True if any applied."""
        current = execution.status

        if status is None:
            if current == ExecutionStatus.RUNNING:
                await self._engine.update_status(
                    execution.id,
                    ExecutionStatus.FAILED,
                    {"error_code": JOB_NOT_FOUND, "error_message": f"Job for {execution.job_name} not found"},
                    reason="Job disappeared",
                )
                return True
            return False

        pod = {"pod_name": status.pod_name} if status.pod_name else None

        if status.state == JobState.RUNNING:
            if current == ExecutionStatus.PENDING:
                await self._engine.update_status(execution.id, ExecutionStatus.RUNNING, pod, reason="Job running")
                return True
            if pod and execution.pod_name is None:
                return await self._engine.record_pod_name(execution.id, status.pod_name)
            return False

        if status.state in (JobState.SUCCEEDED, JobState.FAILED):
            if current == ExecutionStatus.PENDING:
                await self._engine.update_status(execution.id, ExecutionStatus.RUNNING, pod, reason="Job started")
            # pod_name is only written when still empty
            if status.state == JobState.SUCCEEDED:
                await self._engine.update_status(execution.id, ExecutionStatus.COMPLETED, pod, reason="Job succeeded")
            else:
                await self._engine.update_status(
                    execution.id,
                    ExecutionStatus.FAILED,
                    {**(pod or {}), "error_code": JOB_FAILED, "error_message": status.message or "Job failed"},
                    reason="Job failed",
                )
            return True

        return False

    def _record_error(
        self,
        report: ReconcileReport,
        step: str,
        execution_id: str | None,
        exc: DispatchError,
    ) -> None:
        logger.warning("reconcile_step_failed", step=step, execution_id=execution_id, error=str(exc))
        report.errors.append(f"{step}:{execution_id or '-'}:{exc.code}")


__all__ = ["ExecutionReconciler", "ReconcileReport", "JOB_FAILED", "JOB_NOT_FOUND"]
