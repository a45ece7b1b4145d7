"""
Tests for ExecutionReconciler.

Tests cover:
- dispatch_pending(): one job per PENDING execution, never twice
- sync_statuses(): job state → execution transitions
- sweep_orphans(): jobs of missing or terminal executions are deleted
- Pod names reported after the execution is already RUNNING
- Backend and store failures are reported, not raised
"""

import asyncio
import sqlite3
from unittest.mock import MagicMock

import pytest

from agent_dispatch.execution.models import ExecutionStatus
from agent_dispatch.execution.reconciler import JOB_FAILED, JOB_NOT_FOUND, ExecutionReconciler, ReconcileReport
from agent_dispatch.execution.store import ExecutionStore

S = ExecutionStatus
ORPHAN_ID = "00000000-0000-4000-8000-000000000000"


@pytest.fixture()
def reconciler(store, backend, engine):
    return ExecutionReconciler(store, backend, engine)


# ── Dispatch ─────────────────────────────────────────────────────────────


class TestDispatch:
    @pytest.mark.asyncio
    async def test_creates_job_for_pending(self, engine, backend, reconciler):
        execution = await engine.create({"prompt": "hello", "timeout": 90, "resources": {"cpu": "2"}})

        report = await reconciler.run_once()

        assert report.dispatched == 1
        assert report.ok
        job = backend.jobs[execution.id]
        assert job.prompt == "hello"
        assert job.timeout_seconds == 90
        assert job.resources.cpu == "2"

    @pytest.mark.asyncio
    async def test_second_pass_does_not_duplicate(self, engine, backend, reconciler):
        await engine.create({"prompt": "hello"})
        await reconciler.run_once()
        report = await reconciler.run_once()

        assert report.dispatched == 0
        assert backend.create_count == 1

    @pytest.mark.asyncio
    async def test_create_failure_reported(self, engine, backend, reconciler):
        execution = await engine.create({"prompt": "hello"})
        backend.fail_create = True

        report = await reconciler.run_once()

        assert not report.ok
        assert report.errors == [f"dispatch:{execution.id}:BACKEND_ERROR"]
        assert (await engine.get(execution.id)).status == S.PENDING

    @pytest.mark.asyncio
    async def test_cancelled_execution_not_dispatched(self, engine, backend, reconciler):
        execution = await engine.create({"prompt": "hello"})
        await engine.cancel(execution.id)

        await reconciler.run_once()
        assert execution.id not in backend.jobs


# ── Sync ─────────────────────────────────────────────────────────────────


class TestSync:
    @pytest.mark.asyncio
    async def test_running_job_marks_running(self, engine, backend, reconciler):
        execution = await engine.create({"prompt": "hello"})
        await reconciler.run_once()
        backend.set_counters(execution.id, active=1)
        backend.set_pod(execution.id, "pod-xyz")

        report = await reconciler.run_once()

        assert report.synced == 1
        updated = await engine.get(execution.id)
        assert updated.status == S.RUNNING
        assert updated.pod_name == "pod-xyz"
        assert updated.started_at is not None

    @pytest.mark.asyncio
    async def test_succeeded_from_pending_passes_through_running(self, engine, backend, reconciler):
        execution = await engine.create({"prompt": "hello"})
        await reconciler.run_once()
        backend.set_counters(execution.id, succeeded=1)

        await reconciler.run_once()

        full = await engine.get(execution.id, include_transitions=True)
        assert full.status == S.COMPLETED
        assert [t.to_status for t in full.status_transitions] == [S.PENDING, S.RUNNING, S.COMPLETED]

    @pytest.mark.asyncio
    async def test_failed_job(self, engine, backend, reconciler):
        execution = await engine.create({"prompt": "hello"})
        await reconciler.run_once()
        backend.set_counters(execution.id, active=1)
        await reconciler.run_once()
        backend.set_counters(execution.id, failed=1)

        await reconciler.run_once()

        failed = await engine.get(execution.id)
        assert failed.status == S.FAILED
        assert failed.error_code == JOB_FAILED

    @pytest.mark.asyncio
    async def test_vanished_job_fails_running_execution(self, engine, backend, reconciler):
        execution = await engine.create({"prompt": "hello"})
        await reconciler.run_once()
        backend.set_counters(execution.id, active=1)
        await reconciler.run_once()
        backend.jobs.clear()

        report = ReconcileReport()
        await reconciler.sync_statuses(report)

        assert report.synced == 1
        failed = await engine.get(execution.id)
        assert failed.status == S.FAILED
        assert failed.error_code == JOB_NOT_FOUND

    @pytest.mark.asyncio
    async def test_pending_job_changes_nothing(self, engine, reconciler):
        execution = await engine.create({"prompt": "hello"})
        await reconciler.run_once()
        report = await reconciler.run_once()

        assert report.synced == 0
        assert (await engine.get(execution.id)).version == 1

    @pytest.mark.asyncio
    async def test_status_failure_reported(self, engine, backend, reconciler):
        await engine.create({"prompt": "hello"})
        await reconciler.run_once()
        backend.fail_status = True

        report = await reconciler.run_once()

        assert any(e.startswith("sync:") and e.endswith(":BACKEND_ERROR") for e in report.errors)


# ── Sweep ────────────────────────────────────────────────────────────────


class TestSweep:
    @pytest.mark.asyncio
    async def test_job_without_execution_deleted(self, backend, reconciler):
        await backend.create_job(ORPHAN_ID, "lost")

        report = await reconciler.run_once()

        assert report.orphans_deleted == 1
        assert ORPHAN_ID not in backend.jobs

    @pytest.mark.asyncio
    async def test_job_of_cancelled_execution_deleted(self, engine, backend, reconciler):
        execution = await engine.create({"prompt": "hello"})
        await reconciler.run_once()
        backend.fail_delete = True
        await engine.cancel(execution.id)
        assert execution.id in backend.jobs

        backend.fail_delete = False
        report = await reconciler.run_once()

        assert report.orphans_deleted == 1
        assert execution.id not in backend.jobs

    @pytest.mark.asyncio
    async def test_finished_jobs_left_for_ttl(self, backend, reconciler):
        await backend.create_job(ORPHAN_ID, "lost")
        backend.set_counters(ORPHAN_ID, succeeded=1)

        report = await reconciler.run_once()

        assert report.orphans_deleted == 0
        assert ORPHAN_ID in backend.jobs

    @pytest.mark.asyncio
    async def test_active_execution_job_kept(self, engine, backend, reconciler):
        execution = await engine.create({"prompt": "hello"})
        report = await reconciler.run_once()
        assert report.orphans_deleted == 0
        assert execution.id in backend.jobs

    @pytest.mark.asyncio
    async def test_sweep_disabled_leaves_foreign_jobs(self, store, backend, engine):
        await backend.create_job(ORPHAN_ID, "owned by another store")
        reconciler = ExecutionReconciler(store, backend, engine, sweep=False)

        report = await reconciler.run_once()

        assert report.orphans_deleted == 0
        assert ORPHAN_ID in backend.jobs
        assert backend.delete_count == 0


class TestLatePodName:
    @pytest.mark.asyncio
    async def test_pod_recorded_for_already_running_execution(self, engine, backend, reconciler):
        execution = await engine.create({"prompt": "hello"})
        await reconciler.run_once()
        await engine.update_status(execution.id, S.RUNNING)
        backend.set_counters(execution.id, active=1)
        backend.set_pod(execution.id, "pod-late")

        report = await reconciler.run_once()

        assert report.synced == 1
        updated = await engine.get(execution.id, include_transitions=True)
        assert updated.status == S.RUNNING
        assert updated.pod_name == "pod-late"
        assert [t.to_status for t in updated.status_transitions] == [S.PENDING, S.RUNNING]

    @pytest.mark.asyncio
    async def test_pod_carried_on_terminal_transition(self, engine, backend, reconciler):
        execution = await engine.create({"prompt": "hello"})
        await reconciler.run_once()
        await engine.update_status(execution.id, S.RUNNING)
        backend.set_counters(execution.id, succeeded=1)
        backend.set_pod(execution.id, "pod-done")

        await reconciler.run_once()

        done = await engine.get(execution.id)
        assert done.status == S.COMPLETED
        assert done.pod_name == "pod-done"

    @pytest.mark.asyncio
    async def test_existing_pod_name_kept(self, engine, backend, reconciler):
        execution = await engine.create({"prompt": "hello"})
        await reconciler.run_once()
        await engine.update_status(execution.id, S.RUNNING, {"pod_name": "pod-first"})
        backend.set_counters(execution.id, active=1)
        backend.set_pod(execution.id, "pod-second")

        report = await reconciler.run_once()

        assert report.synced == 0
        assert (await engine.get(execution.id)).pod_name == "pod-first"


class TestStoreFailures:
    @pytest.fixture()
    def locked_store(self):
        conn = MagicMock()
        conn.query.side_effect = sqlite3.OperationalError("database is locked")
        conn.query_one.side_effect = sqlite3.OperationalError("database is locked")
        return ExecutionStore(conn)

    @pytest.mark.asyncio
    async def test_read_errors_reported_per_step(self, locked_store, backend, engine):
        await backend.create_job(ORPHAN_ID, "lost")
        reconciler = ExecutionReconciler(locked_store, backend, engine)

        report = await reconciler.run_once()

        assert report.errors == [
            "dispatch:-:PERSISTENCE_ERROR",
            "sync:-:PERSISTENCE_ERROR",
            f"sweep:{ORPHAN_ID}:PERSISTENCE_ERROR",
        ]
        assert ORPHAN_ID in backend.jobs

    @pytest.mark.asyncio
    async def test_loop_survives_read_errors(self, locked_store, backend, engine):
        reconciler = ExecutionReconciler(locked_store, backend, engine)
        stop = asyncio.Event()
        task = asyncio.create_task(reconciler.run_forever(0.01, stop))
        await asyncio.sleep(0.05)
        assert not task.done()
        stop.set()
        await asyncio.wait_for(task, timeout=1)
        assert task.exception() is None


class TestRunForever:
    @pytest.mark.asyncio
    async def test_stops_when_event_set(self, reconciler):
        stop = asyncio.Event()
        task = asyncio.create_task(reconciler.run_forever(0.01, stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)
        assert task.done()

    def test_report_to_dict(self):
        report = ReconcileReport(dispatched=1, orphans_deleted=2, errors=["sync:-:BACKEND_ERROR"])
        assert report.to_dict() == {
            "dispatched": 1,
            "synced": 0,
            "orphansDeleted": 2,
            "errors": ["sync:-:BACKEND_ERROR"],
        }
        assert not report.ok
