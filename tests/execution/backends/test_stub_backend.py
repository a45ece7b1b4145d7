"""
Tests for BaseJobBackend behaviour through StubJobBackend.

Tests cover:
- Job lifecycle driven by counters
- Idempotency: duplicate create collides, repeated delete returns False
- Error wrapping into BackendError and the unconfigured guard
"""

import pytest

from agent_dispatch.core.errors import BackendError, BackendUnconfiguredError
from agent_dispatch.execution.backends import JobState, ResourceHints, StubJobBackend

EXEC_ID = "0f8fad5b-d9cb-469f-a165-70867728950e"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_create_returns_handle(self):
        backend = StubJobBackend()
        handle = await backend.create_job(EXEC_ID, "hello", ResourceHints(cpu="1"), 60)

        assert handle.name == f"claude-agent-{EXEC_ID}"
        assert handle.execution_id == EXEC_ID
        assert handle.state == JobState.PENDING
        assert backend.jobs[EXEC_ID].timeout_seconds == 60

    @pytest.mark.asyncio
    async def test_status_follows_counters(self):
        backend = StubJobBackend()
        await backend.create_job(EXEC_ID, "hello")

        assert (await backend.get_job_status(EXEC_ID)).state == JobState.PENDING
        backend.set_counters(EXEC_ID, active=1)
        backend.set_pod(EXEC_ID, "pod-1")
        status = await backend.get_job_status(EXEC_ID)
        assert status.state == JobState.RUNNING
        assert status.pod_name == "pod-1"

        backend.set_counters(EXEC_ID, succeeded=1, failed=1)
        assert (await backend.get_job_status(EXEC_ID)).state == JobState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_missing_job_status_is_none(self):
        assert await StubJobBackend().get_job_status(EXEC_ID) is None

    @pytest.mark.asyncio
    async def test_logs(self):
        backend = StubJobBackend()
        assert await backend.get_job_logs(EXEC_ID) is None

        await backend.create_job(EXEC_ID, "hello")
        assert await backend.get_job_logs(EXEC_ID) is None

        backend.set_pod(EXEC_ID, "pod-1")
        assert await backend.get_job_logs(EXEC_ID) == ""
        backend.set_pod(EXEC_ID, "pod-1", logs="done\n")
        assert await backend.get_job_logs(EXEC_ID) == "done\n"

    @pytest.mark.asyncio
    async def test_list_jobs(self):
        backend = StubJobBackend()
        await backend.create_job(EXEC_ID, "hello")
        jobs = await backend.list_jobs()
        assert [j.execution_id for j in jobs] == [EXEC_ID]
        assert jobs[0].labels["app.kubernetes.io/component"] == "agent"


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_duplicate_create_collides(self):
        backend = StubJobBackend()
        await backend.create_job(EXEC_ID, "hello")
        with pytest.raises(BackendError) as exc_info:
            await backend.create_job(EXEC_ID, "hello")
        assert exc_info.value.details["reason"] == "AlreadyExists"
        assert backend.create_count == 1

    @pytest.mark.asyncio
    async def test_repeated_delete(self):
        backend = StubJobBackend()
        await backend.create_job(EXEC_ID, "hello")
        assert await backend.delete_job(EXEC_ID) is True
        assert await backend.delete_job(EXEC_ID) is False


class TestFailures:
    @pytest.mark.asyncio
    async def test_injected_failures_are_wrapped(self):
        backend = StubJobBackend()
        backend.fail_create = True
        with pytest.raises(BackendError) as exc_info:
            await backend.create_job(EXEC_ID, "hello")
        assert exc_info.value.retryable
        assert exc_info.value.details["operation"] == "create_job"
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_status_and_delete_failures(self):
        backend = StubJobBackend()
        backend.fail_status = True
        backend.fail_delete = True
        with pytest.raises(BackendError):
            await backend.get_job_status(EXEC_ID)
        with pytest.raises(BackendError):
            await backend.delete_job(EXEC_ID)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "call",
        [
            lambda b: b.create_job(EXEC_ID, "hello"),
            lambda b: b.get_job_status(EXEC_ID),
            lambda b: b.delete_job(EXEC_ID),
            lambda b: b.get_job_logs(EXEC_ID),
            lambda b: b.list_jobs(),
        ],
    )
    async def test_unconfigured_guard(self, call):
        backend = StubJobBackend(configured=False)
        assert not backend.is_configured
        with pytest.raises(BackendUnconfiguredError) as exc_info:
            await call(backend)
        assert exc_info.value.details["backend"] == "stub"
        assert backend.create_count == 0
        assert backend.status_count == 0
