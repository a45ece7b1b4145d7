"""Base job backend with shared call-site logic.

Provides ``BaseJobBackend`` with the common pattern (configuration guard,
structured logging, error wrapping) and ``StubJobBackend`` for unit tests
and local development.

Architecture:

    .. code-block:: text

        JobBackend (Protocol)
              │
              ▼
        BaseJobBackend
        ├── create_job()     → guard + logging + wrap → _do_create_job()
        ├── get_job_status() → guard + wrap           → _do_get_job_status()
        ├── delete_job()     → guard + logging + wrap → _do_delete_job()
        ├── get_job_logs()   → guard, never raises for missing pods
        └── list_jobs()      → guard + wrap           → _do_list_jobs()
              │
        ┌─────┴───────────────────────┐
        ▼                             ▼
    KubernetesJobBackend         StubJobBackend
    (batch/v1 Jobs)              (in-memory)

The guard raises :class:`BackendUnconfiguredError` before any I/O when the
backend could not be configured at startup. Anything a subclass raises that
is not already a :class:`DispatchError` becomes a retryable
:class:`BackendError`. Backends never retry on their own; the caller decides.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from agent_dispatch.core.errors import BackendError, BackendUnconfiguredError, DispatchError
from agent_dispatch.core.logging import get_logger
from agent_dispatch.execution.backends._types import (
    COMPONENT_LABEL,
    COMPONENT_VALUE,
    JobCounters,
    JobHandle,
    JobState,
    JobStatus,
    ResourceHints,
    backend_job_name,
    _utcnow,
    derive_job_state,
)

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Base backend
# ---------------------------------------------------------------------------

class BaseJobBackend:
    """Base class for job backends.

    Subclasses MUST implement:
        _do_create_job, _do_get_job_status, _do_delete_job,
        _do_get_job_logs, _do_list_jobs

    Subclasses set ``_configured`` / ``_config_error`` when their client
    cannot be built; every public call then fails fast.
    """

    backend_name: str = "base"

    def __init__(self, *, job_name_prefix: str = "claude-agent") -> None:
        self.job_name_prefix = job_name_prefix
        self._configured = True
        self._config_error: str | None = None

    @property
    def is_configured(self) -> bool:
        return self._configured

    def job_name(self, execution_id: str) -> str:
        return backend_job_name(self.job_name_prefix, execution_id)

    def _require_configured(self, operation: str) -> None:
        if not self._configured:
            raise BackendUnconfiguredError(
                f"{self.backend_name} backend is not configured; cannot {operation}",
                details={"backend": self.backend_name, "reason": self._config_error},
            )

    def _wrap(self, operation: str, execution_id: str | None, exc: Exception) -> BackendError:
        logger.error(
            "job_backend_call_failed",
            backend=self.backend_name,
            operation=operation,
            execution_id=execution_id,
            error=str(exc),
        )
        return BackendError(
            f"{operation} failed on {self.backend_name}: {exc}",
            details={"backend": self.backend_name, "operation": operation},
            cause=exc,
        )

    async def create_job(
        self,
        execution_id: str,
        prompt: str,
        resources: ResourceHints | None = None,
        timeout_seconds: int | None = None,
    ) -> JobHandle:
        """Create the job backing *execution_id*. Not retried on failure."""
        self._require_configured("create job")
        logger.info(
            "job_create_requested",
            backend=self.backend_name,
            execution_id=execution_id,
            job_name=self.job_name(execution_id),
        )
        try:
            handle = await self._do_create_job(execution_id, prompt, resources, timeout_seconds)
        except DispatchError:
            raise
        except Exception as exc:
            raise self._wrap("create_job", execution_id, exc) from exc
        logger.info("job_created", backend=self.backend_name, job_name=handle.name)
        return handle

    async def get_job_status(self, execution_id: str) -> JobStatus | None:
        """Current job status, or ``None`` when the job does not exist."""
        self._require_configured("read job status")
        try:
            return await self._do_get_job_status(execution_id)
        except DispatchError:
            raise
        except Exception as exc:
            raise self._wrap("get_job_status", execution_id, exc) from exc

    async def delete_job(self, execution_id: str) -> bool:
        """Delete the job. Returns ``False`` when it was already gone."""
        self._require_configured("delete job")
        logger.info("job_delete_requested", backend=self.backend_name, execution_id=execution_id)
        try:
            deleted = await self._do_delete_job(execution_id)
        except DispatchError:
            raise
        except Exception as exc:
            raise self._wrap("delete_job", execution_id, exc) from exc
        logger.info("job_delete_result", execution_id=execution_id, deleted=deleted)
        return deleted

    async def get_job_logs(self, execution_id: str) -> str | None:
        """Best-effort logs. ``None`` when no pod exists or logs cannot be read."""
        self._require_configured("read job logs")
        try:
            return await self._do_get_job_logs(execution_id)
        except DispatchError:
            raise
        except Exception as exc:
            logger.warning("job_logs_unavailable", execution_id=execution_id, error=str(exc))
            return None

    async def list_jobs(self) -> list[JobHandle]:
        """All jobs labelled as belonging to this system."""
        self._require_configured("list jobs")
        try:
            return await self._do_list_jobs()
        except DispatchError:
            raise
        except Exception as exc:
            raise self._wrap("list_jobs", None, exc) from exc

    # --- Abstract methods for subclasses ---

    async def _do_create_job(
        self,
        execution_id: str,
        prompt: str,
        resources: ResourceHints | None,
        timeout_seconds: int | None,
    ) -> JobHandle:
        raise NotImplementedError

    async def _do_get_job_status(self, execution_id: str) -> JobStatus | None:
        raise NotImplementedError

    async def _do_delete_job(self, execution_id: str) -> bool:
        raise NotImplementedError

    async def _do_get_job_logs(self, execution_id: str) -> str | None:
        raise NotImplementedError

    async def _do_list_jobs(self) -> list[JobHandle]:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Stub backend for testing
# ---------------------------------------------------------------------------

@dataclass
class _StubJob:
    """Internal state for a stubbed job."""

    name: str
    execution_id: str
    prompt: str
    resources: ResourceHints | None
    timeout_seconds: int | None
    counters: JobCounters = field(default_factory=JobCounters)
    pod_name: str | None = None
    logs: str | None = None
    created_at: datetime = field(default_factory=_utcnow)

    def handle(self) -> JobHandle:
        return JobHandle(
            name=self.name,
            execution_id=self.execution_id,
            namespace="stub",
            state=derive_job_state(self.counters),
            created_at=self.created_at,
            labels={COMPONENT_LABEL: COMPONENT_VALUE},
        )


class StubJobBackend(BaseJobBackend):
    """In-memory job backend.

    Jobs start with zero counters (``pending``). Tests drive them with
    :meth:`set_counters` / :meth:`set_pod`.

    .. code-block:: text

        Inject failures:
          backend.fail_create = True   → create_job() raises BackendError
          backend.fail_delete = True   → delete_job() raises BackendError
          backend.fail_status = True   → get_job_status() raises BackendError
          StubJobBackend(configured=False) → every call raises BackendUnconfiguredError

        Track usage:
          backend.create_count / delete_count / status_count

    Example:
        >>> backend = StubJobBackend()
        >>> await backend.create_job(execution_id, "hello")
        >>> backend.set_counters(execution_id, succeeded=1, failed=1)
        >>> (await backend.get_job_status(execution_id)).state
        <JobState.SUCCEEDED: 'succeeded'>
    """

    backend_name = "stub"

    def __init__(self, *, job_name_prefix: str = "claude-agent", configured: bool = True) -> None:
        super().__init__(job_name_prefix=job_name_prefix)
        self.jobs: dict[str, _StubJob] = {}
        self.create_count = 0
        self.delete_count = 0
        self.status_count = 0

        self.fail_create = False
        self.fail_delete = False
        self.fail_status = False

        if not configured:
            self._configured = False
            self._config_error = "stub configured as unavailable"

    # -- test helpers ------------------------------------------------------

    def set_counters(
        self,
        execution_id: str,
        *,
        active: int | None = None,
        succeeded: int | None = None,
        failed: int | None = None,
    ) -> None:
        job = self.jobs[execution_id]
        job.counters = JobCounters(active=active, succeeded=succeeded, failed=failed)

    def set_pod(self, execution_id: str, pod_name: str, logs: str | None = None) -> None:
        job = self.jobs[execution_id]
        job.pod_name = pod_name
        job.logs = logs

    # -- backend operations -----------------------------------------------

    async def _do_create_job(
        self,
        execution_id: str,
        prompt: str,
        resources: ResourceHints | None,
        timeout_seconds: int | None,
    ) -> JobHandle:
        if self.fail_create:
            raise RuntimeError("Stub: create failure injected")
        name = self.job_name(execution_id)
        if execution_id in self.jobs:
            raise BackendError(
                f"Job {name} already exists",
                details={"backend": self.backend_name, "reason": "AlreadyExists", "jobName": name},
            )
        self.create_count += 1
        job = _StubJob(
            name=name,
            execution_id=execution_id,
            prompt=prompt,
            resources=resources,
            timeout_seconds=timeout_seconds,
        )
        self.jobs[execution_id] = job
        return job.handle()

    async def _do_get_job_status(self, execution_id: str) -> JobStatus | None:
        self.status_count += 1
        if self.fail_status:
            raise RuntimeError("Stub: status failure injected")
        job = self.jobs.get(execution_id)
        if job is None:
            return None
        return JobStatus(state=derive_job_state(job.counters), pod_name=job.pod_name)

    async def _do_delete_job(self, execution_id: str) -> bool:
        if self.fail_delete:
            raise RuntimeError("Stub: delete failure injected")
        self.delete_count += 1
        return self.jobs.pop(execution_id, None) is not None

    async def _do_get_job_logs(self, execution_id: str) -> str | None:
        job = self.jobs.get(execution_id)
        if job is None or job.pod_name is None:
            return None
        return job.logs or ""

    async def _do_list_jobs(self) -> list[JobHandle]:
        return [job.handle() for job in self.jobs.values()]


__all__ = ["BaseJobBackend", "StubJobBackend", "JobState"]
