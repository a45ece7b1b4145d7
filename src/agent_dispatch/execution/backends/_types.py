"""Job backend types and protocol.

This module defines the abstractions shared by every job backend:

- JobState: observed state of an orchestrator job
- JobCounters: raw active/succeeded/failed counters reported by the orchestrator
- JobHandle: what a backend knows about one job
- ResourceHints: optional CPU / memory hints carried by an execution
- JobBackend: Protocol for create/status/delete/logs/list

Design Notes:
    Job identity is a pure function of the execution id
    (:func:`backend_job_name`). Every backend operation is therefore safe to
    call more than once for the same execution: a repeated create collides
    by name, a repeated delete returns ``False``.

    Backends hold no authoritative state. They never write to the
    execution store; the lifecycle engine and reconciler do.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

COMPONENT_LABEL = "app.kubernetes.io/component"
NAME_LABEL = "app.kubernetes.io/name"
COMPONENT_VALUE = "agent"


def _utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class JobState(str, Enum):
    """Observed state of a job, derived from orchestrator counters."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @property
    def is_finished(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)


@dataclass(frozen=True)
class JobCounters:
    """Pod counters as reported on a job's status."""

    active: int | None = None
    succeeded: int | None = None
    failed: int | None = None


def derive_job_state(counters: JobCounters | None) -> JobState:
    """Collapse orchestrator counters into a single :class:`JobState`.

    Priority is succeeded > failed > active > pending, so a job that
    reports both succeeded and failed pods (retries) counts as succeeded.

    Example:
        >>> derive_job_state(JobCounters(succeeded=1, failed=1))
        <JobState.SUCCEEDED: 'succeeded'>
        >>> derive_job_state(JobCounters())
        <JobState.PENDING: 'pending'>
    """
    if counters is None:
        return JobState.PENDING
    values = (counters.active, counters.succeeded, counters.failed)
    if any(v is not None and v < 0 for v in values):
        return JobState.UNKNOWN
    if counters.succeeded:
        return JobState.SUCCEEDED
    if counters.failed:
        return JobState.FAILED
    if counters.active:
        return JobState.RUNNING
    return JobState.PENDING


def backend_job_name(prefix: str, execution_id: str) -> str:
    """Orchestrator job name for an execution: ``<prefix>-<executionId>``."""
    return f"{prefix}-{execution_id}"


def execution_id_label(prefix: str) -> str:
    """Label key carrying the execution id on jobs and pods."""
    return f"{prefix}/execution-id"


@dataclass(frozen=True)
class ResourceHints:
    """CPU and memory limits requested for an execution's job.

    Quantities use orchestrator syntax ("500m", "2Gi"). Missing fields
    fall back to the backend's configured defaults.
    """

    cpu: str | None = None
    memory: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize non-None fields."""
        return {k: v for k, v in {"cpu": self.cpu, "memory": self.memory}.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ResourceHints | None:
        if not data:
            return None
        return cls(cpu=data.get("cpu"), memory=data.get("memory"))


@dataclass(frozen=True)
class JobHandle:
    """A job as seen by a backend."""

    name: str
    execution_id: str
    namespace: str | None = None
    state: JobState = JobState.PENDING
    created_at: datetime | None = None
    labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "executionId": self.execution_id,
            "namespace": self.namespace,
            "state": self.state.value,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "labels": dict(self.labels),
        }


@dataclass(frozen=True)
class JobStatus:
    """Status read for one job. ``pod_name`` is set once a pod is scheduled."""

    state: JobState
    pod_name: str | None = None
    message: str | None = None


@runtime_checkable
class JobBackend(Protocol):
    """Contract between the lifecycle engine and an orchestrator."""

    @property
    def backend_name(self) -> str: ...

    @property
    def is_configured(self) -> bool: ...

    async def create_job(
        self,
        execution_id: str,
        prompt: str,
        resources: ResourceHints | None = None,
        timeout_seconds: int | None = None,
    ) -> JobHandle: ...

    async def get_job_status(self, execution_id: str) -> JobStatus | None: ...

    async def delete_job(self, execution_id: str) -> bool: ...

    async def get_job_logs(self, execution_id: str) -> str | None: ...

    async def list_jobs(self) -> list[JobHandle]: ...


__all__ = [
    "COMPONENT_LABEL",
    "COMPONENT_VALUE",
    "JobBackend",
    "JobCounters",
    "JobHandle",
    "JobState",
    "JobStatus",
    "NAME_LABEL",
    "ResourceHints",
    "backend_job_name",
    "derive_job_state",
    "execution_id_label",
]
