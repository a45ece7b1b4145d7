"""Job backends: where an execution's compute job actually runs."""

from agent_dispatch.execution.backends._base import BaseJobBackend, StubJobBackend
from agent_dispatch.execution.backends._types import (
    JobBackend,
    JobCounters,
    JobHandle,
    JobState,
    JobStatus,
    ResourceHints,
    backend_job_name,
    derive_job_state,
)

__all__ = [
    "BaseJobBackend",
    "JobBackend",
    "JobCounters",
    "JobHandle",
    "JobState",
    "JobStatus",
    "ResourceHints",
    "StubJobBackend",
    "backend_job_name",
    "derive_job_state",
]
