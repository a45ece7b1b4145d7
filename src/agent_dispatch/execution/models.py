"""Execution domain models.

Defines the core data structures for the lifecycle engine:
- ExecutionStatus + the legal transition table
- Execution: the central record, one per agent run
- StatusTransition: append-only audit entry, one per status change
- Artifact / ExecutionSummary: read-side records
- CreateExecutionInput, TransitionFields, ExecutionFilter, Pagination:
  validated request records used at the engine boundary

Valid transition graph::

    PENDING  → RUNNING | CANCELLED | FAILED
    RUNNING  → COMPLETED | FAILED | CANCELLED
    COMPLETED, FAILED, CANCELLED → (terminal)
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from agent_dispatch.core.errors import InvalidInputError, InvalidTransitionError
from agent_dispatch.execution.backends._types import ResourceHints

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20
SUMMARY_PROMPT_LENGTH = 200


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class ExecutionStatus(str, Enum):
    """Status of an agent execution.

    ``PENDING`` is the unique initial state, entered only at creation.
    Use :func:`validate_execution_transition` before changing status.
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


# --- ExecutionStatus transition rules ---

EXECUTION_VALID_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({
        ExecutionStatus.RUNNING,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.FAILED,
    }),
    ExecutionStatus.RUNNING: frozenset({
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.COMPLETED: frozenset(),  # terminal
    ExecutionStatus.FAILED: frozenset(),  # terminal
    ExecutionStatus.CANCELLED: frozenset(),  # terminal
}

TERMINAL_STATUSES: frozenset[ExecutionStatus] = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
})

ACTIVE_STATUSES: tuple[ExecutionStatus, ...] = (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)

# Ordered for error payloads
CANCELLABLE_STATUSES: tuple[ExecutionStatus, ...] = ACTIVE_STATUSES


def validate_execution_transition(
    current: ExecutionStatus,
    target: ExecutionStatus,
) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_execution_transition(ExecutionStatus.RUNNING, ExecutionStatus.COMPLETED)
        >>> validate_execution_transition(ExecutionStatus.COMPLETED, ExecutionStatus.RUNNING)
        Traceback (most recent call last):
        ...
        InvalidTransitionError: Invalid ExecutionStatus transition: COMPLETED → RUNNING
    """
    allowed = EXECUTION_VALID_TRANSITIONS.get(current, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(current.value, target.value)


def is_valid_transition(current: ExecutionStatus, target: ExecutionStatus) -> bool:
    return target in EXECUTION_VALID_TRANSITIONS.get(current, frozenset())


def parse_status(value: ExecutionStatus | str) -> ExecutionStatus:
    """Coerce a status string (any case) into :class:`ExecutionStatus`."""
    if isinstance(value, ExecutionStatus):
        return value
    try:
        return ExecutionStatus(str(value).upper())
    except ValueError as exc:
        raise InvalidInputError(
            f"Unknown execution status: {value!r}",
            field="status",
            cause=exc,
        ) from exc


def parse_execution_id(value: str) -> str:
    """Validate an execution id and return it in canonical form."""
    try:
        return str(uuid.UUID(str(value)))
    except (ValueError, TypeError, AttributeError) as exc:
        raise InvalidInputError(
            f"Malformed execution id: {value!r}",
            field="id",
            cause=exc,
        ) from exc


def stored_job_name(prefix: str, execution_id: str) -> str:
    """Job name recorded on the execution: ``<prefix>-<first id segment>``."""
    return f"{prefix}-{execution_id.split('-', 1)[0]}"


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class StatusTransition:
    """One audited status change. Created once, never mutated."""

    seq: int
    execution_id: str
    from_status: ExecutionStatus | None
    to_status: ExecutionStatus
    transitioned_at: datetime
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.seq,
            "executionId": self.execution_id,
            "fromStatus": self.from_status.value if self.from_status else None,
            "toStatus": self.to_status.value,
            "transitionedAt": _iso(self.transitioned_at),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class Artifact:
    """Metadata for an output artifact produced by an execution."""

    id: str
    execution_id: str
    file_name: str
    file_path: str
    file_size: int
    created_at: datetime
    type: str = "OTHER"
    status: str = "ACTIVE"
    mime_type: str | None = None
    checksum: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "executionId": self.execution_id,
            "fileName": self.file_name,
            "filePath": self.file_path,
            "fileSize": self.file_size,
            "mimeType": self.mime_type,
            "checksum": self.checksum,
            "type": self.type,
            "status": self.status,
            "createdAt": _iso(self.created_at),
        }


@dataclass
class Execution:
    """One request to run an agent task, tracked PENDING → … → terminal.

    Inputs and ``id`` / ``job_name`` / ``created_at`` never change after
    creation. Everything else is only changed by the store's
    ``apply_transition``. ``version`` is the compare-and-swap token.
    """

    id: str
    prompt: str
    model: str
    max_tokens: int
    status: ExecutionStatus
    job_name: str
    created_at: datetime
    updated_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    timeout_seconds: int | None = None
    callback_url: str | None = None
    resources: ResourceHints | None = None
    pod_name: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    output: str | None = None
    tokens_used: int | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    estimated_cost: float | None = None
    error_code: str | None = None
    error_message: str | None = None
    error_details: Any = None
    retain_until: datetime | None = None
    is_permanent: bool = False
    version: int = 1
    status_transitions: list[StatusTransition] | None = None
    artifacts: list[Artifact] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        d: dict[str, Any] = {
            "id": self.id,
            "prompt": self.prompt,
            "model": self.model,
            "maxTokens": self.max_tokens,
            "metadata": self.metadata,
            "timeout": self.timeout_seconds,
            "callbackUrl": self.callback_url,
            "resources": self.resources.to_dict() if self.resources else None,
            "status": self.status.value,
            "jobName": self.job_name,
            "podName": self.pod_name,
            "createdAt": _iso(self.created_at),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "updatedAt": _iso(self.updated_at),
            "output": self.output,
            "tokensUsed": self.tokens_used,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "estimatedCost": self.estimated_cost,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
            "errorDetails": self.error_details,
            "retainUntil": _iso(self.retain_until),
            "isPermanent": self.is_permanent,
        }
        if self.status_transitions is not None:
            d["statusTransitions"] = [t.to_dict() for t in self.status_transitions]
        if self.artifacts is not None:
            d["artifacts"] = [a.to_dict() for a in self.artifacts]
        return d


@dataclass(frozen=True)
class ExecutionSummary:
    """Compact execution view for list pages."""

    id: str
    prompt: str
    model: str
    status: ExecutionStatus
    created_at: datetime
    completed_at: datetime | None = None
    tokens_used: int | None = None
    estimated_cost: float | None = None
    artifact_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "model": self.model,
            "status": self.status.value,
            "createdAt": _iso(self.created_at),
            "completedAt": _iso(self.completed_at),
            "tokensUsed": self.tokens_used,
            "estimatedCost": self.estimated_cost,
            "artifactCount": self.artifact_count,
        }


@dataclass(frozen=True)
class CancelResult:
    id: str
    status: ExecutionStatus
    cancelled_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "cancelledAt": _iso(self.cancelled_at),
        }


@dataclass(frozen=True)
class LogsResult:
    logs: str

    def to_dict(self) -> dict[str, Any]:
        return {"logs": self.logs}


# =============================================================================
# Request records (validated at the boundary)
# =============================================================================


class _RequestModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=False,
    )


class ResourceConfig(_RequestModel):
    """CPU / memory hints in orchestrator quantity syntax ("500m", "2Gi")."""

    cpu: str | None = Field(default=None, pattern=r"^\d+(\.\d+)?m?$")
    memory: str | None = Field(default=None, pattern=r"^\d+(\.\d+)?(Ki|Mi|Gi|Ti|K|M|G|T)?$")

    def to_hints(self) -> ResourceHints | None:
        if self.cpu is None and self.memory is None:
            return None
        return ResourceHints(cpu=self.cpu, memory=self.memory)


class CreateExecutionInput(_RequestModel):
    """Inputs for creating an execution. Omitted fields take configured defaults."""

    prompt: str = Field(min_length=1)
    model: str | None = Field(default=None, min_length=1)
    max_tokens: int | None = Field(default=None, ge=1)
    metadata: dict[str, Any] | None = None
    timeout: int | None = Field(default=None, ge=1)
    callback_url: str | None = Field(default=None, pattern=r"^https?://")
    resources: ResourceConfig | None = None

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt must not be blank")
        return value


class TransitionFields(_RequestModel):
    """Fields merged into an execution together with a status change.

    ``pod_name`` may accompany any transition; result and error fields are
    only accepted on terminal transitions.
    """

    pod_name: str | None = None
    output: str | None = None
    tokens_used: int | None = Field(default=None, ge=0)
    input_tokens: int | None = Field(default=None, ge=0)
    output_tokens: int | None = Field(default=None, ge=0)
    estimated_cost: float | None = Field(default=None, ge=0)
    error_code: str | None = None
    error_message: str | None = None
    error_details: Any = None

    RESULT_FIELDS: ClassVar[tuple[str, ...]] = (
        "output",
        "tokens_used",
        "input_tokens",
        "output_tokens",
        "estimated_cost",
        "error_code",
        "error_message",
        "error_details",
    )

    def supplied(self) -> dict[str, Any]:
        """Only the fields that were given a value."""
        return {k: v for k, v in self.model_dump().items() if v is not None}

    def result_fields(self) -> dict[str, Any]:
        return {k: v for k, v in self.supplied().items() if k in self.RESULT_FIELDS}


class ExecutionFilter(_RequestModel):
    """Filter for listing executions. All criteria are AND-ed."""

    status: ExecutionStatus | list[ExecutionStatus] | None = None
    model: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    search: str | None = None
    has_artifacts: bool | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _upper_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.upper()
        if isinstance(value, (list, tuple, set)):
            return [v.upper() if isinstance(v, str) else v for v in value]
        return value

    @model_validator(mode="after")
    def _check_date_range(self) -> ExecutionFilter:
        if self.created_after and self.created_before and self.created_after > self.created_before:
            raise ValueError("created_after must not be later than created_before")
        return self

    def statuses(self) -> list[ExecutionStatus]:
        if self.status is None:
            return []
        if isinstance(self.status, ExecutionStatus):
            return [self.status]
        return list(dict.fromkeys(self.status))


class Pagination(_RequestModel):
    """1-based page request. ``page_size`` above the cap is clamped, not rejected."""

    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=DEFAULT_PAGE_SIZE, ge=1)

    @field_validator("page_size")
    @classmethod
    def _clamp_page_size(cls, value: int) -> int:
        return min(value, MAX_PAGE_SIZE)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


_M = TypeVar("_M", bound=BaseModel)


def parse_request(model_cls: type[_M], data: _M | Mapping[str, Any] | None) -> _M:
    """Validate *data* into *model_cls*, converting failures to InvalidInputError."""
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(dict(data or {}))
    except ValidationError as exc:
        errors = [
            {
                "field": ".".join(str(p) for p in err["loc"]),
                "message": err["msg"],
            }
            for err in exc.errors()
        ]
        field_name = errors[0]["field"] if errors else None
        raise InvalidInputError(
            f"Invalid {model_cls.__name__}: {errors[0]['message'] if errors else exc}",
            field=field_name,
            errors=errors,
            cause=exc,
        ) from exc


__all__ = [
    "ACTIVE_STATUSES",
    "Artifact",
    "CANCELLABLE_STATUSES",
    "CancelResult",
    "CreateExecutionInput",
    "DEFAULT_PAGE_SIZE",
    "EXECUTION_VALID_TRANSITIONS",
    "Execution",
    "ExecutionFilter",
    "ExecutionStatus",
    "ExecutionSummary",
    "InvalidTransitionError",
    "LogsResult",
    "MAX_PAGE_SIZE",
    "Pagination",
    "ResourceConfig",
    "StatusTransition",
    "TERMINAL_STATUSES",
    "TransitionFields",
    "is_valid_transition",
    "parse_execution_id",
    "parse_request",
    "parse_status",
    "stored_job_name",
    "utcnow",
    "validate_execution_transition",
]
