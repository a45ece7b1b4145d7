"""
Structured error types for agent-dispatch.

Every failure the lifecycle engine can surface is a :class:`DispatchError`
subclass carrying a machine-readable ``code``, an :class:`ErrorCategory`,
an explicit ``retryable`` flag and a ``details`` payload for callers.

Manifesto:
    - **Typed hierarchy:** one class per outcome in the taxonomy
    - **Explicit retry semantics:** each error knows whether it is retryable
    - **Structured details:** conflicts name the current and allowed states
    - **Error chaining:** the original exception is kept as ``cause``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        DispatchError                          │
        │        (code, category, retryable, details, cause)            │
        ├──────────────────────────────────────────────────────────────┤
        │  NotFoundError        InvalidInputError      PersistenceError │
        │  (NOT_FOUND)          (INVALID_INPUT)        (DATABASE)       │
        │                                                               │
        │  ConflictError        BackendUnconfiguredError  BackendError  │
        │   ├ InvalidStateError (CONFIG, fail fast)  (BACKEND, retry)   │
        │   └ InvalidTransitionError                                    │
        └──────────────────────────────────────────────────────────────┘

Propagation:
    NotFound / InvalidInput / InvalidState / InvalidTransition are expected,
    user-facing outcomes and are never retried internally. BackendError is
    transient. BackendUnconfigured is raised before any network I/O.

Examples:
    >>> err = InvalidStateError("CANCELLED", ["PENDING", "RUNNING"])
    >>> err.code
    'INVALID_STATE'
    >>> err.details["currentStatus"]
    'CANCELLED'
    >>> http_status_for(err)
    409

Tags:
    error-handling, exception-hierarchy, agent-dispatch

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"
    CONFLICT = "CONFLICT"
    CONFIG = "CONFIG"
    BACKEND = "BACKEND"
    DATABASE = "DATABASE"
    INTERNAL = "INTERNAL"


class DispatchError(Exception):
    """Base exception for all agent-dispatch errors.

    Subclasses set ``default_code``, ``default_category`` and
    ``default_retryable``; instances may override any of them.

    Examples:
        >>> error = DispatchError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.to_dict()["code"]
        'INTERNAL'
    """

    default_code: str = "INTERNAL"
    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.details: dict[str, Any] = dict(details or {})
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_details(self, **kwargs: Any) -> DispatchError:
        """Add detail fields (fluent API)."""
        self.details.update(kwargs)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a response/logging payload."""
        result: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, code={self.code})"


# =============================================================================
# USER-FACING OUTCOMES
# =============================================================================


class NotFoundError(DispatchError):
    """Unknown execution id."""

    default_code = "NOT_FOUND"
    default_category = ErrorCategory.NOT_FOUND

    def __init__(self, resource: str, resource_id: str, message: str | None = None):
        super().__init__(
            message or f"{resource} not found",
            details={"id": resource_id},
        )
        self.resource = resource
        self.resource_id = resource_id


class InvalidInputError(DispatchError):
    """Empty or oversized prompt, malformed id, bad filter values."""

    default_code = "INVALID_INPUT"
    default_category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        errors: list[dict[str, Any]] | None = None,
        cause: Exception | None = None,
    ):
        details: dict[str, Any] = {}
        if field is not None:
            details["field"] = field
        if errors:
            details["errors"] = errors
        super().__init__(message, details=details, cause=cause)
        self.field = field


class ConflictError(DispatchError):
    """Action not permitted from the current status."""

    default_code = "CONFLICT"
    default_category = ErrorCategory.CONFLICT


class InvalidStateError(ConflictError):
    """Raised when an action (e.g. cancel) is not allowed in the current status."""

    default_code = "INVALID_STATE"

    def __init__(
        self,
        current_status: str,
        allowed_statuses: Iterable[str],
        message: str | None = None,
    ):
        allowed = [str(s) for s in allowed_statuses]
        super().__init__(
            message or f"Cannot cancel execution in {current_status} state",
            details={"currentStatus": current_status, "allowedStatuses": allowed},
        )
        self.current_status = current_status
        self.allowed_statuses = allowed


class InvalidTransitionError(ConflictError):
    """Raised when an illegal status transition is attempted.

    The state machine is strict: if a legitimate transition is blocked,
    add it to the transition table explicitly, never remove the guard.
    """

    default_code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Invalid ExecutionStatus transition: {current} → {target}",
            details={"currentStatus": current, "targetStatus": target},
        )
        self.current = current
        self.target = target


# =============================================================================
# INFRASTRUCTURE
# =============================================================================


class BackendUnconfiguredError(DispatchError):
    """The orchestrator client could not be initialised at startup."""

    default_code = "BACKEND_UNCONFIGURED"
    default_category = ErrorCategory.CONFIG


class BackendError(DispatchError):
    """Transient I/O failure calling the orchestrator."""

    default_code = "BACKEND_ERROR"
    default_category = ErrorCategory.BACKEND
    default_retryable = True


class PersistenceError(DispatchError):
    """Store constraint violation or database failure."""

    default_code = "PERSISTENCE_ERROR"
    default_category = ErrorCategory.DATABASE


# =============================================================================
# HTTP MAPPING
# =============================================================================

ERROR_CODE_TO_STATUS: dict[str, int] = {
    "NOT_FOUND": 404,
    "INVALID_INPUT": 400,
    "CONFLICT": 409,
    "INVALID_STATE": 409,
    "INVALID_TRANSITION": 409,
    "BACKEND_UNCONFIGURED": 503,
    "BACKEND_ERROR": 502,
    "PERSISTENCE_ERROR": 500,
    "INTERNAL": 500,
}


def http_status_for(error: Exception) -> int:
    """Resolve an error to an HTTP status code, defaulting to 500."""
    if isinstance(error, DispatchError):
        return ERROR_CODE_TO_STATUS.get(error.code, 500)
    return 500


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, DispatchError):
        return error.retryable
    return False


__all__ = [
    "ErrorCategory",
    "DispatchError",
    "NotFoundError",
    "InvalidInputError",
    "ConflictError",
    "InvalidStateError",
    "InvalidTransitionError",
    "BackendUnconfiguredError",
    "BackendError",
    "PersistenceError",
    "ERROR_CODE_TO_STATUS",
    "http_status_for",
    "is_retryable",
]
