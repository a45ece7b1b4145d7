"""Core primitives: errors, logging, settings and the SQLite connection layer."""

from agent_dispatch.core.errors import (
    BackendError,
    BackendUnconfiguredError,
    DispatchError,
    InvalidInputError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
)
from agent_dispatch.core.logging import configure_logging, get_logger
from agent_dispatch.core.settings import DispatchSettings, get_settings

__all__ = [
    "BackendError",
    "BackendUnconfiguredError",
    "DispatchError",
    "DispatchSettings",
    "InvalidInputError",
    "InvalidStateError",
    "InvalidTransitionError",
    "NotFoundError",
    "PersistenceError",
    "configure_logging",
    "get_logger",
    "get_settings",
]
