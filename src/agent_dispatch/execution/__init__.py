"""Execution lifecycle: models, store, listing, engine and reconciliation."""

from agent_dispatch.execution.engine import ExecutionEngine
from agent_dispatch.execution.listing import ExecutionPage
from agent_dispatch.execution.models import (
    CreateExecutionInput,
    Execution,
    ExecutionFilter,
    ExecutionStatus,
    ExecutionSummary,
    Pagination,
    StatusTransition,
    TransitionFields,
)
from agent_dispatch.execution.reconciler import ExecutionReconciler, ReconcileReport
from agent_dispatch.execution.store import ExecutionStore

__all__ = [
    "CreateExecutionInput",
    "Execution",
    "ExecutionEngine",
    "ExecutionFilter",
    "ExecutionPage",
    "ExecutionReconciler",
    "ExecutionStatus",
    "ExecutionStore",
    "ExecutionSummary",
    "Pagination",
    "ReconcileReport",
    "StatusTransition",
    "TransitionFields",
]
