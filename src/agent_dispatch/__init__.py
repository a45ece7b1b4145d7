"""agent-dispatch — run agent executions as orchestrator jobs and track them to completion."""

__version__ = "0.1.0"
