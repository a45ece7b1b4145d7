"""
CLI: ``agent-dispatch`` — manage executions, run reconciliation, serve the API.

::

    agent-dispatch executions list [--status S] [--model M] [--search T] [--page N] [--page-size N]
    agent-dispatch executions show <id> [--transitions] [--artifacts]
    agent-dispatch executions create <prompt> [--model M] [--max-tokens N] [--timeout S]
    agent-dispatch executions cancel <id> [--reason R]
    agent-dispatch executions logs <id>
    agent-dispatch reconcile [--loop]
    agent-dispatch serve [--host H] [--port P]
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Coroutine, Iterator
from contextlib import contextmanager
from typing import Any, NoReturn, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from agent_dispatch.core.connection import create_connection
from agent_dispatch.core.errors import DispatchError
from agent_dispatch.core.logging import configure_logging
from agent_dispatch.core.settings import DispatchSettings, get_settings
from agent_dispatch.execution.backends._base import StubJobBackend
from agent_dispatch.execution.backends._types import JobBackend
from agent_dispatch.execution.engine import ExecutionEngine
from agent_dispatch.execution.reconciler import ExecutionReconciler
from agent_dispatch.execution.store import ExecutionStore

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")

app = typer.Typer(
    name="agent-dispatch",
    help="agent-dispatch — run agent executions as orchestrator jobs.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
executions_app = typer.Typer(no_args_is_help=True)
app.add_typer(executions_app, name="executions", help="Execution management.")


# ── Wiring helpers ───────────────────────────────────────────────────────


def _make_backend(settings: DispatchSettings, name: str) -> JobBackend:
    if name == "stub":
        return StubJobBackend(job_name_prefix=settings.job_name_prefix)
    if name == "kubernetes":
        from agent_dispatch.execution.backends.kubernetes import KubernetesJobBackend

        return KubernetesJobBackend(settings)
    err_console.print(f"[bold red]Error[/bold red]: unknown backend {name!r} (use kubernetes or stub)")
    raise typer.Exit(code=2)


@contextmanager
def open_engine(database: str | None, backend: str) -> Iterator[ExecutionEngine]:
    """Open the store + backend for one command and close the store afterwards."""
    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.json_logs, service=settings.service_name)
    conn, info = _run_guarded(lambda: create_connection(database or settings.database_url, init_schema=True))
    try:
        store = ExecutionStore(
            conn,
            job_name_prefix=settings.job_name_prefix,
            max_page_size=settings.page_size_max,
            persistent=info.persistent,
        )
        yield ExecutionEngine(store, _make_backend(settings, backend), settings)
    finally:
        conn.close()


def _fail(exc: DispatchError) -> NoReturn:
    err_console.print(f"[bold red]Error[/bold red] ({exc.code}): {exc.message}")
    if exc.details:
        err_console.print(json.dumps(exc.details, default=str))
    raise typer.Exit(code=1)


def _run_guarded(fn: Any) -> Any:
    try:
        return fn()
    except DispatchError as exc:
        _fail(exc)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except DispatchError as exc:
        _fail(exc)


def _print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def _print_record(data: dict[str, Any], title: str) -> None:
    table = Table(title=title, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, (dict, list)):
            value = json.dumps(value, default=str)
        table.add_row(key, "" if value is None else str(value))
    console.print(table)


DatabaseOpt = typer.Option(None, "--database", "-d", help="Database URL or path (overrides settings)")
BackendOpt = typer.Option("kubernetes", "--backend", "-b", help="Job backend: kubernetes or stub")
JsonOpt = typer.Option(False, "--json", help="Emit JSON")


# ── executions ───────────────────────────────────────────────────────────


@executions_app.command("list")
def list_executions(
    status: list[str] | None = typer.Option(None, "--status", "-s", help="Filter by status (repeatable)"),
    model: str | None = typer.Option(None, "--model", "-m"),
    search: str | None = typer.Option(None, "--search", "-q", help="Substring of the prompt"),
    page: int = typer.Option(1, "--page"),
    page_size: int | None = typer.Option(None, "--page-size", "-n"),
    database: str | None = DatabaseOpt,
    backend: str = BackendOpt,
    json_out: bool = JsonOpt,
) -> None:
    """List executions, newest first."""
    flt = {k: v for k, v in {"status": status or None, "model": model, "search": search}.items() if v}
    pagination: dict[str, Any] = {"page": page}
    if page_size is not None:
        pagination["page_size"] = page_size

    with open_engine(database, backend) as engine:
        result = _run(engine.list(flt, pagination))

    if json_out:
        _print_json(result.to_dict())
        return

    table = Table(title=f"Executions (page {result.page}/{max(result.total_pages, 1)}, total {result.total})")
    for col in ("ID", "Status", "Model", "Created", "Prompt"):
        table.add_column(col)
    for item in result.items:
        table.add_row(
            item.id,
            item.status.value,
            item.model,
            item.created_at.isoformat(timespec="seconds"),
            item.prompt[:60],
        )
    console.print(table)


@executions_app.command("show")
def show_execution(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    transitions: bool = typer.Option(False, "--transitions", "-t", help="Include status history"),
    artifacts: bool = typer.Option(False, "--artifacts", "-a", help="Include artifacts"),
    database: str | None = DatabaseOpt,
    backend: str = BackendOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Show one execution."""
    with open_engine(database, backend) as engine:
        execution = _run(engine.get(
            execution_id,
            include_transitions=transitions,
            include_artifacts=artifacts,
        ))
    if json_out:
        _print_json(execution.to_dict())
    else:
        _print_record(execution.to_dict(), title=f"Execution: {execution.id}")


@executions_app.command("create")
def create_execution(
    prompt: str = typer.Argument(..., help="Task prompt"),
    model: str | None = typer.Option(None, "--model", "-m"),
    max_tokens: int | None = typer.Option(None, "--max-tokens"),
    timeout: int | None = typer.Option(None, "--timeout", help="Timeout in seconds"),
    metadata: str | None = typer.Option(None, "--metadata", help="JSON object"),
    database: str | None = DatabaseOpt,
    backend: str = BackendOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Create a PENDING execution (the reconciler dispatches its job)."""
    data: dict[str, Any] = {"prompt": prompt}
    if model:
        data["model"] = model
    if max_tokens is not None:
        data["max_tokens"] = max_tokens
    if timeout is not None:
        data["timeout"] = timeout
    if metadata:
        try:
            data["metadata"] = json.loads(metadata)
        except json.JSONDecodeError as e:
            err_console.print(f"[red]Error: Invalid JSON metadata: {e}[/red]")
            raise typer.Exit(1) from e

    with open_engine(database, backend) as engine:
        execution = _run(engine.create(data))
    if json_out:
        _print_json(execution.to_dict())
    else:
        console.print(f"[bold green]Created[/bold green] {execution.id} ({execution.status.value})")


@executions_app.command("cancel")
def cancel_execution(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    reason: str | None = typer.Option(None, "--reason", "-r"),
    database: str | None = DatabaseOpt,
    backend: str = BackendOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Cancel a PENDING or RUNNING execution."""
    with open_engine(database, backend) as engine:
        result = _run(engine.cancel(execution_id, reason))
    if json_out:
        _print_json(result.to_dict())
    else:
        console.print(f"[yellow]Cancelled[/yellow] {result.id} at {result.cancelled_at.isoformat()}")


@executions_app.command("logs")
def execution_logs(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    database: str | None = DatabaseOpt,
    backend: str = BackendOpt,
) -> None:
    """Print job logs for an execution."""
    with open_engine(database, backend) as engine:
        result = _run(engine.get_logs(execution_id))
    console.print(result.logs, markup=False, highlight=False)


# ── reconcile / serve ────────────────────────────────────────────────────


@app.command("reconcile")
def reconcile(
    loop: bool = typer.Option(False, "--loop", help="Keep running at the configured interval"),
    interval: float | None = typer.Option(None, "--interval", help="Seconds between passes"),
    sweep: bool = typer.Option(True, "--sweep/--no-sweep", help="Delete jobs with no live execution"),
    database: str | None = DatabaseOpt,
    backend: str = BackendOpt,
    json_out: bool = JsonOpt,
) -> None:
    """Dispatch PENDING executions, sync job status, delete orphaned jobs."""
    with open_engine(database, backend) as engine:
        if sweep and not engine.store.persistent:
            err_console.print("[yellow]In-memory database: orphan sweep disabled[/yellow]")
            sweep = False
        reconciler = ExecutionReconciler(engine.store, engine.backend, engine, sweep=sweep)
        if loop:
            seconds = interval or get_settings().reconcile_interval_seconds
            console.print(f"[bold]Reconciling every {seconds}s[/bold] (Ctrl+C to stop)")
            try:
                _run(reconciler.run_forever(seconds))
            except KeyboardInterrupt:
                console.print("stopped")
            return
        report = _run(reconciler.run_once())

    if json_out:
        _print_json(report.to_dict())
    else:
        _print_record(report.to_dict(), title="Reconcile")
    if not report.ok:
        raise typer.Exit(code=1)


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Bind address"),
    port: int = typer.Option(3001, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on changes"),
    log_level: str = typer.Option("info", "--log-level"),
) -> None:
    """Start the REST API server."""
    import uvicorn

    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.json_logs, service=settings.service_name)
    console.print(f"[bold green]Starting agent-dispatch API[/bold green] on {host}:{port}")
    uvicorn.run(
        "agent_dispatch.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


if __name__ == "__main__":
    app()
