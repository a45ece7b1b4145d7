"""
HTTP layer: FastAPI router and application factory.

Thin mapping of engine operations to routes; all validation and state
rules live in :class:`ExecutionEngine`.

::

    create_app(settings, store=None, backend=None) → FastAPI
      POST   <prefix>/executions                    ─ create (201)
      GET    <prefix>/executions                    ─ list (filters + pagination)
      GET    <prefix>/executions/{id}               ─ get (includeTransitions, includeArtifacts)
      POST   <prefix>/executions/{id}/cancel        ─ cancel
      GET    <prefix>/executions/{id}/logs          ─ logs
      POST   <prefix>/executions/{id}/callback      ─ job status report
      GET    <prefix>/health                        ─ liveness + backend state

Errors are rendered as ``{"code", "message", "details"}`` with the status
from :func:`http_status_for`.

Tags:
    api, fastapi, app-factory, agent-dispatch

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from agent_dispatch.core.connection import create_connection
from agent_dispatch.core.errors import DispatchError, InvalidInputError, http_status_for
from agent_dispatch.core.logging import get_logger
from agent_dispatch.core.settings import DispatchSettings, get_settings
from agent_dispatch.execution.backends._types import JobBackend
from agent_dispatch.execution.engine import ExecutionEngine
from agent_dispatch.execution.store import ExecutionStore

logger = get_logger(__name__)


# ── Dependencies ─────────────────────────────────────────────────────────


def get_engine(request: Request) -> ExecutionEngine:
    return request.app.state.engine


EngineDep = Annotated[ExecutionEngine, Depends(get_engine)]


class CancelRequest(BaseModel):
    reason: str | None = None


# ── Router ───────────────────────────────────────────────────────────────

router = APIRouter(prefix="/executions", tags=["executions"])


@router.post("", status_code=201)
async def create_execution(engine: EngineDep, body: Annotated[dict[str, Any], Body()]) -> dict[str, Any]:
    execution = await engine.create(body)
    return execution.to_dict()


@router.get("")
async def list_executions(
    engine: EngineDep,
    status: Annotated[list[str] | None, Query()] = None,
    model: str | None = None,
    created_after: Annotated[str | None, Query(alias="createdAfter")] = None,
    created_before: Annotated[str | None, Query(alias="createdBefore")] = None,
    search: str | None = None,
    has_artifacts: Annotated[bool | None, Query(alias="hasArtifacts")] = None,
    page: int = 1,
    page_size: Annotated[int | None, Query(alias="pageSize")] = None,
) -> dict[str, Any]:
    statuses = [s for value in status or [] for s in value.split(",") if s]
    flt = {
        "status": statuses or None,
        "model": model,
        "created_after": created_after,
        "created_before": created_before,
        "search": search,
        "has_artifacts": has_artifacts,
    }
    pagination: dict[str, Any] = {"page": page}
    if page_size is not None:
        pagination["page_size"] = page_size
    result = await engine.list({k: v for k, v in flt.items() if v is not None}, pagination)
    return result.to_dict()


@router.get("/{execution_id}")
async def get_execution(
    execution_id: str,
    engine: EngineDep,
    include_transitions: Annotated[bool, Query(alias="includeTransitions")] = False,
    include_artifacts: Annotated[bool, Query(alias="includeArtifacts")] = False,
) -> dict[str, Any]:
    execution = await engine.get(
        execution_id,
        include_transitions=include_transitions,
        include_artifacts=include_artifacts,
    )
    return execution.to_dict()


@router.post("/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    engine: EngineDep,
    body: Annotated[CancelRequest | None, Body()] = None,
) -> dict[str, Any]:
    result = await engine.cancel(execution_id, body.reason if body else None)
    return result.to_dict()


@router.get("/{execution_id}/logs")
async def get_execution_logs(execution_id: str, engine: EngineDep) -> dict[str, Any]:
    return (await engine.get_logs(execution_id)).to_dict()


@router.post("/{execution_id}/callback")
async def report_status(
    execution_id: str,
    engine: EngineDep,
    body: Annotated[dict[str, Any], Body()],
) -> dict[str, Any]:
    """Status report from a job (or an external reconciler)."""
    payload = dict(body)
    status = payload.pop("status", None)
    if not status:
        raise InvalidInputError("status is required", field="status")
    reason = payload.pop("reason", None)
    execution = await engine.update_status(execution_id, status, payload or None, reason=reason)
    return execution.to_dict()


# ── Error handlers ───────────────────────────────────────────────────────


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    status = http_status_for(exc)
    if status >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(
        status_code=status,
        content={"code": exc.code, "message": exc.message, "details": exc.details},
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"code": "INVALID_INPUT", "message": "Invalid request", "details": {"errors": errors}},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all. Returns 500 without leaking internals unless debugging."""
    logger.exception("unhandled_error", path=request.url.path)
    settings: DispatchSettings = request.app.state.settings
    return JSONResponse(
        status_code=500,
        content={
            "code": "INTERNAL",
            "message": str(exc) if settings.debug else "An unexpected error occurred.",
            "details": {},
        },
    )


# ── App factory ──────────────────────────────────────────────────────────


def _default_backend(settings: DispatchSettings) -> JobBackend:
    from agent_dispatch.execution.backends.kubernetes import KubernetesJobBackend

    return KubernetesJobBackend(settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Open the store and backend unless they were injected."""
    settings: DispatchSettings = app.state.settings
    conn = None
    if app.state.engine is None:
        conn, info = create_connection(settings.database_url, init_schema=True)
        store = ExecutionStore(
            conn,
            job_name_prefix=settings.job_name_prefix,
            max_page_size=settings.page_size_max,
            persistent=info.persistent,
        )
        backend = app.state.backend or _default_backend(settings)
        app.state.engine = ExecutionEngine(store, backend, settings)
        logger.info("api_started", database=info.url, backend=backend.backend_name)

    yield

    if conn is not None:
        conn.close()
        app.state.engine = None
    logger.info("api_stopped")


def create_app(
    settings: DispatchSettings | None = None,
    *,
    store: ExecutionStore | None = None,
    backend: JobBackend | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    When *store* is given the engine is wired immediately (tests, embedding);
    otherwise the lifespan opens the configured database.
    """
    settings = settings or get_settings()

    app = FastAPI(title=settings.service_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.backend = backend
    app.state.engine = None
    if store is not None:
        app.state.engine = ExecutionEngine(store, backend or _default_backend(settings), settings)

    app.add_exception_handler(DispatchError, dispatch_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(router, prefix=settings.api_prefix)

    @app.get(f"{settings.api_prefix}/health")
    async def health(request: Request) -> dict[str, Any]:
        engine: ExecutionEngine | None = request.app.state.engine
        backend = engine.backend if engine else None
        return {
            "status": "ok",
            "backend": backend.backend_name if backend else None,
            "backendConfigured": bool(backend and backend.is_configured),
        }

    return app


__all__ = ["create_app", "router", "lifespan"]
