"""
Shared pytest fixtures for agent-dispatch tests.

This module provides:
- Settings isolated from the developer's environment / .env file
- An in-memory SQLite connection with the schema applied
- ExecutionStore, StubJobBackend and ExecutionEngine wired together

Usage:
    async def test_something(engine, backend):
        execution = await engine.create({"prompt": "hello"})
"""

from collections.abc import Iterator

import pytest

from agent_dispatch.core.connection import create_connection
from agent_dispatch.core.settings import DispatchSettings, clear_settings_cache
from agent_dispatch.execution.backends import StubJobBackend
from agent_dispatch.execution.engine import ExecutionEngine
from agent_dispatch.execution.store import ExecutionStore


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> Iterator[None]:
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture()
def settings() -> DispatchSettings:
    return DispatchSettings(_env_file=None, database_url="memory")


@pytest.fixture()
def conn():
    connection, _info = create_connection("memory", init_schema=True)
    yield connection
    connection.close()


@pytest.fixture()
def store(conn, settings) -> ExecutionStore:
    return ExecutionStore(
        conn,
        job_name_prefix=settings.job_name_prefix,
        max_page_size=settings.page_size_max,
    )


@pytest.fixture()
def backend() -> StubJobBackend:
    return StubJobBackend()


@pytest.fixture()
def engine(store, backend, settings) -> ExecutionEngine:
    return ExecutionEngine(store, backend, settings)
