"""
Tests for the FastAPI layer.

Uses httpx.AsyncClient over ASGITransport with the store and stub backend
injected, so no database file or cluster is touched.
"""

from datetime import datetime

import httpx
import pytest
import pytest_asyncio

from agent_dispatch.api import create_app
from agent_dispatch.execution.backends import StubJobBackend

MISSING_ID = "00000000-0000-4000-8000-000000000000"
BASE = "/api/v1/executions"


# ── Helpers ──────────────────────────────────────────────────────────────


@pytest.fixture()
def app(settings, store, backend):
    return create_app(settings, store=store, backend=backend)


@pytest_asyncio.fixture()
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _create(client, **body) -> dict:
    body.setdefault("prompt", "summarise the incident")
    resp = await client.post(BASE, json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


# ── Create / get ─────────────────────────────────────────────────────────


class TestCreateAndGet:
    @pytest.mark.asyncio
    async def test_create_returns_pending_record(self, client):
        data = await _create(client, maxTokens=256, metadata={"team": "sre"})
        assert data["status"] == "PENDING"
        assert data["maxTokens"] == 256
        assert data["model"] == "claude-sonnet-4-20250514"
        assert data["timeout"] == 1800
        assert data["jobName"].startswith("claude-agent-")
        assert data["metadata"] == {"team": "sre"}

    @pytest.mark.asyncio
    async def test_empty_prompt_is_400(self, client):
        resp = await client.post(BASE, json={"prompt": ""})
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "INVALID_INPUT"
        assert body["details"]["field"] == "prompt"

    @pytest.mark.asyncio
    async def test_non_object_body_is_400(self, client):
        resp = await client.post(BASE, json=["not", "an", "object"])
        assert resp.status_code == 400
        assert resp.json()["code"] == "INVALID_INPUT"

    @pytest.mark.asyncio
    async def test_get_with_transitions(self, client):
        created = await _create(client)
        resp = await client.get(f"{BASE}/{created['id']}", params={"includeTransitions": "true"})
        assert resp.status_code == 200
        transitions = resp.json()["statusTransitions"]
        assert [(t["fromStatus"], t["toStatus"]) for t in transitions] == [(None, "PENDING")]

    @pytest.mark.asyncio
    async def test_get_unknown_is_404(self, client):
        resp = await client.get(f"{BASE}/{MISSING_ID}")
        assert resp.status_code == 404
        assert resp.json() == {
            "code": "NOT_FOUND",
            "message": "Execution not found",
            "details": {"id": MISSING_ID},
        }

    @pytest.mark.asyncio
    async def test_get_malformed_is_400(self, client):
        resp = await client.get(f"{BASE}/not-a-uuid")
        assert resp.status_code == 400


# ── List ─────────────────────────────────────────────────────────────────


class TestList:
    @pytest.mark.asyncio
    async def test_page_shape(self, client):
        for i in range(3):
            await _create(client, prompt=f"task {i}")
        resp = await client.get(BASE, params={"pageSize": 2})
        body = resp.json()
        assert resp.status_code == 200
        assert body["total"] == 3
        assert body["pageSize"] == 2
        assert body["totalPages"] == 2
        assert len(body["items"]) == 2
        assert body["items"][0]["prompt"] == "task 2"

    @pytest.mark.asyncio
    async def test_page_size_clamped(self, client):
        resp = await client.get(BASE, params={"pageSize": 200})
        assert resp.json()["pageSize"] == 100

    @pytest.mark.asyncio
    async def test_status_filter_comma_and_repeat(self, client):
        a = await _create(client)
        b = await _create(client)
        await client.post(f"{BASE}/{a['id']}/cancel")

        comma = await client.get(BASE, params={"status": "CANCELLED,RUNNING"})
        assert [i["id"] for i in comma.json()["items"]] == [a["id"]]

        repeated = await client.get(BASE, params=[("status", "pending"), ("status", "CANCELLED")])
        assert {i["id"] for i in repeated.json()["items"]} == {a["id"], b["id"]}

    @pytest.mark.asyncio
    async def test_bad_status_is_400(self, client):
        resp = await client.get(BASE, params={"status": "NOPE"})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_bad_page_is_400(self, client):
        resp = await client.get(BASE, params={"page": 0})
        assert resp.status_code == 400


# ── Cancel ───────────────────────────────────────────────────────────────


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_then_conflict(self, client):
        created = await _create(client)
        url = f"{BASE}/{created['id']}/cancel"

        first = await client.post(url, json={"reason": "test"})
        assert first.status_code == 200
        assert first.json()["status"] == "CANCELLED"
        assert first.json()["cancelledAt"]

        second = await client.post(url)
        assert second.status_code == 409
        body = second.json()
        assert body["code"] == "INVALID_STATE"
        assert body["details"]["currentStatus"] == "CANCELLED"

    @pytest.mark.asyncio
    async def test_cancel_unknown_is_404(self, client):
        resp = await client.post(f"{BASE}/{MISSING_ID}/cancel")
        assert resp.status_code == 404


# ── Logs / callback ──────────────────────────────────────────────────────


class TestLogsAndCallback:
    @pytest.mark.asyncio
    async def test_logs_placeholder(self, client):
        created = await _create(client)
        resp = await client.get(f"{BASE}/{created['id']}/logs")
        assert resp.status_code == 200
        assert resp.json()["logs"] == f"[Logs for job: {created['jobName']}]\nNo logs available yet."

    @pytest.mark.asyncio
    async def test_callback_drives_lifecycle(self, client):
        created = await _create(client)
        url = f"{BASE}/{created['id']}/callback"

        running = await client.post(url, json={"status": "RUNNING", "podName": "pod-1"})
        assert running.status_code == 200
        assert running.json()["podName"] == "pod-1"

        done = await client.post(url, json={"status": "COMPLETED", "output": "x", "tokensUsed": 12})
        assert done.status_code == 200
        assert done.json()["output"] == "x"
        assert datetime.fromisoformat(done.json()["startedAt"]) <= datetime.fromisoformat(done.json()["completedAt"])

        again = await client.post(url, json={"status": "RUNNING"})
        assert again.status_code == 409
        assert again.json()["code"] == "INVALID_TRANSITION"

    @pytest.mark.asyncio
    async def test_callback_requires_status(self, client):
        created = await _create(client)
        resp = await client.post(f"{BASE}/{created['id']}/callback", json={"output": "x"})
        assert resp.status_code == 400


# ── Health ───────────────────────────────────────────────────────────────


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/v1/health")
        assert resp.json() == {"status": "ok", "backend": "stub", "backendConfigured": True}

    @pytest.mark.asyncio
    async def test_unconfigured_backend_reported(self, settings, store):
        app = create_app(settings, store=store, backend=StubJobBackend(configured=False))
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            resp = await ac.get("/api/v1/health")
        assert resp.json()["backendConfigured"] is False
