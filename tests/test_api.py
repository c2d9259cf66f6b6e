"""Tests for the status API endpoints."""

import pytest
from httpx import AsyncClient, ASGITransport

from build_agent.main import create_app
from build_agent.models.session import SessionState, Stage, StageStatus
from build_agent.services.registry import SessionRegistry


@pytest.fixture
def registry(config, channel):
    return SessionRegistry(config, channel)


@pytest.fixture
async def client(registry):
    transport = ASGITransport(app=create_app(registry))
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


class TestHealthEndpoint:
    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "sessions": 0}

    async def test_health_counts_sessions(self, client, registry):
        registry.open_tunnel("b1")
        registry.open_tunnel("b2")
        resp = await client.get("/api/health")
        assert resp.json()["sessions"] == 2


class TestSessionEndpoints:
    async def test_list_empty(self, client):
        resp = await client.get("/api/sessions")
        assert resp.status_code == 200
        assert resp.json() == []

    async def test_list_sessions(self, client, registry):
        controller = registry.open_tunnel("b1")
        controller.session.state = SessionState.cloned
        resp = await client.get("/api/sessions")
        assert resp.json() == [{"id": "b1", "state": "cloned", "stages": 0}]

    async def test_get_session(self, client, registry):
        controller = registry.open_tunnel("b1")
        controller.session.workspace = "/tmp/ws"
        resp = await client.get("/api/sessions/b1")
        assert resp.status_code == 200
        data = resp.json()
        assert data["id"] == "b1"
        assert data["state"] == "idle"
        assert data["workspace"] == "/tmp/ws"

    async def test_get_session_not_found(self, client):
        resp = await client.get("/api/sessions/nonexistent")
        assert resp.status_code == 404

    async def test_closed_session_not_found(self, client, registry):
        registry.open_tunnel("b1")
        registry.close("b1")
        resp = await client.get("/api/sessions/b1")
        assert resp.status_code == 404


class TestStagesEndpoint:
    async def test_stages_empty(self, client, registry):
        registry.open_tunnel("b1")
        resp = await client.get("/api/sessions/b1/stages")
        assert resp.status_code == 200
        assert resp.json() == []

    async def test_stages_use_record_field_names(self, client, registry):
        controller = registry.open_tunnel("b1")
        controller.session.stages = [
            Stage(build="build-1", name="build", status=StageStatus.success,
                  start_at=1000, done_at=2000),
            Stage(build="build-1", name="test"),
        ]
        resp = await client.get("/api/sessions/b1/stages")
        assert resp.json() == [
            {"build": "build-1", "name": "build", "status": "success",
             "startAt": 1000, "doneAt": 2000},
            {"build": "build-1", "name": "test", "status": "pending"},
        ]

    async def test_stages_not_found(self, client):
        resp = await client.get("/api/sessions/nonexistent/stages")
        assert resp.status_code == 404
