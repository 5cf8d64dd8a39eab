"""Tests for the HTTP API."""

import json

import httpx
import pytest
from conftest import mock_http

from tasksync.api.deps import get_sync_manager
from tasksync.main import app
from tasksync.services.sync_manager import SyncManager

GITHUB_CONFIG = {"api_token": "ghp_test", "owner": "acme", "repo": "app"}


class FakeGitHub:
    """Serves one open issue and records every request."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET" and request.url.path == "/repos/acme/app/issues":
            return httpx.Response(
                200, json=[{"number": 7, "title": "Crash on save", "body": "trace", "state": "open", "labels": []}]
            )
        if request.method == "PATCH":
            return httpx.Response(200, json={"number": 7})
        if request.url.path == "/repos/acme/app/collaborators":
            return httpx.Response(200, json=[{"login": "octocat"}])
        return httpx.Response(404, json={"message": "Not Found"})


@pytest.fixture
def github():
    return FakeGitHub()


@pytest.fixture
def manager(store, settings, sleep, github):
    """Route API calls through a manager whose HTTP traffic hits FakeGitHub."""
    manager = SyncManager(store, settings=settings, http_client=mock_http(github), sleep=sleep)
    app.dependency_overrides[get_sync_manager] = lambda: manager
    yield manager
    app.dependency_overrides.clear()


async def _create_github_source(client) -> dict:
    response = await client.post(
        "/api/v1/task-sources", json={"name": "App issues", "plugin_id": "github-issues", "config": GITHUB_CONFIG}
    )
    assert response.status_code == 201
    return response.json()


class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestPlugins:
    """Tests for plugin discovery endpoints."""

    async def test_list(self, client):
        response = await client.get("/api/v1/plugins")
        assert response.status_code == 200
        assert {p["id"] for p in response.json()} == {"github-issues", "hubspot", "linear", "notion", "peakflo"}

    async def test_schema(self, client):
        response = await client.get("/api/v1/plugins/github-issues/schema")
        assert response.status_code == 200
        keys = [f["key"] for f in response.json()]
        assert keys[:3] == ["api_token", "owner", "repo"]

    async def test_unknown_plugin_schema(self, client):
        response = await client.get("/api/v1/plugins/jira/schema")
        assert response.status_code == 404

    async def test_validate(self, client):
        response = await client.post("/api/v1/plugins/peakflo/validate", json={"config": {"status_filter": "done"}})
        assert response.json() == {"valid": False, "error": "Invalid status filter: done"}

        response = await client.post("/api/v1/plugins/peakflo/validate", json={"config": {}})
        assert response.json()["valid"]


class TestTaskSources:
    """Tests for task source endpoints."""

    async def test_invalid_config_rejected(self, client):
        response = await client.post(
            "/api/v1/task-sources", json={"name": "Bad", "plugin_id": "peakflo", "config": {"status_filter": "done"}}
        )
        assert response.status_code == 400

    async def test_unknown_plugin_rejected(self, client):
        response = await client.post("/api/v1/task-sources", json={"name": "X", "plugin_id": "jira"})
        assert response.status_code == 404

    async def test_crud(self, client):
        source = await _create_github_source(client)
        assert source["config"]["api_token"] == "ghp_test"

        response = await client.patch(f"/api/v1/task-sources/{source['id']}", json={"name": "Renamed"})
        assert response.json()["name"] == "Renamed"

        listed = await client.get("/api/v1/task-sources")
        assert [s["id"] for s in listed.json()] == [source["id"]]

        assert (await client.delete(f"/api/v1/task-sources/{source['id']}")).status_code == 204
        assert (await client.get(f"/api/v1/task-sources/{source['id']}")).status_code == 404

    async def test_missing_source(self, client):
        assert (await client.get("/api/v1/task-sources/missing")).status_code == 404
        assert (await client.patch("/api/v1/task-sources/missing", json={"name": "x"})).status_code == 404
        assert (await client.delete("/api/v1/task-sources/missing")).status_code == 404
        assert (await client.post("/api/v1/task-sources/missing/sync")).status_code == 404
        assert (await client.get("/api/v1/task-sources/missing/actions")).status_code == 404

    async def test_actions_and_mapping(self, client):
        source = await _create_github_source(client)

        actions = await client.get(f"/api/v1/task-sources/{source['id']}/actions")
        assert [a["id"] for a in actions.json()] == ["add_comment", "close_issue", "reopen_issue"]

        mapping = await client.get(f"/api/v1/task-sources/{source['id']}/field-mapping")
        assert mapping.status_code == 200
        assert mapping.json()

    async def test_users_not_supported(self, client):
        response = await client.post("/api/v1/task-sources", json={"name": "Workflo", "plugin_id": "peakflo"})
        response = await client.get(f"/api/v1/task-sources/{response.json()['id']}/users")
        assert response.status_code == 501

    async def test_sync(self, client, manager, github):
        source = await _create_github_source(client)

        response = await client.post(f"/api/v1/task-sources/{source['id']}/sync")

        assert response.status_code == 200
        assert response.json()["imported"] == 1
        tasks = (await client.get("/api/v1/tasks", params={"source_id": source["id"]})).json()
        assert tasks[0]["title"] == "Crash on save"
        assert tasks[0]["external_id"] == "7"

        synced = (await client.get(f"/api/v1/task-sources/{source['id']}")).json()
        assert synced["last_synced_at"] is not None

    async def test_users(self, client, manager):
        source = await _create_github_source(client)
        response = await client.get(f"/api/v1/task-sources/{source['id']}/users")
        assert [u["id"] for u in response.json()] == ["octocat"]


class TestTasks:
    """Tests for task endpoints."""

    async def test_crud(self, client):
        response = await client.post("/api/v1/tasks", json={"title": "Write report", "priority": "high"})
        assert response.status_code == 201
        task = response.json()
        assert task["status"] == "not_started"

        response = await client.patch(f"/api/v1/tasks/{task['id']}", json={"status": "completed"})
        assert response.json()["status"] == "completed"

        listed = await client.get("/api/v1/tasks", params={"status": "completed"})
        assert [t["id"] for t in listed.json()] == [task["id"]]

        assert (await client.delete(f"/api/v1/tasks/{task['id']}")).status_code == 204
        assert (await client.get(f"/api/v1/tasks/{task['id']}")).status_code == 404

    async def test_missing_task(self, client):
        assert (await client.get("/api/v1/tasks/missing")).status_code == 404
        assert (await client.patch("/api/v1/tasks/missing", json={"title": "x"})).status_code == 404
        assert (await client.post("/api/v1/tasks/missing/actions/close_issue", json={})).status_code == 404

    async def test_duplicate_link_conflicts(self, client):
        source = await _create_github_source(client)
        body = {"title": "A", "source_id": source["id"], "external_id": "7"}

        assert (await client.post("/api/v1/tasks", json=body)).status_code == 201
        assert (await client.post("/api/v1/tasks", json=body)).status_code == 409

    async def test_linked_edit_is_exported(self, client, manager, github):
        source = await _create_github_source(client)
        task = (await client.post("/api/v1/tasks", json={"title": "A", "source_id": source["id"], "external_id": "7"})).json()

        response = await client.patch(f"/api/v1/tasks/{task['id']}", json={"title": "Renamed"})

        assert response.json()["title"] == "Renamed"
        patches = [r for r in github.requests if r.method == "PATCH"]
        assert patches[0].url.path == "/repos/acme/app/issues/7"
        assert json.loads(patches[0].content) == {"title": "Renamed"}

    async def test_action_applies_task_update(self, client, manager, github):
        source = await _create_github_source(client)
        task = (await client.post("/api/v1/tasks", json={"title": "A", "source_id": source["id"], "external_id": "7"})).json()

        response = await client.post(f"/api/v1/tasks/{task['id']}/actions/close_issue", json={})

        assert response.json()["success"]
        assert (await client.get(f"/api/v1/tasks/{task['id']}")).json()["status"] == "completed"

    async def test_action_on_local_task(self, client):
        task = (await client.post("/api/v1/tasks", json={"title": "A"})).json()
        response = await client.post(f"/api/v1/tasks/{task['id']}/actions/close_issue", json={})
        assert response.json() == {"success": False, "error": "Task is not linked to a task source", "task_update": None}

    async def test_reassign_local_task(self, client):
        task = (await client.post("/api/v1/tasks", json={"title": "A"})).json()
        response = await client.post(f"/api/v1/tasks/{task['id']}/reassign", json={"user_ids": ["u1"]})
        assert response.status_code == 400

    async def test_extract_output(self, client):
        task = (
            await client.post(
                "/api/v1/tasks",
                json={"title": "A", "output_fields": [{"id": "f1", "name": "Summary"}]},
            )
        ).json()
        messages = [
            {"info": {"role": "user"}, "parts": [{"type": "text", "text": "go"}]},
            {"info": {"role": "assistant"}, "parts": [{"type": "text", "text": '```json\n{"summary": "All good"}\n```'}]},
        ]

        response = await client.post(f"/api/v1/tasks/{task['id']}/extract-output", json={"messages": messages})

        assert response.status_code == 200
        assert response.json()["output_fields"][0]["value"] == "All good"


class TestMcpServers:
    """Tests for tool server endpoints."""

    async def test_remote_needs_url(self, client):
        response = await client.post("/api/v1/mcp-servers", json={"name": "pf", "type": "remote"})
        assert response.status_code == 400

    async def test_create_and_delete(self, client):
        response = await client.post("/api/v1/mcp-servers", json={"name": "pf", "url": "https://mcp.test"})
        assert response.status_code == 201
        server_id = response.json()["id"]

        assert (await client.delete(f"/api/v1/mcp-servers/{server_id}")).status_code == 204
        assert (await client.delete(f"/api/v1/mcp-servers/{server_id}")).status_code == 404
