"""Tests for the HubSpot tickets plugin."""

import json
from datetime import datetime, timezone

import httpx
import pytest
from conftest import mock_http

from tasksync.clients.hubspot import HubSpotPipeline, HubSpotStage, pipelines_from_api
from tasksync.models import TaskPriority, TaskRecord, TaskStatus
from tasksync.plugins.hubspot import HubSpotPlugin, map_priority, map_status

CONFIG = {"auth_type": "private_app", "access_token": "pat-test", "sync_attachments": False}

PIPELINES_PAYLOAD = {
    "results": [
        {
            "id": "0",
            "label": "Support",
            "stages": [
                {"id": "1", "label": "New", "displayOrder": 0, "metadata": {"ticketState": "OPEN"}},
                {"id": "2", "label": "Waiting on contact", "displayOrder": 1, "metadata": {"ticketState": "OPEN"}},
                {"id": "3", "label": "In progress", "displayOrder": 2, "metadata": {"ticketState": "OPEN"}},
                {"id": "5", "label": "Archived", "displayOrder": 4, "metadata": {"ticketState": "CLOSED"}},
                {"id": "4", "label": "Closed", "displayOrder": 3, "metadata": {"ticketState": "CLOSED"}},
            ],
        }
    ]
}


def _ticket(ticket_id: str, subject: str, stage: str = "1", **props) -> dict:
    return {
        "id": ticket_id,
        "properties": {"subject": subject, "hs_pipeline": "0", "hs_pipeline_stage": stage, **props},
    }


class FakeHubSpot:
    """Routes HubSpot API paths to canned responses and records requests."""

    def __init__(self, tickets: list[dict] | None = None) -> None:
        self.tickets = tickets or []
        self.requests: list[httpx.Request] = []
        self.notes: dict[str, list[str]] = {}
        self.files: dict[str, bytes] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "PATCH":
            return httpx.Response(200, json={})
        if path == "/crm/v3/pipelines/tickets":
            return httpx.Response(200, json=PIPELINES_PAYLOAD)
        if path == "/crm/v3/objects/tickets/search":
            return httpx.Response(200, json={"results": self.tickets})
        if path.startswith("/crm/v3/objects/tickets/"):
            ticket_id = path.rsplit("/", 1)[-1]
            ticket = next((t for t in self.tickets if t["id"] == ticket_id), None)
            return httpx.Response(200, json=ticket) if ticket else httpx.Response(404)
        if path.startswith("/crm/v3/owners/"):
            return httpx.Response(200, json={"id": "77", "firstName": "Ada", "lastName": "Lovelace"})
        if path == "/crm/v3/owners":
            return httpx.Response(200, json={"results": [{"id": "77", "email": "ada@example.com", "firstName": "Ada"}]})
        if path == "/account-info/v3/details":
            return httpx.Response(200, json={"portalId": 123, "uiDomain": "app-eu1.hubspot.com"})
        if path.endswith("/associations/notes"):
            ticket_id = path.split("/")[-3]
            return httpx.Response(200, json={"results": [{"toObjectId": n} for n in self.notes.get(ticket_id, [])]})
        if path.startswith("/crm/v3/objects/notes/"):
            note_id = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"id": note_id, "properties": {"hs_attachment_ids": f"file-{note_id}"}})
        if path.endswith("/signed-url"):
            file_id = path.split("/")[-2]
            return httpx.Response(200, json={"url": f"https://cdn.hubspot.test/{file_id}"})
        if path.startswith("/files/v3/files/"):
            file_id = path.rsplit("/", 1)[-1]
            return httpx.Response(
                200, json={"id": file_id, "name": "invoice", "extension": "pdf", "type": "application/pdf"}
            )
        if request.url.host == "cdn.hubspot.test":
            return httpx.Response(200, content=self.files.get(path.lstrip("/"), b"%PDF"))
        return httpx.Response(404)

    def bodies(self, method: str) -> list[tuple[str, dict]]:
        return [(r.url.path, json.loads(r.content)) for r in self.requests if r.method == method]


def _task(**kwargs) -> TaskRecord:
    now = datetime.now(timezone.utc)
    data = {"id": "task-1", "external_id": "900", "source_id": "src", "title": "Ticket", "created_at": now, "updated_at": now}
    data.update(kwargs)
    return TaskRecord(**data)


class TestStatusMapping:
    """Tests for stage and priority mapping."""

    @pytest.fixture
    def pipelines(self) -> list[HubSpotPipeline]:
        return pipelines_from_api(PIPELINES_PAYLOAD)

    def test_closed_stage_metadata(self, pipelines):
        assert map_status("4", pipelines) == TaskStatus.COMPLETED
        assert map_status("5", pipelines) == TaskStatus.COMPLETED

    def test_open_stage_refined_by_label(self, pipelines):
        assert map_status("1", pipelines) == TaskStatus.NOT_STARTED
        assert map_status("2", pipelines) == TaskStatus.NOT_STARTED
        assert map_status("3", pipelines) == TaskStatus.AGENT_WORKING

    def test_metadata_beats_label(self):
        pipelines = [
            HubSpotPipeline(
                id="p", label="P", stages=[HubSpotStage(id="s", label="New, closed", ticket_state="OPEN")]
            )
        ]
        assert map_status("s", pipelines) == TaskStatus.NOT_STARTED

    def test_unknown_stage_uses_id_heuristics(self, pipelines):
        assert map_status("closed_won", pipelines) == TaskStatus.COMPLETED
        assert map_status("under_review", pipelines) == TaskStatus.READY_FOR_REVIEW
        assert map_status("custom", pipelines) == TaskStatus.AGENT_WORKING
        assert map_status(None, pipelines) == TaskStatus.NOT_STARTED

    def test_priority_defaults_to_medium(self):
        assert map_priority("HIGH") == TaskPriority.HIGH
        assert map_priority("low") == TaskPriority.LOW
        assert map_priority(None) == TaskPriority.MEDIUM
        assert map_priority("URGENT") == TaskPriority.MEDIUM

    def test_first_closed_stage_by_display_order(self, pipelines):
        assert pipelines[0].first_closed_stage().id == "4"


class TestConfig:
    """Tests for configuration validation."""

    def test_private_app(self):
        plugin = HubSpotPlugin()
        assert plugin.validate_config(CONFIG) is None
        assert plugin.validate_config({"auth_type": "private_app"}) == "Private App token is required"

    def test_oauth(self):
        plugin = HubSpotPlugin()
        assert plugin.validate_config({"auth_type": "oauth", "client_id": "id", "client_secret": "s"}) is None
        assert (
            plugin.validate_config({"auth_type": "oauth", "client_id": "id"})
            == "Client ID and Client Secret are required for OAuth"
        )

    def test_invalid_auth_type(self):
        assert HubSpotPlugin().validate_config({"auth_type": "basic"}).startswith("Invalid auth type")


class TestImport:
    """Tests for importing tickets."""

    @pytest.mark.asyncio
    async def test_full_import_searches_open_stages(self, store, make_context, create_source):
        source = await create_source("hubspot", CONFIG)
        api = FakeHubSpot(
            [
                _ticket("900", "Refund request", stage="2", hubspot_owner_id="77", hs_ticket_priority="HIGH"),
                _ticket("901", "Old issue", stage="4"),
            ]
        )
        ctx = make_context(source.id, http_client=mock_http(api))

        result = await HubSpotPlugin().import_tasks(source.id, source.config, ctx)

        # The closed ticket is filtered client-side by stage metadata
        assert result.imported == 1
        assert result.errors == []
        task = await store.get_task_by_external_id(source.id, "900")
        assert task.source == "HubSpot"
        assert task.priority == TaskPriority.HIGH
        assert task.status == TaskStatus.NOT_STARTED
        assert task.assignee == "Ada Lovelace"
        assert "**Status:** Support → Waiting on contact" in task.description
        assert "https://app-eu1.hubspot.com/contacts/123/record/0-5/900" in task.description

        search = [r for r in api.requests if r.url.path == "/crm/v3/objects/tickets/search"]
        assert "filterGroups" not in json.loads(search[0].content)
        assert search[0].headers["Authorization"] == "Bearer pat-test"

    @pytest.mark.asyncio
    async def test_pipelines_cached_between_runs(self, make_context, create_source):
        source = await create_source("hubspot", CONFIG)
        api = FakeHubSpot([_ticket("900", "A")])
        ctx = make_context(source.id, http_client=mock_http(api))
        plugin = HubSpotPlugin()

        await plugin.import_tasks(source.id, source.config, ctx)
        await plugin.import_tasks(source.id, source.config, ctx)
        assert sum(r.url.path == "/crm/v3/pipelines/tickets" for r in api.requests) == 1

        ctx.metadata_cache.invalidate(source.id)
        await plugin.import_tasks(source.id, source.config, ctx)
        assert sum(r.url.path == "/crm/v3/pipelines/tickets" for r in api.requests) == 2

    @pytest.mark.asyncio
    async def test_incremental_import_filters_on_modified_date(self, store, make_context, create_source):
        source = await create_source("hubspot", {**CONFIG, "pipeline_id": "0"})
        await store.update_task_source_last_synced(source.id)
        source = await store.get_task_source(source.id)
        api = FakeHubSpot([_ticket("900", "A", stage="4")])
        ctx = make_context(source.id, http_client=mock_http(api))

        result = await HubSpotPlugin().import_tasks(source.id, source.config, ctx)

        body = json.loads(next(r for r in api.requests if r.url.path.endswith("/search")).content)
        filters = body["filterGroups"][0]["filters"]
        assert filters[0]["propertyName"] == "hs_lastmodifieddate"
        assert filters[0]["operator"] == "GTE"
        assert {"propertyName": "hs_pipeline", "operator": "EQ", "value": "0"} in filters
        # Closed tickets with no local task are still skipped
        assert result.imported == 0

    @pytest.mark.asyncio
    async def test_null_subject_gets_placeholder_title(self, store, make_context, create_source):
        source = await create_source("hubspot", CONFIG)
        ticket = {"id": "950", "properties": {"subject": None, "hs_pipeline": "0", "hs_pipeline_stage": "1"}}
        ctx = make_context(source.id, http_client=mock_http(FakeHubSpot([ticket])))

        result = await HubSpotPlugin().import_tasks(source.id, source.config, ctx)

        assert result.imported == 1
        assert result.errors == []
        assert (await store.get_task_by_external_id(source.id, "950")).title == "Untitled Ticket"

    @pytest.mark.asyncio
    async def test_oauth_without_token(self, make_context, create_source):
        source = await create_source("hubspot", {"auth_type": "oauth", "client_id": "id", "client_secret": "s"})
        result = await HubSpotPlugin().import_tasks(source.id, source.config, make_context(source.id))
        assert result.errors == ["Import failed: HubSpot is not connected. Please authenticate."]

    @pytest.mark.asyncio
    async def test_oauth_uses_delegated_token(self, make_context, create_source):
        source = await create_source("hubspot", {"auth_type": "oauth", "client_id": "id", "client_secret": "s"})

        class Tokens:
            async def get_valid_token(self, source_id):
                return "oauth-token" if source_id == source.id else None

        api = FakeHubSpot([])
        ctx = make_context(source.id, http_client=mock_http(api), token_provider=Tokens())
        result = await HubSpotPlugin().import_tasks(source.id, source.config, ctx)

        assert result.errors == []
        assert api.requests[0].headers["Authorization"] == "Bearer oauth-token"

    @pytest.mark.asyncio
    async def test_attachments_downloaded_once(self, store, make_context, create_source):
        source = await create_source("hubspot", {**CONFIG, "sync_attachments": True})
        api = FakeHubSpot([_ticket("900", "With files")])
        api.notes["900"] = ["n1"]
        api.files["file-n1"] = b"%PDF-1.7"
        ctx = make_context(source.id, http_client=mock_http(api))
        plugin = HubSpotPlugin()

        await plugin.import_tasks(source.id, source.config, ctx)
        task = await store.get_task_by_external_id(source.id, "900")

        assert len(task.attachments) == 1
        attachment = task.attachments[0]
        assert attachment.filename == "invoice.pdf"
        assert attachment.external_file_id == "file-n1"
        assert attachment.size == len(b"%PDF-1.7")
        directory = await store.get_attachments_dir(task.id)
        assert (directory / "invoice.pdf").read_bytes() == b"%PDF-1.7"

        await plugin.import_tasks(source.id, source.config, ctx)
        downloads = [r for r in api.requests if r.url.host == "cdn.hubspot.test"]
        assert len(downloads) == 1
        assert "Authorization" not in downloads[0].headers
        assert len((await store.get_task(task.id)).attachments) == 1


class TestExportAndActions:
    """Tests for pushing changes and running actions."""

    @pytest.mark.asyncio
    async def test_completion_moves_ticket_to_closed_stage(self, make_context):
        api = FakeHubSpot([_ticket("900", "A", stage="2")])
        ctx = make_context("src", http_client=mock_http(api))

        await HubSpotPlugin().export_update(
            _task(resolution="Refunded"), {"status": "completed"}, CONFIG, ctx
        )

        assert api.bodies("PATCH") == [
            ("/crm/v3/objects/tickets/900", {"properties": {"hs_pipeline_stage": "4", "hs_resolution": "Refunded"}})
        ]

    @pytest.mark.asyncio
    async def test_clearing_assignee_unassigns(self, make_context):
        api = FakeHubSpot([_ticket("900", "A")])
        ctx = make_context("src", http_client=mock_http(api))

        await HubSpotPlugin().export_update(_task(), {"assignee": None}, CONFIG, ctx)

        assert api.bodies("PATCH") == [("/crm/v3/objects/tickets/900", {"properties": {"hubspot_owner_id": ""}})]

    @pytest.mark.asyncio
    async def test_update_priority_action(self, make_context):
        api = FakeHubSpot([_ticket("900", "A")])
        ctx = make_context("src", http_client=mock_http(api))

        result = await HubSpotPlugin().execute_action("update_priority", _task(), "high", CONFIG, ctx)

        assert result.success
        assert result.task_update.priority == TaskPriority.HIGH
        assert api.bodies("PATCH") == [
            ("/crm/v3/objects/tickets/900", {"properties": {"hs_ticket_priority": "HIGH"}})
        ]

    @pytest.mark.asyncio
    async def test_invalid_priority_makes_no_request(self, make_context):
        api = FakeHubSpot()
        ctx = make_context("src", http_client=mock_http(api))

        result = await HubSpotPlugin().execute_action("update_priority", _task(), "urgent", CONFIG, ctx)

        assert result.error == "Invalid priority. Use: HIGH, MEDIUM, or LOW"
        assert api.requests == []


class TestCapabilities:
    """Tests for owners and reassignment."""

    @pytest.mark.asyncio
    async def test_get_users(self, make_context):
        ctx = make_context("src", http_client=mock_http(FakeHubSpot()))
        users = await HubSpotPlugin().get_users(CONFIG, ctx)
        assert [(u.id, u.name, u.email) for u in users] == [("77", "Ada", "ada@example.com")]

    @pytest.mark.asyncio
    async def test_reassign_uses_first_user(self, make_context):
        api = FakeHubSpot()
        ctx = make_context("src", http_client=mock_http(api))

        result = await HubSpotPlugin().reassign_task(_task(), ["77", "78"], CONFIG, ctx)

        assert result.success
        assert api.bodies("PATCH") == [("/crm/v3/objects/tickets/900", {"properties": {"hubspot_owner_id": "77"}})]

    @pytest.mark.asyncio
    async def test_reassign_requires_user(self, make_context):
        result = await HubSpotPlugin().reassign_task(_task(), [], CONFIG, make_context("src"))
        assert result.error == "No user IDs provided"

    @pytest.mark.asyncio
    async def test_pipeline_options(self, make_context):
        ctx = make_context(http_client=mock_http(FakeHubSpot()))
        options = await HubSpotPlugin().resolve_options("pipelines", CONFIG, ctx)
        assert [(o.value, o.label) for o in options] == [("0", "Support")]
