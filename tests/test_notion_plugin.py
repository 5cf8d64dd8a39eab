"""Tests for the Notion client and database plugin."""

import json
from datetime import datetime, timezone

import httpx
import pytest
from conftest import mock_http

from tasksync.clients.notion import NotionClient, blocks_to_markdown
from tasksync.errors import AuthenticationError, RateLimitError
from tasksync.models import TaskPriority, TaskRecord, TaskStatus
from tasksync.plugins.notion import (
    NotionPlugin,
    PropertyMap,
    build_filter,
    build_property_map,
    format_properties,
    local_status_to_notion,
    map_page,
    parse_filters,
)

CONFIG = {"api_token": "ntn_test", "database_id": "db1"}

DATABASE = {
    "id": "db1",
    "title": [{"plain_text": "Roadmap"}],
    "properties": {
        "Name": {"type": "title"},
        "Status": {
            "type": "status",
            "status": {"options": [{"name": "Not started"}, {"name": "In progress"}, {"name": "Done"}]},
        },
        "Priority": {"type": "select", "select": {"options": [{"name": "High"}, {"name": "Low"}]}},
        "Reviewer": {"type": "people"},
        "Assignee": {"type": "people"},
        "Created": {"type": "date"},
        "Due": {"type": "date"},
        "Tags": {"type": "multi_select", "multi_select": {"options": [{"name": "bug"}]}},
        "Points": {"type": "number"},
    },
}


def _page(page_id: str, title: str, status: str | None = "Not started", **extra) -> dict:
    properties = {
        "Name": {"type": "title", "title": [{"plain_text": title}] if title else []},
        "Status": {"type": "status", "status": {"name": status} if status else None},
        "Priority": {"type": "select", "select": {"name": "High"}},
        "Assignee": {"type": "people", "people": [{"id": "u1", "name": "Grace"}]},
        "Due": {"type": "date", "date": {"start": "2024-06-01T10:00:00.000Z"}},
        "Tags": {"type": "multi_select", "multi_select": [{"name": "bug"}, {"name": "ui"}]},
        "Points": {"type": "number", "number": 3},
    }
    return {"object": "page", "id": page_id, "url": f"https://notion.so/{page_id}", "properties": properties, **extra}


def _task(**kwargs) -> TaskRecord:
    now = datetime.now(timezone.utc)
    data = {"id": "task-1", "external_id": "page-1", "source_id": "src", "title": "Page", "created_at": now, "updated_at": now}
    data.update(kwargs)
    return TaskRecord(**data)


class FakeNotion:
    """Routes Notion API requests to canned responses and records them."""

    def __init__(self, pages: list[dict] | None = None, page_size: int = 100) -> None:
        self.pages = pages or []
        self.page_size = page_size
        self.requests: list[httpx.Request] = []
        self.blocks: dict[str, list[dict]] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v1/databases/db1" and request.method == "GET":
            return httpx.Response(200, json=DATABASE)
        if path == "/v1/databases/db1/query":
            body = json.loads(request.content or b"{}")
            start = int(body.get("start_cursor") or 0)
            end = start + self.page_size
            has_more = end < len(self.pages)
            return httpx.Response(
                200,
                json={
                    "object": "list",
                    "results": self.pages[start:end],
                    "has_more": has_more,
                    "next_cursor": str(end) if has_more else None,
                },
            )
        if path.startswith("/v1/blocks/"):
            block_id = path.split("/")[3]
            return httpx.Response(200, json={"results": self.blocks.get(block_id, []), "has_more": False})
        if path.startswith("/v1/pages/"):
            return httpx.Response(200, json={"object": "page", "id": path.rsplit("/", 1)[-1]})
        if path == "/v1/users":
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"id": "u1", "type": "person", "name": "Grace", "person": {"email": "grace@example.com"}},
                        {"id": "b1", "type": "bot", "name": "Integration"},
                    ],
                    "has_more": False,
                },
            )
        if path == "/v1/search":
            return httpx.Response(200, json={"results": [DATABASE], "has_more": False})
        return httpx.Response(404, json={"object": "error", "status": 404, "code": "object_not_found", "message": "nope"})

    def bodies(self, method: str, prefix: str) -> list[dict]:
        return [
            json.loads(r.content)
            for r in self.requests
            if r.method == method and r.url.path.startswith(prefix)
        ]


class TestPropertyMap:
    """Tests for detecting task properties from the database schema."""

    def test_named_properties_win(self):
        props = build_property_map(DATABASE)

        assert props.title == "Name"
        assert props.status == "Status"
        assert props.status_type == "status"
        assert props.priority == "Priority"
        assert props.assignee == "Assignee"
        assert props.due_date == "Due"
        assert props.labels == "Tags"

    def test_first_of_type_when_unnamed(self):
        props = build_property_map(
            {"properties": {"Task": {"type": "title"}, "Owner(s)": {"type": "people"}, "When": {"type": "date"}}}
        )
        assert props.assignee == "Owner(s)"
        assert props.due_date == "When"
        assert props.status is None

    def test_select_named_status(self):
        props = build_property_map({"properties": {"Status": {"type": "select"}}})
        assert (props.status, props.status_type) == ("Status", "select")


class TestMapPage:
    """Tests for translating pages into tasks."""

    def test_full_page(self):
        mapped = map_page(_page("p1", "Write docs", "In progress"), build_property_map(DATABASE))

        assert mapped.external_id == "p1"
        assert mapped.title == "Write docs"
        assert mapped.type == "general"
        assert mapped.status == TaskStatus.AGENT_WORKING
        assert mapped.priority == TaskPriority.HIGH
        assert mapped.assignee == "Grace"
        assert mapped.due_date == "2024-06-01"
        assert mapped.labels == ["bug", "ui"]

    def test_unknown_status_is_not_started(self):
        mapped = map_page(_page("p1", "x", "Blocked"), build_property_map(DATABASE))
        assert mapped.status == TaskStatus.NOT_STARTED

    def test_archived_and_untitled_pages_skipped(self):
        props = build_property_map(DATABASE)
        assert map_page(_page("p1", "x", archived=True), props) is None
        assert map_page(_page("p1", "x", in_trash=True), props) is None
        assert map_page(_page("p1", ""), props) is None

    def test_only_detected_fields_are_set(self):
        mapped = map_page(_page("p1", "x"), PropertyMap(title="Name"))
        assert mapped.model_fields_set == {"external_id", "title", "type"}

    def test_properties_table(self):
        table = format_properties(_page("p1", "x", "Done"), "Name")
        assert "**Properties**" in table
        assert "| Status | Done |" in table
        assert "| Due | 2024-06-01 |" in table
        assert "| Points | 3 |" in table
        assert "| Name |" not in table


class TestFilters:
    """Tests for user-configured filter rules."""

    def test_same_property_ored_different_properties_anded(self):
        rules = [
            {"property": "Status", "type": "status", "values": ["Not started", "In progress"]},
            {"property": "Tags", "type": "multi_select", "values": ["bug"]},
        ]
        assert build_filter(rules) == {
            "and": [
                {
                    "or": [
                        {"property": "Status", "status": {"equals": "Not started"}},
                        {"property": "Status", "status": {"equals": "In progress"}},
                    ]
                },
                {"property": "Tags", "multi_select": {"contains": "bug"}},
            ]
        }

    def test_single_clause_unwrapped(self):
        rules = [{"property": "Assignee", "type": "people", "values": ["u1"]}]
        assert build_filter(rules) == {"property": "Assignee", "people": {"contains": "u1"}}
        assert build_filter([]) is None

    def test_parse_json_text(self):
        raw = json.dumps([{"property": "Status", "values": ["Done"]}, {"property": "", "values": ["x"]}])
        assert parse_filters(raw) == [{"property": "Status", "values": ["Done"]}]

    def test_invalid_filters_fail_validation(self):
        assert NotionPlugin().validate_config({**CONFIG, "filters": "{not json"}).startswith("Filters are not valid JSON")
        assert NotionPlugin().validate_config({**CONFIG, "filters": '{"a": 1}'}) == "Filters must be a list of rules"


class TestConfig:
    """Tests for configuration validation."""

    def test_validate(self):
        plugin = NotionPlugin()
        assert plugin.validate_config(CONFIG) is None
        assert plugin.validate_config({"database_id": "db1"}) == "Integration token is required"
        assert plugin.validate_config({"api_token": "x"}) == "Database is required"


class TestNotionClient:
    """Tests for the SDK-backed client's retry and pagination rules."""

    @pytest.mark.asyncio
    async def test_rate_limit_retried_with_hint(self, settings, sleep):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) <= 2:
                return httpx.Response(
                    429,
                    headers={"Retry-After": "1"},
                    json={"object": "error", "status": 429, "code": "rate_limited", "message": "slow down"},
                )
            return httpx.Response(200, json=DATABASE)

        client = NotionClient("ntn_test", http_client=mock_http(handler), settings=settings, sleep=sleep)
        database = await client.get_database("db1")

        assert database["id"] == "db1"
        assert len(calls) == 3
        assert sleep.delays == [1.0, 1.0]
        assert calls[0].headers["Authorization"] == "Bearer ntn_test"
        assert calls[0].headers["Notion-Version"] == "2022-06-28"

    @pytest.mark.asyncio
    async def test_rate_limit_budget_exhausted(self, settings, sleep):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                429, json={"object": "error", "status": 429, "code": "rate_limited", "message": "slow down"}
            )

        client = NotionClient("ntn_test", http_client=mock_http(handler), settings=settings, sleep=sleep)
        with pytest.raises(RateLimitError):
            await client.get_database("db1")
        assert len(sleep.delays) == settings.max_retries

    @pytest.mark.asyncio
    async def test_unauthorized(self, settings, sleep):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                401, json={"object": "error", "status": 401, "code": "unauthorized", "message": "bad token"}
            )

        client = NotionClient("bad", http_client=mock_http(handler), settings=settings, sleep=sleep)
        with pytest.raises(AuthenticationError, match="integration token"):
            await client.get_database("db1")
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_query_follows_cursor(self, settings, sleep):
        api = FakeNotion([_page(f"p{i}", f"Page {i}") for i in range(250)])
        client = NotionClient("ntn_test", http_client=mock_http(api), settings=settings, sleep=sleep)

        pages = await client.query_all_pages("db1")

        assert len(pages) == 250
        bodies = api.bodies("POST", "/v1/databases/db1/query")
        assert [b.get("start_cursor") for b in bodies] == [None, "100", "200"]
        assert all(b["page_size"] == 100 for b in bodies)

    @pytest.mark.asyncio
    async def test_query_combines_filter_and_window(self, settings, sleep):
        api = FakeNotion()
        client = NotionClient("ntn_test", http_client=mock_http(api), settings=settings, sleep=sleep)
        user_filter = {"and": [{"property": "A", "select": {"equals": "x"}}, {"property": "B", "select": {"equals": "y"}}]}

        await client.query_all_pages("db1", user_filter, edited_after=datetime(2024, 5, 1, tzinfo=timezone.utc))

        body = api.bodies("POST", "/v1/databases/db1/query")[0]
        assert body["filter"]["and"][:2] == user_filter["and"]
        assert body["filter"]["and"][2] == {
            "timestamp": "last_edited_time",
            "last_edited_time": {"on_or_after": "2024-05-01T00:00:00+00:00"},
        }

    def test_blocks_to_markdown(self):
        blocks = [
            {"type": "heading_2", "heading_2": {"rich_text": [{"plain_text": "Plan"}]}},
            {
                "type": "to_do",
                "to_do": {"rich_text": [{"plain_text": "Ship"}], "checked": True},
                "_children": [{"type": "paragraph", "paragraph": {"rich_text": [{"plain_text": "details"}]}}],
            },
            {"type": "divider", "divider": {}},
        ]
        assert blocks_to_markdown(blocks) == "## Plan\n\n- [x] Ship\n\ndetails\n\n---"


class TestImport:
    """Tests for importing database pages."""

    @pytest.mark.asyncio
    async def test_full_import(self, store, make_context, create_source):
        source = await create_source("notion", CONFIG)
        api = FakeNotion(
            [
                _page("page-1", "Write docs", "In progress"),
                _page("page-2", "Already done", "Done"),
                _page("page-3", "Gone", archived=True),
            ]
        )
        api.blocks["page-1"] = [{"type": "paragraph", "paragraph": {"rich_text": [{"plain_text": "Draft the guide"}]}}]
        ctx = make_context(source.id, http_client=mock_http(api))

        result = await NotionPlugin().import_tasks(source.id, source.config, ctx)

        assert result.imported == 1
        assert result.errors == []
        task = await store.get_task_by_external_id(source.id, "page-1")
        assert task.source == "Notion"
        assert task.status == TaskStatus.AGENT_WORKING
        assert task.description.startswith("Draft the guide")
        assert "| Priority | High |" in task.description
        assert task.description.endswith("🔗 [View in Notion](https://notion.so/page-1)")
        assert "filter" not in api.bodies("POST", "/v1/databases/db1/query")[0]

    @pytest.mark.asyncio
    async def test_import_sends_user_filter(self, make_context, create_source):
        filters = [{"property": "Tags", "type": "multi_select", "values": ["bug"]}]
        source = await create_source("notion", {**CONFIG, "filters": filters})
        api = FakeNotion()
        ctx = make_context(source.id, http_client=mock_http(api))

        await NotionPlugin().import_tasks(source.id, source.config, ctx)

        body = api.bodies("POST", "/v1/databases/db1/query")[0]
        assert body["filter"] == {"property": "Tags", "multi_select": {"contains": "bug"}}


class TestExportAndActions:
    """Tests for pushing changes and running actions."""

    @pytest.mark.asyncio
    async def test_export_maps_to_database_options(self, make_context):
        api = FakeNotion()
        ctx = make_context("src", http_client=mock_http(api))

        await NotionPlugin().export_update(
            _task(), {"status": "completed", "priority": "low", "due_date": None, "labels": ["x"]}, CONFIG, ctx
        )

        assert api.bodies("PATCH", "/v1/pages/page-1") == [
            {
                "properties": {
                    "Status": {"status": {"name": "Done"}},
                    "Priority": {"select": {"name": "Low"}},
                    "Due": {"date": None},
                }
            }
        ]

    def test_status_without_matching_option(self):
        schema = {"type": "status", "status": {"options": [{"name": "Open"}, {"name": "Shipped"}]}}
        assert local_status_to_notion("completed", schema, "status") is None

    @pytest.mark.asyncio
    async def test_change_status_action(self, make_context):
        api = FakeNotion()
        ctx = make_context("src", http_client=mock_http(api))

        result = await NotionPlugin().execute_action("change_status", _task(), "done", CONFIG, ctx)

        assert result.success
        assert result.task_update.status == TaskStatus.COMPLETED
        assert api.bodies("PATCH", "/v1/pages/page-1") == [{"properties": {"Status": {"status": {"name": "Done"}}}}]

    @pytest.mark.asyncio
    async def test_custom_status_passes_through(self, make_context):
        api = FakeNotion()
        ctx = make_context("src", http_client=mock_http(api))

        result = await NotionPlugin().execute_action("change_status", _task(), "Blocked", CONFIG, ctx)

        assert result.success
        assert result.task_update is None
        assert api.bodies("PATCH", "/v1/pages/page-1") == [{"properties": {"Status": {"status": {"name": "Blocked"}}}}]


class TestCapabilities:
    """Tests for users, reassignment and dropdown options."""

    @pytest.mark.asyncio
    async def test_users_are_people_only(self, make_context):
        ctx = make_context("src", http_client=mock_http(FakeNotion()))
        users = await NotionPlugin().get_users(CONFIG, ctx)
        assert [(u.id, u.name, u.email) for u in users] == [("u1", "Grace", "grace@example.com")]

    @pytest.mark.asyncio
    async def test_reassign_sets_people_property(self, make_context):
        api = FakeNotion()
        ctx = make_context("src", http_client=mock_http(api))

        result = await NotionPlugin().reassign_task(_task(), ["u1", "u2"], CONFIG, ctx)

        assert result.success
        assert api.bodies("PATCH", "/v1/pages/page-1") == [
            {"properties": {"Assignee": {"people": [{"id": "u1"}, {"id": "u2"}]}}}
        ]

    @pytest.mark.asyncio
    async def test_database_options(self, make_context):
        ctx = make_context(http_client=mock_http(FakeNotion()))
        options = await NotionPlugin().resolve_options("databases", CONFIG, ctx)
        assert [(o.value, o.label) for o in options] == [("db1", "Roadmap")]

    @pytest.mark.asyncio
    async def test_property_options_include_choices(self, make_context):
        ctx = make_context(http_client=mock_http(FakeNotion()))
        options = await NotionPlugin().resolve_options("database_properties", CONFIG, ctx)

        by_name = {o.label: json.loads(o.value) for o in options}
        assert by_name["Status"]["options"][0] == {"value": "Not started", "label": "Not started"}
        assert by_name["Assignee"]["options"] == [{"value": "u1", "label": "Grace"}]
        assert by_name["Points"] == {"name": "Points", "type": "number"}
