"""Notion database task source.

Any Notion database can act as a task list. The database schema is
inspected on every run to decide which properties feed the task's title,
status, priority, assignee, due date and labels.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, ClassVar

from tasksync.clients.notion import NotionClient
from tasksync.errors import ConfigValidationError
from tasksync.models.plugin import (
    ActionResult,
    ConfigFieldOption,
    ConfigFieldSchema,
    ConfigFieldType,
    FieldDependency,
    FieldMapping,
    MappedTask,
    PluginAction,
    PluginSyncResult,
    ReassignResult,
    SourceKind,
    SourceUser,
)
from tasksync.models.task import TaskPriority, TaskRecord, TaskStatus, TaskUpdate
from tasksync.plugins.base import (
    PluginRegistry,
    ReassignCapability,
    TaskSourcePlugin,
    UserDirectoryCapability,
)
from tasksync.sync.context import PluginContext
from tasksync.sync.orchestrator import SyncOrchestrator, SyncWindow

logger = logging.getLogger(__name__)

# ==================== Lookup tables ====================

STATUS_TO_LOCAL: dict[str, TaskStatus] = {
    "not started": TaskStatus.NOT_STARTED,
    "todo": TaskStatus.NOT_STARTED,
    "to do": TaskStatus.NOT_STARTED,
    "backlog": TaskStatus.NOT_STARTED,
    "in progress": TaskStatus.AGENT_WORKING,
    "doing": TaskStatus.AGENT_WORKING,
    "in review": TaskStatus.READY_FOR_REVIEW,
    "done": TaskStatus.COMPLETED,
    "complete": TaskStatus.COMPLETED,
    "completed": TaskStatus.COMPLETED,
}

LOCAL_TO_NOTION_STATUS: dict[TaskStatus, list[str]] = {
    TaskStatus.NOT_STARTED: ["Not started", "To Do", "Backlog"],
    TaskStatus.AGENT_WORKING: ["In progress", "Doing"],
    TaskStatus.READY_FOR_REVIEW: ["In review"],
    TaskStatus.COMPLETED: ["Done", "Complete", "Completed"],
}

PRIORITY_TO_LOCAL: dict[str, TaskPriority] = {
    "critical": TaskPriority.CRITICAL,
    "urgent": TaskPriority.CRITICAL,
    "p0": TaskPriority.CRITICAL,
    "high": TaskPriority.HIGH,
    "p1": TaskPriority.HIGH,
    "medium": TaskPriority.MEDIUM,
    "p2": TaskPriority.MEDIUM,
    "low": TaskPriority.LOW,
    "p3": TaskPriority.LOW,
}

LOCAL_TO_NOTION_PRIORITY: dict[TaskPriority, list[str]] = {
    TaskPriority.CRITICAL: ["Critical", "Urgent", "P0"],
    TaskPriority.HIGH: ["High", "P1"],
    TaskPriority.MEDIUM: ["Medium", "P2"],
    TaskPriority.LOW: ["Low", "P3"],
}

ASSIGNEE_NAMES = {"assignee", "owner", "assigned to"}
DUE_DATE_NAMES = {"due", "deadline", "due date"}
LABEL_NAMES = {"tags", "labels", "category"}


# ==================== Property map ====================


@dataclass
class PropertyMap:
    """Names of the database properties that feed each task field."""

    title: str = ""
    status: str | None = None
    status_type: str = "status"
    priority: str | None = None
    assignee: str | None = None
    due_date: str | None = None
    labels: str | None = None


def build_property_map(database: dict[str, Any]) -> PropertyMap:
    """Detect task-field properties by type, preferring conventional names."""
    props = PropertyMap()
    assignee_named = due_named = labels_named = False

    for name, schema in (database.get("properties") or {}).items():
        lower = name.lower()
        prop_type = schema.get("type")

        if prop_type == "title":
            props.title = name
        elif prop_type == "status" and props.status is None:
            props.status, props.status_type = name, "status"
        elif prop_type == "select" and lower == "status" and props.status is None:
            props.status, props.status_type = name, "select"
        elif prop_type == "select" and lower == "priority" and props.priority is None:
            props.priority = name
        elif prop_type == "people" and not assignee_named:
            assignee_named = lower in ASSIGNEE_NAMES
            if props.assignee is None or assignee_named:
                props.assignee = name
        elif prop_type == "date" and not due_named:
            due_named = lower in DUE_DATE_NAMES
            if props.due_date is None or due_named:
                props.due_date = name
        elif prop_type == "multi_select" and not labels_named:
            labels_named = lower in LABEL_NAMES
            if props.labels is None or labels_named:
                props.labels = name
    return props


def _plain_text(items: list[dict[str, Any]] | None) -> str:
    return "".join(t.get("plain_text", "") for t in items or [])


def _person_name(person: dict[str, Any]) -> str:
    return person.get("name") or (person.get("person") or {}).get("email") or person.get("id", "")


def _choose_option(
    candidates: list[str], schema: dict[str, Any] | None, prop_type: str
) -> str | None:
    """First candidate that is a configured option of the property (case-insensitive)."""
    if not candidates:
        return None
    options = ((schema or {}).get(prop_type) or {}).get("options") or []
    by_lower = {o["name"].lower(): o["name"] for o in options if o.get("name")}
    if not by_lower:
        return candidates[0]
    for candidate in candidates:
        if candidate.lower() in by_lower:
            return by_lower[candidate.lower()]
    return None


def local_status_to_notion(status: str, schema: dict[str, Any] | None, prop_type: str) -> str | None:
    try:
        candidates = LOCAL_TO_NOTION_STATUS[TaskStatus(status)]
    except ValueError:
        local = STATUS_TO_LOCAL.get(status.lower())
        candidates = [status] + (LOCAL_TO_NOTION_STATUS[local] if local else [])
    return _choose_option(candidates, schema, prop_type)


def local_priority_to_notion(priority: str, schema: dict[str, Any] | None) -> str | None:
    local = PRIORITY_TO_LOCAL.get(priority.lower())
    candidates = [priority] + (LOCAL_TO_NOTION_PRIORITY[local] if local else [])
    return _choose_option(candidates, schema, "select")


# ==================== Filters ====================


def parse_filters(raw: Any) -> list[dict[str, Any]]:
    """Filter rules from config; accepts the stored list or its JSON text."""
    if not raw:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigValidationError(f"Filters are not valid JSON: {e}", system="notion")
    if not isinstance(raw, list):
        raise ConfigValidationError("Filters must be a list of rules", system="notion")
    return [rule for rule in raw if isinstance(rule, dict) and rule.get("property") and rule.get("values")]


def property_filter(prop_type: str, prop: str, value: str) -> dict[str, Any]:
    if prop_type == "status":
        return {"property": prop, "status": {"equals": value}}
    if prop_type == "select":
        return {"property": prop, "select": {"equals": value}}
    if prop_type == "multi_select":
        return {"property": prop, "multi_select": {"contains": value}}
    if prop_type == "people":
        return {"property": prop, "people": {"contains": value}}
    if prop_type == "title":
        return {"property": prop, "title": {"contains": value}}
    if prop_type == "number":
        return {"property": prop, "number": {"equals": float(value)}}
    if prop_type == "checkbox":
        return {"property": prop, "checkbox": {"equals": str(value).lower() == "true"}}
    if prop_type == "date":
        return {"property": prop, "date": {"on_or_after": value}}
    return {"property": prop, "rich_text": {"contains": value}}


def build_filter(rules: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Values of one property are ORed; different properties are ANDed."""
    groups: list[dict[str, Any]] = []
    for rule in rules:
        values = rule["values"] if isinstance(rule["values"], list) else [rule["values"]]
        clauses = [property_filter(rule.get("type", "rich_text"), rule["property"], str(v)) for v in values]
        groups.append(clauses[0] if len(clauses) == 1 else {"or": clauses})
    if not groups:
        return None
    return groups[0] if len(groups) == 1 else {"and": groups}


# ==================== Page rendering ====================


def format_property_value(prop: dict[str, Any]) -> str | None:
    prop_type = prop.get("type")
    if prop_type in ("title", "rich_text"):
        return _plain_text(prop.get(prop_type)) or None
    if prop_type in ("status", "select"):
        return (prop.get(prop_type) or {}).get("name") or None
    if prop_type == "multi_select":
        return ", ".join(o["name"] for o in prop.get("multi_select") or []) or None
    if prop_type == "people":
        return ", ".join(_person_name(p) for p in prop.get("people") or []) or None
    if prop_type == "date":
        date = prop.get("date") or {}
        if not date.get("start"):
            return None
        start = date["start"].split("T")[0]
        end = (date.get("end") or "").split("T")[0]
        return f"{start} → {end}" if end else start
    if prop_type == "number":
        return str(prop["number"]) if prop.get("number") is not None else None
    if prop_type == "checkbox":
        return "Yes" if prop.get("checkbox") else "No"
    if prop_type in ("url", "email", "phone_number"):
        return prop.get(prop_type) or None
    return None


def format_properties(page: dict[str, Any], title_property: str) -> str:
    rows = []
    for name, prop in (page.get("properties") or {}).items():
        if name == title_property:
            continue
        value = format_property_value(prop)
        if value:
            rows.append(f"| {name} | {value} |")
    if not rows:
        return ""
    return "---\n\n**Properties**\n\n| Property | Value |\n| --- | --- |\n" + "\n".join(rows)


def map_page(page: dict[str, Any], props: PropertyMap) -> MappedTask | None:
    """Translate a page; archived or untitled pages yield None."""
    if page.get("archived") or page.get("in_trash"):
        return None
    values = page.get("properties") or {}
    title = _plain_text((values.get(props.title) or {}).get("title"))
    if not title:
        return None

    fields: dict[str, Any] = {}
    if props.status:
        raw = ((values.get(props.status) or {}).get(props.status_type) or {}).get("name")
        if raw:
            fields["status"] = STATUS_TO_LOCAL.get(raw.lower(), TaskStatus.NOT_STARTED)
    if props.priority:
        raw = ((values.get(props.priority) or {}).get("select") or {}).get("name")
        if raw:
            fields["priority"] = PRIORITY_TO_LOCAL.get(raw.lower(), TaskPriority.MEDIUM)
    if props.assignee:
        people = (values.get(props.assignee) or {}).get("people") or []
        fields["assignee"] = _person_name(people[0]) if people else None
    if props.due_date:
        start = ((values.get(props.due_date) or {}).get("date") or {}).get("start")
        fields["due_date"] = start.split("T")[0] if start else None
    if props.labels:
        fields["labels"] = [o["name"] for o in (values.get(props.labels) or {}).get("multi_select") or []]

    return MappedTask(external_id=page["id"], title=title, type="general", **fields)


@PluginRegistry.register
class NotionPlugin(TaskSourcePlugin, UserDirectoryCapability, ReassignCapability):
    """Sync tasks with the pages of one Notion database."""

    kind: ClassVar[SourceKind] = SourceKind.NOTION
    display_name: ClassVar[str] = "Notion"
    description: ClassVar[str] = "Import tasks from a Notion database"
    icon: ClassVar[str] = "BookOpen"

    def get_config_schema(self) -> list[ConfigFieldSchema]:
        return [
            ConfigFieldSchema(
                key="api_token",
                label="Integration Token",
                type=ConfigFieldType.PASSWORD,
                required=True,
                placeholder="ntn_...",
                description="Internal Integration Token from notion.so/profile/integrations",
            ),
            ConfigFieldSchema(
                key="database_id",
                label="Database",
                type=ConfigFieldType.DYNAMIC_SELECT,
                options_resolver="databases",
                required=True,
                depends_on=FieldDependency(field="api_token"),
            ),
            ConfigFieldSchema(
                key="filters",
                label="Filters",
                type=ConfigFieldType.KEY_VALUE,
                options_resolver="database_properties",
                depends_on=FieldDependency(field="database_id"),
                description="Values of one property are ORed; different properties are ANDed",
            ),
        ]

    def validate_config(self, config: dict[str, Any]) -> str | None:
        if self._missing(config, "api_token"):
            return "Integration token is required"
        if self._missing(config, "database_id"):
            return "Database is required"
        try:
            parse_filters(config.get("filters"))
        except ConfigValidationError as e:
            return str(e)
        return None

    def get_field_mapping(self, config: dict[str, Any]) -> list[FieldMapping]:
        return [
            FieldMapping(local="external_id", remote="id"),
            FieldMapping(local="title", remote="title property"),
            FieldMapping(local="description", remote="page content + properties"),
            FieldMapping(local="status", remote="status property", transform="status table"),
            FieldMapping(local="priority", remote="Priority select", transform="priority table"),
            FieldMapping(local="assignee", remote="people property"),
            FieldMapping(local="due_date", remote="date property"),
            FieldMapping(local="labels", remote="multi_select property"),
        ]

    def get_actions(self, config: dict[str, Any]) -> list[PluginAction]:
        return [
            PluginAction(
                id="change_status",
                label="Change Status",
                icon="ArrowRightCircle",
                requires_input=True,
                input_label="New Status",
                input_placeholder="e.g. Done, In Progress",
            ),
            PluginAction(
                id="update_priority",
                label="Update Priority",
                icon="AlertTriangle",
                requires_input=True,
                input_label="New Priority",
                input_placeholder="e.g. High, Low",
            ),
        ]

    def _client(self, config: dict[str, Any], ctx: PluginContext) -> NotionClient:
        return NotionClient(config["api_token"], **ctx.client_options())

    async def _resolve_options(
        self, resolver_key: str, config: dict[str, Any], ctx: PluginContext
    ) -> list[ConfigFieldOption]:
        if not config.get("api_token"):
            return []
        async with self._client(config, ctx) as client:
            if resolver_key == "databases":
                databases = await client.search_databases()
                return [
                    ConfigFieldOption(value=db["id"], label=_plain_text(db.get("title")) or "Untitled")
                    for db in databases
                ]
            if resolver_key == "database_properties" and config.get("database_id"):
                database = await client.get_database(config["database_id"])
                return await self._property_options(client, database)
        return []

    async def _property_options(
        self, client: NotionClient, database: dict[str, Any]
    ) -> list[ConfigFieldOption]:
        """Filterable properties, each encoded as JSON with its choices."""
        properties = database.get("properties") or {}
        people: list[dict[str, str]] = []
        if any(p.get("type") == "people" for p in properties.values()):
            users = await client.get_users()
            people = [{"value": u["id"], "label": _person_name(u)} for u in users if u.get("type") == "person"]

        result = []
        for name, schema in properties.items():
            prop_type = schema.get("type")
            if prop_type not in ("status", "select", "multi_select", "people", "title", "rich_text", "number", "checkbox", "date"):
                continue
            info: dict[str, Any] = {"name": name, "type": prop_type}
            if prop_type in ("status", "select", "multi_select"):
                options = (schema.get(prop_type) or {}).get("options") or []
                info["options"] = [{"value": o["name"], "label": o["name"]} for o in options]
            elif prop_type == "people":
                info["options"] = people
            result.append(ConfigFieldOption(value=json.dumps(info), label=name))
        return result

    # ==================== Import ====================

    async def import_tasks(
        self, source_id: str, config: dict[str, Any], ctx: PluginContext
    ) -> PluginSyncResult:
        database_id = config["database_id"]
        try:
            user_filter = build_filter(parse_filters(config.get("filters")))
        except ConfigValidationError as e:
            return PluginSyncResult(errors=[f"Import failed: {e}"])

        async with self._client(config, ctx) as client:
            props = PropertyMap()

            async def fetch(window: SyncWindow) -> list[dict[str, Any]]:
                nonlocal props
                props = build_property_map(await client.get_database(database_id))
                # Notion has no generic "open" filter; completed pages of a
                # full sync are dropped by the orchestrator
                return await client.query_all_pages(
                    database_id, user_filter, edited_after=window.modified_after
                )

            async def map_record(page: dict[str, Any]) -> MappedTask | None:
                mapped = map_page(page, props)
                if mapped is None:
                    return None
                mapped.description = await self._describe_page(client, page, props)
                return mapped

            orchestrator = SyncOrchestrator(
                ctx,
                source_id,
                fetch=fetch,
                map_record=map_record,
                describe=lambda page: f"page {page.get('id')}",
                source_name="Notion",
            )
            return await orchestrator.run()

    async def _describe_page(
        self, client: NotionClient, page: dict[str, Any], props: PropertyMap
    ) -> str:
        parts = []
        try:
            content = await client.get_page_content(page["id"])
            if content:
                parts.append(content)
        except Exception as e:
            logger.debug(f"No content for Notion page {page['id']}: {e}")
        table = format_properties(page, props.title)
        if table:
            parts.append(table)
        if page.get("url"):
            parts.append(f"🔗 [View in Notion]({page['url']})")
        return "\n\n".join(parts)

    # ==================== Export & actions ====================

    async def _export_update(
        self,
        task: TaskRecord,
        changed_fields: dict[str, Any],
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> None:
        async with self._client(config, ctx) as client:
            database = await client.get_database(config["database_id"])
            schemas = database.get("properties") or {}
            props = build_property_map(database)
            updates: dict[str, Any] = {}

            if changed_fields.get("title") and props.title:
                updates[props.title] = {"title": [{"text": {"content": changed_fields["title"]}}]}
            if changed_fields.get("status") and props.status:
                name = local_status_to_notion(
                    str(changed_fields["status"]), schemas.get(props.status), props.status_type
                )
                if name:
                    updates[props.status] = {props.status_type: {"name": name}}
            if changed_fields.get("priority") and props.priority:
                name = local_priority_to_notion(str(changed_fields["priority"]), schemas.get(props.priority))
                if name:
                    updates[props.priority] = {"select": {"name": name}}
            if "due_date" in changed_fields and props.due_date:
                due = changed_fields["due_date"]
                updates[props.due_date] = {"date": {"start": due} if due else None}

            if not updates:
                return
            await client.update_page(task.external_id, updates)
        logger.info(f"Exported {sorted(updates)} to Notion page {task.external_id}")

    async def _execute_action(
        self,
        action: PluginAction,
        task: TaskRecord,
        input: str | None,
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> ActionResult:
        value = (input or "").strip()
        async with self._client(config, ctx) as client:
            database = await client.get_database(config["database_id"])
            schemas = database.get("properties") or {}
            props = build_property_map(database)

            if action.id == "change_status" and props.status:
                name = local_status_to_notion(value, schemas.get(props.status), props.status_type) or value
                await client.update_page(task.external_id, {props.status: {props.status_type: {"name": name}}})
                status = STATUS_TO_LOCAL.get(value.lower())
                return ActionResult(success=True, task_update=TaskUpdate(status=status) if status else None)

            if action.id == "update_priority" and props.priority:
                name = local_priority_to_notion(value, schemas.get(props.priority)) or value
                await client.update_page(task.external_id, {props.priority: {"select": {"name": name}}})
                priority = PRIORITY_TO_LOCAL.get(value.lower())
                return ActionResult(success=True, task_update=TaskUpdate(priority=priority) if priority else None)

        return ActionResult(success=False, error=f"Unknown action or missing property: {action.id}")

    # ==================== Capabilities ====================

    async def get_users(self, config: dict[str, Any], ctx: PluginContext) -> list[SourceUser]:
        async with self._client(config, ctx) as client:
            users = await client.get_users()
        return [
            SourceUser(id=u["id"], email=(u.get("person") or {}).get("email"), name=_person_name(u))
            for u in users
            if u.get("type") == "person"
        ]

    async def reassign_task(
        self,
        task: TaskRecord,
        user_ids: list[str],
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> ReassignResult:
        if not task.external_id:
            return ReassignResult(success=False, error="Task is not linked to a remote record")
        async with self._client(config, ctx) as client:
            props = build_property_map(await client.get_database(config["database_id"]))
            if not props.assignee:
                return ReassignResult(success=False, error="No assignee property found in database")
            await client.update_page(
                task.external_id, {props.assignee: {"people": [{"id": uid} for uid in user_ids]}}
            )
        return ReassignResult(success=True)
