"""Linear issues task source.

Issue status comes from the workflow state's type (triage, backlog,
unstarted, started, completed, canceled); the state name only refines it.
Workflow states are cached per source and team in the context's
MetadataCache.
"""

import logging
from typing import Any, ClassVar

from tasksync.clients.linear import LinearClient
from tasksync.errors import ConfigValidationError, SourceError
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

AUTH_TYPES = ("oauth", "api_key")

STATUS_FROM_STATE_TYPE: dict[str, TaskStatus] = {
    "triage": TaskStatus.NOT_STARTED,
    "backlog": TaskStatus.NOT_STARTED,
    "unstarted": TaskStatus.NOT_STARTED,
    "started": TaskStatus.AGENT_WORKING,
    "completed": TaskStatus.COMPLETED,
    "canceled": TaskStatus.COMPLETED,
}

# Linear: 0 = no priority, 1 = urgent, 2 = high, 3 = medium, 4 = low
PRIORITY_FROM_LINEAR: dict[int, TaskPriority] = {
    0: TaskPriority.LOW,
    1: TaskPriority.CRITICAL,
    2: TaskPriority.HIGH,
    3: TaskPriority.MEDIUM,
    4: TaskPriority.LOW,
}

PRIORITY_TO_LINEAR: dict[TaskPriority, int] = {
    TaskPriority.CRITICAL: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.MEDIUM: 3,
    TaskPriority.LOW: 4,
}

PRIORITY_INPUTS: dict[str, int] = {
    "urgent": 1,
    "critical": 1,
    "high": 2,
    "medium": 3,
    "med": 3,
    "low": 4,
    "none": 0,
    "no priority": 0,
}


def _status_from_name(name: str) -> TaskStatus:
    name = name.lower()
    if "backlog" in name or "todo" in name:
        return TaskStatus.NOT_STARTED
    if "progress" in name or "started" in name:
        return TaskStatus.AGENT_WORKING
    if "review" in name:
        return TaskStatus.READY_FOR_REVIEW
    if "done" in name or "complete" in name or "cancel" in name:
        return TaskStatus.COMPLETED
    return TaskStatus.NOT_STARTED


def map_status(state: dict[str, Any] | None) -> TaskStatus:
    """Map a workflow state to a local status.

    A started state whose name mentions review counts as ready for review.
    States without a known type fall back to matching the name.
    """
    state = state or {}
    name = state.get("name") or ""
    state_type = state.get("type")
    if state_type == "started" and "review" in name.lower():
        return TaskStatus.READY_FOR_REVIEW
    if state_type in STATUS_FROM_STATE_TYPE:
        return STATUS_FROM_STATE_TYPE[state_type]
    return _status_from_name(name)


def map_priority(value: Any) -> TaskPriority:
    try:
        return PRIORITY_FROM_LINEAR.get(int(value), TaskPriority.MEDIUM)
    except (TypeError, ValueError):
        return TaskPriority.MEDIUM


def parse_priority_input(value: str) -> int | None:
    """Linear priority from user input such as ``Urgent``, ``low`` or ``2``."""
    lowered = value.strip().lower()
    if lowered in PRIORITY_INPUTS:
        return PRIORITY_INPUTS[lowered]
    if lowered.isdigit() and 0 <= int(lowered) <= 4:
        return int(lowered)
    return None


def find_state_for_status(states: list[dict[str, Any]], status: TaskStatus) -> dict[str, Any] | None:
    """Pick the workflow state a local status should move an issue to.

    States are matched by type first, then by name.
    """

    def first(predicate) -> dict[str, Any] | None:
        return next((s for s in states if predicate(s)), None)

    def named(*words: str):
        return lambda s: any(w in (s.get("name") or "").lower() for w in words)

    if status == TaskStatus.COMPLETED:
        return first(lambda s: s.get("type") == "completed") or first(named("done", "complete"))
    if status == TaskStatus.READY_FOR_REVIEW:
        return first(named("review"))
    if status == TaskStatus.AGENT_WORKING:
        return first(
            lambda s: s.get("type") == "started" and "review" not in (s.get("name") or "").lower()
        ) or first(named("progress", "started"))
    if status == TaskStatus.NOT_STARTED:
        return first(lambda s: s.get("type") == "unstarted") or first(named("todo", "backlog"))
    return None


def build_description(issue: dict[str, Any]) -> str:
    parts = [issue.get("description") or ""]
    if issue.get("url"):
        parts.extend(["", "---", "", f"[View in Linear]({issue['url']})"])
    return "\n".join(parts).strip()


@PluginRegistry.register
class LinearPlugin(TaskSourcePlugin, UserDirectoryCapability, ReassignCapability):
    """Sync tasks with Linear issues."""

    kind: ClassVar[SourceKind] = SourceKind.LINEAR
    display_name: ClassVar[str] = "Linear"
    description: ClassVar[str] = "Import and manage issues from Linear"
    icon: ClassVar[str] = "Zap"

    def get_config_schema(self) -> list[ConfigFieldSchema]:
        return [
            ConfigFieldSchema(
                key="auth_type",
                label="Authentication",
                type=ConfigFieldType.SELECT,
                required=True,
                default="oauth",
                options=[
                    ConfigFieldOption(value="oauth", label="OAuth"),
                    ConfigFieldOption(value="api_key", label="Personal API Key"),
                ],
            ),
            ConfigFieldSchema(
                key="client_id",
                label="OAuth Client ID",
                type=ConfigFieldType.TEXT,
                required=True,
                depends_on=FieldDependency(field="auth_type", value="oauth"),
            ),
            ConfigFieldSchema(
                key="client_secret",
                label="OAuth Client Secret",
                type=ConfigFieldType.PASSWORD,
                required=True,
                depends_on=FieldDependency(field="auth_type", value="oauth"),
            ),
            ConfigFieldSchema(
                key="scope",
                label="Permissions",
                type=ConfigFieldType.SELECT,
                default="read,write",
                options=[
                    ConfigFieldOption(value="read", label="Read"),
                    ConfigFieldOption(value="read,write", label="Read + Write"),
                    ConfigFieldOption(value="read,write,issues:create,comments:create", label="All Permissions"),
                ],
                depends_on=FieldDependency(field="auth_type", value="oauth"),
            ),
            ConfigFieldSchema(
                key="api_key",
                label="API Key",
                type=ConfigFieldType.PASSWORD,
                required=True,
                placeholder="lin_api_...",
                depends_on=FieldDependency(field="auth_type", value="api_key"),
            ),
            ConfigFieldSchema(
                key="team_id",
                label="Team",
                type=ConfigFieldType.DYNAMIC_SELECT,
                options_resolver="teams",
                description="Only import issues from this team",
            ),
            ConfigFieldSchema(
                key="assignee_id",
                label="Assigned to",
                type=ConfigFieldType.DYNAMIC_SELECT,
                options_resolver="users",
                description="Only import issues assigned to this user",
            ),
        ]

    def validate_config(self, config: dict[str, Any]) -> str | None:
        auth_type = config.get("auth_type") or "oauth"
        if auth_type == "oauth":
            if self._missing(config, "client_id"):
                return "OAuth Client ID is required"
            if self._missing(config, "client_secret"):
                return "OAuth Client Secret is required"
            return None
        if auth_type == "api_key":
            if self._missing(config, "api_key"):
                return "API key is required"
            return None
        return f"Invalid auth type: {auth_type!r}. Use one of: {', '.join(AUTH_TYPES)}"

    def get_field_mapping(self, config: dict[str, Any]) -> list[FieldMapping]:
        return [
            FieldMapping(local="external_id", remote="id"),
            FieldMapping(local="title", remote="title"),
            FieldMapping(local="description", remote="description"),
            FieldMapping(local="status", remote="state.type", transform="workflow state type"),
            FieldMapping(local="priority", remote="priority", transform="1 urgent … 4 low"),
            FieldMapping(local="assignee", remote="assignee.displayName|assignee.name"),
            FieldMapping(local="due_date", remote="dueDate"),
            FieldMapping(local="labels", remote="labels.nodes.name"),
        ]

    def get_actions(self, config: dict[str, Any]) -> list[PluginAction]:
        return [
            PluginAction(
                id="change_status",
                label="Change Status",
                icon="ArrowRight",
                requires_input=True,
                input_label="New Status",
                input_placeholder="e.g. In Progress, Done",
            ),
            PluginAction(
                id="update_priority",
                label="Update Priority",
                icon="Flag",
                requires_input=True,
                input_label="Priority",
                input_placeholder="Urgent, High, Medium, Low or None",
            ),
            PluginAction(
                id="add_comment",
                label="Add Comment",
                icon="MessageSquare",
                requires_input=True,
                input_label="Comment",
                input_placeholder="Write a comment...",
            ),
        ]

    async def _client(
        self, source_id: str | None, config: dict[str, Any], ctx: PluginContext
    ) -> LinearClient:
        if config.get("auth_type") == "api_key":
            token = config.get("api_key")
            if not token:
                raise ConfigValidationError("Linear API key is not configured", system="linear")
            return LinearClient(token, api_key=True, **ctx.client_options())
        token = await self._delegated_token(ctx, source_id)
        return LinearClient(token, **ctx.client_options())

    async def _workflow_states(
        self, source_id: str | None, team_id: str, client: LinearClient, ctx: PluginContext
    ) -> list[dict[str, Any]]:
        if not source_id:
            return await client.list_workflow_states(team_id)
        return await ctx.metadata_cache.get_or_load(
            source_id, f"workflow_states:{team_id}", lambda: client.list_workflow_states(team_id)
        )

    async def _issue_states(
        self, task: TaskRecord, config: dict[str, Any], client: LinearClient, ctx: PluginContext
    ) -> list[dict[str, Any]]:
        """Workflow states of the team owning the task's issue."""
        issue = await client.get_issue(task.external_id)
        team_id = ((issue or {}).get("team") or {}).get("id") or config.get("team_id")
        if not team_id:
            return []
        return await self._workflow_states(task.source_id, team_id, client, ctx)

    async def _resolve_options(
        self, resolver_key: str, config: dict[str, Any], ctx: PluginContext
    ) -> list[ConfigFieldOption]:
        async with await self._client(ctx.source_id, config, ctx) as client:
            if resolver_key == "teams":
                teams = await client.list_teams()
                return [ConfigFieldOption(value=t["id"], label=f"{t['name']} ({t['key']})") for t in teams]
            if resolver_key == "users":
                users = await client.list_users()
                return [ConfigFieldOption(value=u["id"], label=_user_label(u)) for u in users]
        return []

    # ==================== Import ====================

    async def import_tasks(
        self, source_id: str, config: dict[str, Any], ctx: PluginContext
    ) -> PluginSyncResult:
        try:
            client = await self._client(source_id, config, ctx)
        except SourceError as e:
            return PluginSyncResult(errors=[f"Import failed: {e}"])

        async with client:

            async def fetch(window: SyncWindow) -> list[dict[str, Any]]:
                return await client.list_issues(
                    team_id=config.get("team_id") or None,
                    assignee_id=config.get("assignee_id") or None,
                    updated_after=window.modified_after,
                    open_only=window.open_only,
                )

            async def map_record(issue: dict[str, Any]) -> MappedTask:
                return self.map_issue(issue)

            orchestrator = SyncOrchestrator(
                ctx,
                source_id,
                fetch=fetch,
                map_record=map_record,
                describe=lambda issue: f'{issue.get("identifier") or issue.get("id")} "{issue.get("title", "")}"',
                source_name="Linear",
            )
            return await orchestrator.run()

    def map_issue(self, issue: dict[str, Any]) -> MappedTask:
        assignee = issue.get("assignee") or {}
        labels = (issue.get("labels") or {}).get("nodes") or []
        return MappedTask(
            external_id=issue["id"],
            title=issue.get("title") or "Untitled Issue",
            description=build_description(issue),
            status=map_status(issue.get("state")),
            priority=map_priority(issue.get("priority")),
            assignee=assignee.get("displayName") or assignee.get("name") or None,
            due_date=issue.get("dueDate"),
            labels=[label["name"] for label in labels if label.get("name")],
        )

    # ==================== Export & actions ====================

    async def _export_update(
        self,
        task: TaskRecord,
        changed_fields: dict[str, Any],
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> None:
        async with await self._client(task.source_id, config, ctx) as client:
            updates: dict[str, Any] = {}
            if changed_fields.get("title"):
                updates["title"] = changed_fields["title"]
            if "description" in changed_fields:
                updates["description"] = changed_fields["description"] or ""
            if changed_fields.get("priority"):
                updates["priority"] = PRIORITY_TO_LINEAR[TaskPriority(changed_fields["priority"])]
            if "due_date" in changed_fields:
                updates["dueDate"] = changed_fields["due_date"] or None
            if "assignee" in changed_fields and not changed_fields["assignee"]:
                # Display names cannot be mapped back to user ids; reassign_task handles that
                updates["assigneeId"] = None
            if changed_fields.get("status"):
                states = await self._issue_states(task, config, client, ctx)
                state = find_state_for_status(states, TaskStatus(changed_fields["status"]))
                if state is not None:
                    updates["stateId"] = state["id"]
                else:
                    logger.warning(
                        f"No Linear workflow state matches {changed_fields['status']} for issue {task.external_id}"
                    )

            if not updates:
                return
            await client.update_issue(task.external_id, updates)
        logger.info(f"Exported {sorted(updates)} to Linear issue {task.external_id}")

    async def _execute_action(
        self,
        action: PluginAction,
        task: TaskRecord,
        input: str | None,
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> ActionResult:
        value = (input or "").strip()
        if action.id == "update_priority":
            priority = parse_priority_input(value)
            if priority is None:
                return ActionResult(
                    success=False, error="Invalid priority. Use: Urgent, High, Medium, Low, or None"
                )

        async with await self._client(task.source_id, config, ctx) as client:
            if action.id == "add_comment":
                await client.add_comment(task.external_id, value)
                return ActionResult(success=True)
            if action.id == "update_priority":
                await client.update_issue(task.external_id, {"priority": priority})
                return ActionResult(success=True, task_update=TaskUpdate(priority=map_priority(priority)))
            if action.id == "change_status":
                states = await self._issue_states(task, config, client, ctx)
                state = next((s for s in states if s.get("name", "").lower() == value.lower()), None)
                if state is None:
                    names = ", ".join(s.get("name", "") for s in states)
                    return ActionResult(success=False, error=f"Unknown status: {value}. Use one of: {names}")
                await client.update_issue(task.external_id, {"stateId": state["id"]})
                return ActionResult(success=True, task_update=TaskUpdate(status=map_status(state)))
        return ActionResult(success=False, error=f"Unknown action: {action.id}")

    # ==================== Capabilities ====================

    async def get_users(self, config: dict[str, Any], ctx: PluginContext) -> list[SourceUser]:
        async with await self._client(ctx.source_id, config, ctx) as client:
            users = await client.list_users()
        return [SourceUser(id=u["id"], email=u.get("email") or None, name=_user_label(u)) for u in users]

    async def reassign_task(
        self,
        task: TaskRecord,
        user_ids: list[str],
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> ReassignResult:
        if not user_ids:
            return ReassignResult(success=False, error="No user IDs provided")
        # Issues have a single assignee
        async with await self._client(task.source_id, config, ctx) as client:
            await client.update_issue(task.external_id, {"assigneeId": user_ids[0]})
        logger.info(f"Reassigned Linear issue {task.external_id} to user {user_ids[0]}")
        return ReassignResult(success=True)


def _user_label(user: dict[str, Any]) -> str:
    return user.get("displayName") or user.get("name") or user.get("email") or user["id"]
