"""GitHub Issues task source.

Imports repository issues as tasks. Priority is read from labels such as
``p1`` or ``priority:high``; those labels are consumed and do not appear in
the task's label list.
"""

import logging
from typing import Any, ClassVar

from tasksync.clients.github import GitHubClient
from tasksync.models.plugin import (
    ActionResult,
    ActionVariant,
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

# Labels that map to priority (case-insensitive)
PRIORITY_LABELS: dict[str, TaskPriority] = {
    "p0": TaskPriority.CRITICAL,
    "p1": TaskPriority.HIGH,
    "p2": TaskPriority.MEDIUM,
    "p3": TaskPriority.LOW,
    "critical": TaskPriority.CRITICAL,
    "urgent": TaskPriority.CRITICAL,
    "priority:critical": TaskPriority.CRITICAL,
    "priority:high": TaskPriority.HIGH,
    "priority:medium": TaskPriority.MEDIUM,
    "priority:low": TaskPriority.LOW,
}


def is_priority_label(name: str) -> bool:
    return name.lower() in PRIORITY_LABELS


def label_names(issue: dict[str, Any]) -> list[str]:
    return [
        label["name"] if isinstance(label, dict) else str(label)
        for label in issue.get("labels") or []
    ]


def map_priority(labels: list[str]) -> TaskPriority:
    for name in labels:
        priority = PRIORITY_LABELS.get(name.lower())
        if priority is not None:
            return priority
    return TaskPriority.MEDIUM


def map_status(issue: dict[str, Any]) -> TaskStatus:
    if issue.get("state") == "closed":
        return TaskStatus.COMPLETED
    names = [n.lower() for n in label_names(issue)]
    if any("in progress" in n or n == "wip" for n in names):
        return TaskStatus.AGENT_WORKING
    if any("review" in n for n in names):
        return TaskStatus.READY_FOR_REVIEW
    return TaskStatus.NOT_STARTED


def _split_labels(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in str(value or "").split(",") if part.strip()]


@PluginRegistry.register
class GitHubIssuesPlugin(TaskSourcePlugin, UserDirectoryCapability, ReassignCapability):
    """Sync tasks with the issues of one GitHub repository."""

    kind: ClassVar[SourceKind] = SourceKind.GITHUB_ISSUES
    display_name: ClassVar[str] = "GitHub Issues"
    description: ClassVar[str] = "Import and sync issues from a GitHub repository"
    icon: ClassVar[str] = "Github"

    def get_config_schema(self) -> list[ConfigFieldSchema]:
        return [
            ConfigFieldSchema(
                key="api_token",
                label="Access Token",
                type=ConfigFieldType.PASSWORD,
                required=True,
                placeholder="ghp_...",
                description="Personal access token with repo scope",
            ),
            ConfigFieldSchema(
                key="owner",
                label="Owner",
                type=ConfigFieldType.DYNAMIC_SELECT,
                options_resolver="owners",
                required=True,
                description="GitHub user or organization",
            ),
            ConfigFieldSchema(
                key="repo",
                label="Repository",
                type=ConfigFieldType.DYNAMIC_SELECT,
                options_resolver="repos",
                required=True,
                description="Repository to import issues from",
                depends_on=FieldDependency(field="owner"),
            ),
            ConfigFieldSchema(
                key="assignee",
                label="Assignee Filter",
                type=ConfigFieldType.TEXT,
                placeholder="GitHub username (optional)",
                description="Only import issues assigned to this user",
            ),
            ConfigFieldSchema(
                key="labels",
                label="Label Filter",
                type=ConfigFieldType.TEXT,
                placeholder="bug, enhancement (optional)",
                description="Only import issues carrying all of these labels",
            ),
        ]

    def validate_config(self, config: dict[str, Any]) -> str | None:
        if self._missing(config, "api_token"):
            return "Access token is required"
        if self._missing(config, "owner"):
            return "Owner is required"
        if self._missing(config, "repo"):
            return "Repository is required"
        return None

    def get_field_mapping(self, config: dict[str, Any]) -> list[FieldMapping]:
        return [
            FieldMapping(local="external_id", remote="number"),
            FieldMapping(local="title", remote="title"),
            FieldMapping(local="description", remote="body"),
            FieldMapping(local="status", remote="state|labels", transform="closed → completed"),
            FieldMapping(local="priority", remote="labels", transform="priority labels"),
            FieldMapping(local="assignee", remote="assignees.login|assignee.login"),
            FieldMapping(local="labels", remote="labels.name"),
        ]

    def get_actions(self, config: dict[str, Any]) -> list[PluginAction]:
        return [
            PluginAction(
                id="add_comment",
                label="Comment",
                icon="MessageSquare",
                requires_input=True,
                input_label="Comment",
                input_placeholder="Write a comment...",
            ),
            PluginAction(
                id="close_issue",
                label="Close Issue",
                icon="CircleCheck",
                variant=ActionVariant.DESTRUCTIVE,
            ),
            PluginAction(id="reopen_issue", label="Reopen", icon="RotateCcw", variant=ActionVariant.OUTLINE),
        ]

    def _client(self, config: dict[str, Any], ctx: PluginContext) -> GitHubClient:
        return GitHubClient(config["api_token"], **ctx.client_options())

    async def _resolve_options(
        self, resolver_key: str, config: dict[str, Any], ctx: PluginContext
    ) -> list[ConfigFieldOption]:
        if not config.get("api_token"):
            return []
        async with self._client(config, ctx) as client:
            if resolver_key == "owners":
                return [ConfigFieldOption(value=o, label=o) for o in await client.list_owners()]
            if resolver_key == "repos" and config.get("owner"):
                repos = await client.list_repos(config["owner"])
                return [ConfigFieldOption(value=r["name"], label=r["name"]) for r in repos]
        return []

    # ==================== Import ====================

    async def import_tasks(
        self, source_id: str, config: dict[str, Any], ctx: PluginContext
    ) -> PluginSyncResult:
        owner, repo = config["owner"], config["repo"]

        async with self._client(config, ctx) as client:

            async def fetch(window: SyncWindow) -> list[dict[str, Any]]:
                return await client.list_issues(
                    owner,
                    repo,
                    state="open" if window.open_only else "all",
                    since=window.modified_after,
                    assignee=config.get("assignee") or None,
                    labels=_split_labels(config.get("labels")) or None,
                )

            async def map_record(issue: dict[str, Any]) -> MappedTask:
                return self.map_issue(issue, owner, repo)

            orchestrator = SyncOrchestrator(
                ctx,
                source_id,
                fetch=fetch,
                map_record=map_record,
                describe=lambda issue: f'#{issue.get("number")} "{issue.get("title", "")}"',
                source_name="GitHub",
                # Local status is driven by in-app agents once an issue is imported
                update_status=False,
            )
            return await orchestrator.run()

    def map_issue(self, issue: dict[str, Any], owner: str, repo: str) -> MappedTask:
        labels = label_names(issue)
        assignees = issue.get("assignees") or ([issue["assignee"]] if issue.get("assignee") else [])
        return MappedTask(
            external_id=str(issue["number"]),
            title=issue["title"],
            description=issue.get("body") or "",
            priority=map_priority(labels),
            status=map_status(issue),
            assignee=", ".join(a["login"] for a in assignees) or None,
            labels=[name for name in labels if not is_priority_label(name)],
            repos=[f"{owner}/{repo}"],
        )

    # ==================== Export & actions ====================

    async def _export_update(
        self,
        task: TaskRecord,
        changed_fields: dict[str, Any],
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> None:
        updates: dict[str, Any] = {}
        if changed_fields.get("title"):
            updates["title"] = changed_fields["title"]
        if "description" in changed_fields:
            updates["body"] = changed_fields["description"] or ""
        if changed_fields.get("status"):
            updates["state"] = "closed" if changed_fields["status"] == TaskStatus.COMPLETED else "open"
        if "assignee" in changed_fields:
            assignee = changed_fields["assignee"]
            updates["assignees"] = [assignee] if assignee else []
        if "labels" in changed_fields:
            updates["labels"] = list(changed_fields["labels"] or [])

        if not updates:
            return
        async with self._client(config, ctx) as client:
            await client.update_issue(config["owner"], config["repo"], task.external_id, updates)
        logger.info(f"Exported {sorted(updates)} to GitHub issue #{task.external_id}")

    async def _execute_action(
        self,
        action: PluginAction,
        task: TaskRecord,
        input: str | None,
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> ActionResult:
        owner, repo, number = config["owner"], config["repo"], task.external_id
        async with self._client(config, ctx) as client:
            if action.id == "add_comment":
                await client.add_comment(owner, repo, number, input or "")
                return ActionResult(success=True)
            if action.id == "close_issue":
                await client.update_issue(owner, repo, number, {"state": "closed"})
                return ActionResult(success=True, task_update=TaskUpdate(status=TaskStatus.COMPLETED))
            if action.id == "reopen_issue":
                await client.update_issue(owner, repo, number, {"state": "open"})
                return ActionResult(success=True, task_update=TaskUpdate(status=TaskStatus.NOT_STARTED))
        return ActionResult(success=False, error=f"Unknown action: {action.id}")

    # ==================== Capabilities ====================

    async def get_users(self, config: dict[str, Any], ctx: PluginContext) -> list[SourceUser]:
        async with self._client(config, ctx) as client:
            collaborators = await client.list_collaborators(config["owner"], config["repo"])
        return [SourceUser(id=c["login"], name=c["login"], email=c.get("email")) for c in collaborators]

    async def reassign_task(
        self,
        task: TaskRecord,
        user_ids: list[str],
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> ReassignResult:
        async with self._client(config, ctx) as client:
            await client.update_issue(
                config["owner"], config["repo"], task.external_id, {"assignees": user_ids}
            )
        return ReassignResult(success=True)
