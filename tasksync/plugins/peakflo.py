"""Peakflo Workflo task source.

Peakflo is reached through an MCP server rather than a REST API: tasks are
listed with the ``task_list`` tool and approvals are submitted with
``task_complete``.
"""

import logging
from typing import Any, ClassVar

from tasksync.clients.peakflo import PeakfloClient
from tasksync.errors import ConfigValidationError
from tasksync.models.plugin import (
    ActionResult,
    ActionVariant,
    ConfigFieldOption,
    ConfigFieldSchema,
    ConfigFieldType,
    FieldMapping,
    MappedTask,
    PluginAction,
    PluginSyncResult,
    SourceKind,
)
from tasksync.models.task import TaskPriority, TaskRecord, TaskStatus, TaskUpdate
from tasksync.plugins.base import PluginRegistry, TaskSourcePlugin
from tasksync.sync.context import PluginContext
from tasksync.sync.orchestrator import SyncOrchestrator, SyncWindow

logger = logging.getLogger(__name__)

STATUS_FILTERS = ("pending", "in_progress", "all")

PRIORITY_MAP: dict[str, TaskPriority] = {
    "urgent": TaskPriority.CRITICAL,
    "high": TaskPriority.HIGH,
    "medium": TaskPriority.MEDIUM,
    "low": TaskPriority.LOW,
}

# Only completion is mirrored; every other workflow state is still actionable
STATUS_MAP: dict[str, TaskStatus] = {
    "pending": TaskStatus.NOT_STARTED,
    "in_progress": TaskStatus.NOT_STARTED,
    "completed": TaskStatus.COMPLETED,
    "cancelled": TaskStatus.NOT_STARTED,
    "expired": TaskStatus.NOT_STARTED,
}


def map_task(raw: dict[str, Any]) -> MappedTask:
    """Translate a Peakflo task; raises ValueError when id or title is missing."""
    task_id = raw.get("taskId") or raw.get("id")
    title = raw.get("title") or raw.get("name")
    if not task_id:
        raise ValueError("task has no id")
    if not title:
        raise ValueError(f"task {task_id} has no title")

    assigned = raw.get("assignedTo")
    if isinstance(assigned, list):
        assignee = ", ".join(str(a) for a in assigned) or None
    else:
        assignee = str(assigned) if assigned else None

    fields: dict[str, Any] = {}
    if raw.get("description") is not None:
        fields["description"] = str(raw["description"])
    if isinstance(raw.get("labels"), list):
        fields["labels"] = [str(label) for label in raw["labels"]]

    return MappedTask(
        external_id=str(task_id),
        title=str(title),
        type="approval" if raw.get("type") == "approval" else "general",
        priority=PRIORITY_MAP.get(str(raw.get("priority", "")).lower(), TaskPriority.MEDIUM),
        status=STATUS_MAP.get(str(raw.get("status", "")).lower(), TaskStatus.NOT_STARTED),
        assignee=assignee,
        due_date=raw.get("dueDate") or raw.get("due_date"),
        **fields,
    )


@PluginRegistry.register
class PeakfloPlugin(TaskSourcePlugin):
    """Sync approval tasks from Peakflo through its MCP server."""

    kind: ClassVar[SourceKind] = SourceKind.PEAKFLO
    display_name: ClassVar[str] = "Peakflo Workflo"
    description: ClassVar[str] = "Import and manage tasks from Peakflo Workflo platform"
    icon: ClassVar[str] = "Zap"
    requires_mcp_server: ClassVar[bool] = True

    def get_config_schema(self) -> list[ConfigFieldSchema]:
        return [
            ConfigFieldSchema(
                key="status_filter",
                label="Status Filter",
                type=ConfigFieldType.SELECT,
                default="pending",
                options=[
                    ConfigFieldOption(value="pending", label="Pending"),
                    ConfigFieldOption(value="in_progress", label="In Progress"),
                    ConfigFieldOption(value="all", label="All"),
                ],
            ),
        ]

    def validate_config(self, config: dict[str, Any]) -> str | None:
        status_filter = config.get("status_filter")
        if status_filter and status_filter not in STATUS_FILTERS:
            return f"Invalid status filter: {status_filter}"
        return None

    def get_field_mapping(self, config: dict[str, Any]) -> list[FieldMapping]:
        return [
            FieldMapping(local="external_id", remote="taskId|id"),
            FieldMapping(local="title", remote="title|name"),
            FieldMapping(local="description", remote="description"),
            FieldMapping(local="type", remote="type"),
            FieldMapping(local="priority", remote="priority", transform="urgent → critical"),
            FieldMapping(local="status", remote="status", transform="completed → completed, else not_started"),
            FieldMapping(local="assignee", remote="assignedTo"),
            FieldMapping(local="due_date", remote="dueDate|due_date"),
            FieldMapping(local="labels", remote="labels"),
        ]

    def get_actions(self, config: dict[str, Any]) -> list[PluginAction]:
        return [
            PluginAction(id="approve", label="Approve", icon="CheckCircle"),
            PluginAction(
                id="reject",
                label="Reject",
                icon="XCircle",
                variant=ActionVariant.DESTRUCTIVE,
                requires_input=True,
                input_label="Rejection reason",
                input_placeholder="Enter reason for rejection...",
            ),
        ]

    def _client(self, ctx: PluginContext) -> PeakfloClient:
        if ctx.tool_caller is None or ctx.mcp_server is None:
            raise ConfigValidationError("MCP server not found", system=self.kind.value)
        return PeakfloClient(ctx.tool_caller, ctx.mcp_server, settings=ctx.settings, sleep=ctx.sleep)

    # ==================== Import ====================

    async def import_tasks(
        self, source_id: str, config: dict[str, Any], ctx: PluginContext
    ) -> PluginSyncResult:
        if ctx.mcp_server is None or ctx.tool_caller is None:
            return PluginSyncResult(errors=["MCP server not found"])
        status_filter = config.get("status_filter") or "pending"
        client = self._client(ctx)

        async def fetch(window: SyncWindow) -> list[dict[str, Any]]:
            # task_list has no modified-since filter; every run lists the whole queue
            return await client.list_tasks(None if status_filter == "all" else status_filter)

        async def map_record(raw: dict[str, Any]) -> MappedTask:
            return map_task(raw)

        orchestrator = SyncOrchestrator(
            ctx,
            source_id,
            fetch=fetch,
            map_record=map_record,
            describe=lambda raw: f"task {raw.get('taskId') or raw.get('id') or '?'}",
        )
        return await orchestrator.run()

    # ==================== Export & actions ====================

    async def _export_update(
        self,
        task: TaskRecord,
        changed_fields: dict[str, Any],
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> None:
        logger.info(
            f"Peakflo task {task.external_id}: field updates are not exported "
            f"({sorted(changed_fields)}); use approve/reject"
        )

    async def _execute_action(
        self,
        action: PluginAction,
        task: TaskRecord,
        input: str | None,
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> ActionResult:
        if action.id == "approve":
            missing = [f.name for f in task.output_fields if f.required and _is_empty(f.value)]
            if missing:
                return ActionResult(
                    success=False, error=f"Required output fields are missing: {', '.join(missing)}"
                )

        outputs: dict[str, Any] = {"action": "approved" if action.id == "approve" else "rejected"}
        if input and input.strip():
            outputs["reason"] = input.strip()
        for field in task.output_fields:
            if not _is_empty(field.value):
                outputs[field.name] = field.value

        await self._client(ctx).complete_task(task.external_id, outputs)
        status = TaskStatus.COMPLETED if action.id == "approve" else TaskStatus.NOT_STARTED
        return ActionResult(success=True, task_update=TaskUpdate(status=status))


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []
