"""HubSpot tickets task source.

Ticket status is modelled by pipeline stages; each stage carries OPEN/CLOSED
metadata at the pipeline level, which takes precedence over label heuristics.
Pipelines are cached per source in the context's MetadataCache.
"""

import asyncio
import logging
import mimetypes
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, ClassVar

from tasksync.clients.hubspot import (
    HubSpotAttachment,
    HubSpotClient,
    HubSpotPipeline,
    HubSpotTicket,
    open_stage_ids,
)
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
from tasksync.models.task import FileAttachment, TaskPriority, TaskRecord, TaskStatus, TaskUpdate
from tasksync.plugins.base import (
    PluginRegistry,
    ReassignCapability,
    TaskSourcePlugin,
    UserDirectoryCapability,
)
from tasksync.sync.context import PluginContext
from tasksync.sync.orchestrator import SyncOrchestrator, SyncWindow

logger = logging.getLogger(__name__)

AUTH_TYPES = ("oauth", "private_app")
PIPELINES_CACHE_KEY = "pipelines"

PRIORITY_FROM_HUBSPOT: dict[str, TaskPriority] = {
    "HIGH": TaskPriority.HIGH,
    "MEDIUM": TaskPriority.MEDIUM,
    "LOW": TaskPriority.LOW,
}


def map_priority(value: str | None) -> TaskPriority:
    return PRIORITY_FROM_HUBSPOT.get((value or "").upper(), TaskPriority.MEDIUM)


def _status_from_label(label: str) -> TaskStatus:
    label = label.lower()
    if "waiting" in label or "new" in label:
        return TaskStatus.NOT_STARTED
    if "review" in label:
        return TaskStatus.READY_FOR_REVIEW
    if "progress" in label or "working" in label:
        return TaskStatus.AGENT_WORKING
    return TaskStatus.AGENT_WORKING


def map_status(stage_id: str | None, pipelines: list[HubSpotPipeline]) -> TaskStatus:
    """Map a ticket stage to a local status.

    The stage's pipeline metadata decides open vs closed. The stage label
    refines open stages. Unknown stages fall back to matching the stage id.
    """
    if not stage_id:
        return TaskStatus.NOT_STARTED

    for pipeline in pipelines:
        stage = pipeline.find_stage(stage_id)
        if stage is None:
            continue
        if stage.ticket_state == "CLOSED":
            return TaskStatus.COMPLETED
        return _status_from_label(stage.label)

    lowered = stage_id.lower()
    if "closed" in lowered or "done" in lowered:
        return TaskStatus.COMPLETED
    return _status_from_label(lowered)


def describe_stage(stage_id: str | None, pipelines: list[HubSpotPipeline]) -> str | None:
    if not stage_id:
        return None
    for pipeline in pipelines:
        stage = pipeline.find_stage(stage_id)
        if stage is not None:
            return f"{pipeline.label} → {stage.label}"
    return stage_id


def _format_timestamp(value: str) -> str:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    return parsed.strftime("%Y-%m-%d %H:%M UTC")


def build_description(
    ticket: HubSpotTicket,
    pipelines: list[HubSpotPipeline],
    owner_name: str = "",
    contact_name: str = "",
    ticket_url: str | None = None,
) -> str:
    """Render a ticket as markdown: its content followed by a details section."""
    props = ticket.properties
    parts: list[str] = []

    if props.content:
        parts.extend([props.content, "", "---", ""])

    parts.extend(["## Ticket Details", ""])
    status = describe_stage(props.hs_pipeline_stage, pipelines)
    if status:
        parts.append(f"**Status:** {status}")
    if owner_name:
        parts.append(f"**Assignee:** {owner_name}")
    if contact_name:
        parts.append(f"**Contact:** {contact_name}")
    if props.createdate:
        parts.append(f"**Created:** {_format_timestamp(props.createdate)}")
    if props.hs_lastmodifieddate:
        parts.append(f"**Last Modified:** {_format_timestamp(props.hs_lastmodifieddate)}")
    if props.hs_ticket_category:
        parts.append(f"**Category:** {props.hs_ticket_category}")

    if ticket_url:
        parts.extend(["", "---", "", f"[View in HubSpot]({ticket_url})"])

    return "\n".join(parts)


@PluginRegistry.register
class HubSpotPlugin(TaskSourcePlugin, UserDirectoryCapability, ReassignCapability):
    """Sync tasks with HubSpot CRM tickets."""

    kind: ClassVar[SourceKind] = SourceKind.HUBSPOT
    display_name: ClassVar[str] = "HubSpot"
    description: ClassVar[str] = "Import and sync tickets from HubSpot CRM"
    icon: ClassVar[str] = "Ticket"

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
                    ConfigFieldOption(value="private_app", label="Private App Token"),
                ],
            ),
            ConfigFieldSchema(
                key="client_id",
                label="Client ID",
                type=ConfigFieldType.TEXT,
                required=True,
                depends_on=FieldDependency(field="auth_type", value="oauth"),
            ),
            ConfigFieldSchema(
                key="client_secret",
                label="Client Secret",
                type=ConfigFieldType.PASSWORD,
                required=True,
                depends_on=FieldDependency(field="auth_type", value="oauth"),
            ),
            ConfigFieldSchema(
                key="access_token",
                label="Private App Token",
                type=ConfigFieldType.PASSWORD,
                required=True,
                placeholder="pat-...",
                depends_on=FieldDependency(field="auth_type", value="private_app"),
            ),
            ConfigFieldSchema(
                key="pipeline_id",
                label="Pipeline",
                type=ConfigFieldType.DYNAMIC_SELECT,
                options_resolver="pipelines",
                description="Only import tickets from this pipeline",
            ),
            ConfigFieldSchema(
                key="owner_id",
                label="Owner",
                type=ConfigFieldType.DYNAMIC_SELECT,
                options_resolver="owners",
                description="Only import tickets owned by this user",
            ),
            ConfigFieldSchema(
                key="sync_attachments",
                label="Download attachments",
                type=ConfigFieldType.CHECKBOX,
                default=True,
            ),
        ]

    def validate_config(self, config: dict[str, Any]) -> str | None:
        auth_type = config.get("auth_type")
        if auth_type == "oauth":
            if self._missing(config, "client_id", "client_secret"):
                return "Client ID and Client Secret are required for OAuth"
            return None
        if auth_type == "private_app":
            if self._missing(config, "access_token"):
                return "Private App token is required"
            return None
        return f"Invalid auth type: {auth_type!r}. Use one of: {', '.join(AUTH_TYPES)}"

    def get_field_mapping(self, config: dict[str, Any]) -> list[FieldMapping]:
        return [
            FieldMapping(local="external_id", remote="id"),
            FieldMapping(local="title", remote="properties.subject"),
            FieldMapping(local="description", remote="properties.content"),
            FieldMapping(local="status", remote="properties.hs_pipeline_stage", transform="stage OPEN/CLOSED"),
            FieldMapping(local="priority", remote="properties.hs_ticket_priority"),
            FieldMapping(local="assignee", remote="properties.hubspot_owner_id", transform="owner name"),
            FieldMapping(local="due_date", remote="properties.hs_due_date"),
            FieldMapping(local="labels", remote="properties.hs_ticket_category"),
            FieldMapping(local="resolution", remote="properties.hs_resolution"),
        ]

    def get_actions(self, config: dict[str, Any]) -> list[PluginAction]:
        return [
            PluginAction(
                id="add_note",
                label="Add Note",
                icon="StickyNote",
                requires_input=True,
                input_label="Note",
                input_placeholder="Write a note...",
            ),
            PluginAction(
                id="update_priority",
                label="Set Priority",
                icon="Flag",
                requires_input=True,
                input_label="Priority",
                input_placeholder="HIGH, MEDIUM or LOW",
            ),
        ]

    async def _client(
        self, source_id: str | None, config: dict[str, Any], ctx: PluginContext
    ) -> HubSpotClient:
        if config.get("auth_type") == "private_app":
            token = config.get("access_token")
            if not token:
                raise ConfigValidationError("Private App token is not configured", system="hubspot")
        else:
            token = await self._delegated_token(ctx, source_id)
        return HubSpotClient(token, **ctx.client_options())

    async def _pipelines(
        self, source_id: str | None, client: HubSpotClient, ctx: PluginContext
    ) -> list[HubSpotPipeline]:
        if not source_id:
            return await client.get_pipelines()
        return await ctx.metadata_cache.get_or_load(source_id, PIPELINES_CACHE_KEY, client.get_pipelines)

    async def _resolve_options(
        self, resolver_key: str, config: dict[str, Any], ctx: PluginContext
    ) -> list[ConfigFieldOption]:
        async with await self._client(ctx.source_id, config, ctx) as client:
            if resolver_key == "pipelines":
                pipelines = await self._pipelines(ctx.source_id, client, ctx)
                return [ConfigFieldOption(value=p.id, label=p.label) for p in pipelines]
            if resolver_key == "owners":
                owners = await client.get_owners()
                return [ConfigFieldOption(value=o.id, label=o.display_name) for o in owners]
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
            pipelines: list[HubSpotPipeline] = []
            owner_names: dict[str, str] = {}

            async def fetch(window: SyncWindow) -> list[dict[str, Any]]:
                pipelines.extend(await self._pipelines(source_id, client, ctx))
                return await client.get_tickets(
                    pipeline_id=config.get("pipeline_id") or None,
                    owner_id=config.get("owner_id") or None,
                    modified_after=window.modified_after,
                    open_stages=open_stage_ids(pipelines) if window.open_only else None,
                )

            async def owner_name(owner_id: str | None) -> str:
                if not owner_id:
                    return ""
                if owner_id not in owner_names:
                    owner = await client.get_owner(owner_id)
                    owner_names[owner_id] = owner.display_name if owner else ""
                return owner_names[owner_id]

            async def map_record(raw: dict[str, Any]) -> MappedTask:
                ticket = HubSpotTicket.model_validate(raw)
                props = ticket.properties

                contact_name = ""
                if ticket.contact_ids:
                    contact = await client.get_contact(ticket.contact_ids[0])
                    contact_name = contact.display_name if contact else ""

                try:
                    ticket_url = await client.get_ticket_url(ticket.id)
                except SourceError as e:
                    logger.warning(f"Could not build HubSpot link for ticket {ticket.id}: {e}")
                    ticket_url = None

                assignee = await owner_name(props.hubspot_owner_id)
                return MappedTask(
                    external_id=ticket.id,
                    title=props.subject or "Untitled Ticket",
                    description=build_description(ticket, pipelines, assignee, contact_name, ticket_url),
                    status=map_status(props.hs_pipeline_stage, pipelines),
                    priority=map_priority(props.hs_ticket_priority),
                    assignee=assignee or None,
                    due_date=props.hs_due_date,
                    labels=[props.hs_ticket_category] if props.hs_ticket_category else [],
                    resolution=props.hs_resolution,
                )

            async def after_upsert(task: TaskRecord, raw: dict[str, Any]) -> None:
                if config.get("sync_attachments", True):
                    await self._sync_attachments(task, str(raw["id"]), client, ctx)

            orchestrator = SyncOrchestrator(
                ctx,
                source_id,
                fetch=fetch,
                map_record=map_record,
                describe=lambda raw: f'"{(raw.get("properties") or {}).get("subject") or raw.get("id")}"',
                source_name="HubSpot",
                after_upsert=after_upsert,
            )
            return await orchestrator.run()

    async def _sync_attachments(
        self, task: TaskRecord, ticket_id: str, client: HubSpotClient, ctx: PluginContext
    ) -> None:
        """Download ticket attachments not already stored on the task."""
        remote = await client.get_ticket_attachments(ticket_id)
        known = {a.external_file_id for a in task.attachments if a.external_file_id}
        pending = [a for a in remote if a.id not in known]
        if not pending:
            return

        directory = await ctx.store.get_attachments_dir(task.id)
        loop = asyncio.get_running_loop()
        added: list[FileAttachment] = []
        for attachment in pending:
            try:
                content = await client.download_attachment(attachment.url)
            except SourceError as e:
                logger.warning(f"Failed to download HubSpot attachment {attachment.id}: {e}")
                continue
            filename = _attachment_filename(attachment, directory)
            # Write in thread pool
            await loop.run_in_executor(None, (directory / filename).write_bytes, content)
            added.append(
                FileAttachment(
                    id=str(uuid.uuid4()),
                    filename=filename,
                    size=len(content),
                    mime_type=attachment.type,
                    added_at=datetime.now(timezone.utc),
                    external_file_id=attachment.id,
                )
            )

        if added:
            await ctx.store.update_task(task.id, TaskUpdate(attachments=task.attachments + added))
            logger.info(f"Saved {len(added)} HubSpot attachment(s) for task {task.id}")

    # ==================== Export & actions ====================

    async def _export_update(
        self,
        task: TaskRecord,
        changed_fields: dict[str, Any],
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> None:
        async with await self._client(task.source_id, config, ctx) as client:
            if changed_fields.get("status") == TaskStatus.COMPLETED:
                await self._close_ticket(task, client, ctx)
            if "resolution" in changed_fields:
                await client.update_ticket(
                    task.external_id, {"hs_resolution": changed_fields["resolution"] or ""}
                )
            if "assignee" in changed_fields and not changed_fields["assignee"]:
                # Display names cannot be mapped back to owner ids; reassign_task handles that
                await client.update_ticket(task.external_id, {"hubspot_owner_id": ""})
                logger.info(f"Unassigned HubSpot ticket {task.external_id}")

    async def _close_ticket(self, task: TaskRecord, client: HubSpotClient, ctx: PluginContext) -> None:
        raw = await client.get_ticket(task.external_id)
        if raw is None:
            logger.error(f"HubSpot ticket {task.external_id} not found; cannot close it")
            return
        ticket = HubSpotTicket.model_validate(raw)
        pipelines = await self._pipelines(task.source_id, client, ctx)
        pipeline = next((p for p in pipelines if p.id == ticket.properties.hs_pipeline), None)
        closed_stage = pipeline.first_closed_stage() if pipeline else None
        if closed_stage is None:
            logger.error(f"No CLOSED stage found for HubSpot ticket {task.external_id}")
            return

        properties = {"hs_pipeline_stage": closed_stage.id}
        if task.resolution:
            properties["hs_resolution"] = task.resolution
        await client.update_ticket(task.external_id, properties)
        logger.info(f"Closed HubSpot ticket {task.external_id}")

    async def _execute_action(
        self,
        action: PluginAction,
        task: TaskRecord,
        input: str | None,
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> ActionResult:
        if action.id == "update_priority":
            priority = (input or "").strip().upper()
            if priority not in PRIORITY_FROM_HUBSPOT:
                return ActionResult(success=False, error="Invalid priority. Use: HIGH, MEDIUM, or LOW")

        async with await self._client(task.source_id, config, ctx) as client:
            if action.id == "add_note":
                await client.add_ticket_note(task.external_id, input or "")
                return ActionResult(success=True)
            if action.id == "update_priority":
                await client.update_ticket(task.external_id, {"hs_ticket_priority": priority})
                return ActionResult(success=True, task_update=TaskUpdate(priority=map_priority(priority)))
        return ActionResult(success=False, error=f"Unknown action: {action.id}")

    # ==================== Capabilities ====================

    async def get_users(self, config: dict[str, Any], ctx: PluginContext) -> list[SourceUser]:
        async with await self._client(ctx.source_id, config, ctx) as client:
            owners = await client.get_owners()
        return [SourceUser(id=o.id, email=o.email or None, name=o.display_name) for o in owners]

    async def reassign_task(
        self,
        task: TaskRecord,
        user_ids: list[str],
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> ReassignResult:
        if not user_ids:
            return ReassignResult(success=False, error="No user IDs provided")
        # Tickets have a single owner
        async with await self._client(task.source_id, config, ctx) as client:
            await client.update_ticket(task.external_id, {"hubspot_owner_id": user_ids[0]})
        logger.info(f"Reassigned HubSpot ticket {task.external_id} to owner {user_ids[0]}")
        return ReassignResult(success=True)


def _attachment_filename(attachment: HubSpotAttachment, directory: Path) -> str:
    name = Path(attachment.name).name or "attachment"
    extension = attachment.extension or (mimetypes.guess_extension(attachment.type) or "").lstrip(".")
    if extension and not name.lower().endswith(f".{extension.lower()}"):
        name = f"{name}.{extension}"
    if (directory / name).exists():
        name = f"{attachment.id}-{name}"
    return name
