"""Sync manager: entry point from the application into source plugins.

Resolves the task source and its plugin, builds the PluginContext and
applies the local side effects of plugin calls (task updates returned by
actions, extracted output values).
"""

import logging
from typing import Any

import httpx

from tasksync.clients.base import SleepFn
from tasksync.clients.tool_caller import McpToolCaller, ToolCaller
from tasksync.db.task_store import SQLiteTaskStore, task_store
from tasksync.errors import CapabilityNotSupportedError, ConfigValidationError, NotFoundError
from tasksync.llm.output_extraction import extract_output_from_messages
from tasksync.models import (
    ActionResult,
    AgentMessage,
    ConfigFieldOption,
    FieldMapping,
    PluginAction,
    PluginSyncResult,
    ReassignResult,
    SourceUser,
    TaskRecord,
    TaskSourceRecord,
    TaskUpdate,
)
from tasksync.plugins import (
    PluginRegistry,
    ReassignCapability,
    TaskSourcePlugin,
    UserDirectoryCapability,
    supports,
)
from tasksync.settings import Settings, get_settings
from tasksync.sync.context import PluginContext, TokenProvider
from tasksync.sync.metadata_cache import MetadataCache

logger = logging.getLogger(__name__)


class SyncManager:
    """Runs plugin operations on behalf of the API.

    Owns the metadata cache, so cached pipelines live as long as the manager
    and are dropped by ``refresh_metadata``.
    """

    def __init__(
        self,
        store: SQLiteTaskStore = task_store,
        *,
        tool_caller: ToolCaller | None = None,
        token_provider: TokenProvider | None = None,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self.store = store
        self.tool_caller = tool_caller or McpToolCaller()
        self.token_provider = token_provider
        self.settings = settings or get_settings()
        self.metadata_cache = MetadataCache()
        self._http_client = http_client
        self._sleep = sleep

    # ==================== Resolution ====================

    def get_plugin(self, plugin_id: str) -> TaskSourcePlugin:
        plugin = PluginRegistry.get(plugin_id)
        if plugin is None:
            raise NotFoundError(f'Plugin "{plugin_id}" not found')
        return plugin

    async def _get_source(self, source_id: str) -> TaskSourceRecord:
        source = await self.store.get_task_source(source_id)
        if source is None:
            raise NotFoundError("Task source not found")
        return source

    async def _get_task(self, task_id: str) -> TaskRecord:
        task = await self.store.get_task(task_id)
        if task is None:
            raise NotFoundError("Task not found")
        return task

    async def _linked_source(self, task: TaskRecord) -> TaskSourceRecord:
        if not task.is_linked:
            raise ConfigValidationError("Task is not linked to a task source")
        return await self._get_source(task.source_id)  # type: ignore[arg-type]

    async def _context(self, source: TaskSourceRecord | None) -> PluginContext:
        mcp_server = None
        if source is not None and source.mcp_server_id:
            mcp_server = await self.store.get_mcp_server(source.mcp_server_id)
        return PluginContext(
            store=self.store,
            source_id=source.id if source else None,
            tool_caller=self.tool_caller,
            mcp_server=mcp_server,
            token_provider=self.token_provider,
            metadata_cache=self.metadata_cache,
            settings=self.settings,
            http_client=self._http_client,
            sleep=self._sleep,
        )

    # ==================== Import / export ====================

    async def import_tasks(self, source_id: str) -> PluginSyncResult:
        """Sync one source; every failure is reported in the result."""
        source = await self.store.get_task_source(source_id)
        if source is None:
            return PluginSyncResult(errors=["Task source not found"])
        plugin = PluginRegistry.get(source.plugin_id)
        if plugin is None:
            return PluginSyncResult(errors=[f'Plugin "{source.plugin_id}" not found'])

        error = plugin.validate_config(source.config)
        if error:
            logger.warning(f"Not syncing source {source.name}: {error}")
            return PluginSyncResult(errors=[error])
        if plugin.requires_mcp_server and not source.mcp_server_id:
            return PluginSyncResult(errors=["MCP server not found"])

        ctx = await self._context(source)
        return await plugin.import_tasks(source.id, source.config, ctx)

    async def export_task_update(self, task_id: str, changed_fields: dict[str, Any]) -> None:
        """Best-effort push of local edits; unlinked tasks are skipped."""
        task = await self.store.get_task(task_id)
        if task is None or not task.is_linked:
            return
        source = await self.store.get_task_source(task.source_id)  # type: ignore[arg-type]
        if source is None or not source.enabled:
            return
        plugin = PluginRegistry.get(source.plugin_id)
        if plugin is None:
            return
        await plugin.export_update(task, changed_fields, source.config, await self._context(source))

    # ==================== Actions ====================

    async def get_actions(self, source_id: str) -> list[PluginAction]:
        source = await self._get_source(source_id)
        return self.get_plugin(source.plugin_id).get_actions(source.config)

    async def execute_action(
        self, task_id: str, action_id: str, input: str | None = None
    ) -> ActionResult:
        """Run a plugin action and apply its local task update on success."""
        task = await self._get_task(task_id)
        try:
            source = await self._linked_source(task)
        except (ConfigValidationError, NotFoundError) as e:
            return ActionResult(success=False, error=str(e))
        plugin = PluginRegistry.get(source.plugin_id)
        if plugin is None:
            return ActionResult(success=False, error=f'Plugin "{source.plugin_id}" not found')

        result = await plugin.execute_action(
            action_id, task, input, source.config, await self._context(source)
        )
        if result.success and result.task_update is not None:
            await self.store.update_task(task.id, result.task_update)
            logger.info(f"Action {action_id} on task {task.id} applied {sorted(result.task_update.model_fields_set)}")
        return result

    # ==================== Configuration ====================

    def validate_config(self, plugin_id: str, config: dict[str, Any]) -> str | None:
        return self.get_plugin(plugin_id).validate_config(config)

    def get_field_mapping(self, plugin_id: str, config: dict[str, Any]) -> list[FieldMapping]:
        return self.get_plugin(plugin_id).get_field_mapping(config)

    async def resolve_options(
        self,
        plugin_id: str,
        resolver_key: str,
        config: dict[str, Any],
        source_id: str | None = None,
    ) -> list[ConfigFieldOption]:
        plugin = self.get_plugin(plugin_id)
        source = await self.store.get_task_source(source_id) if source_id else None
        if source is not None:
            # Unsaved form values win over the stored config
            config = {**source.config, **{k: v for k, v in config.items() if v not in (None, "")}}
        return await plugin.resolve_options(resolver_key, config, await self._context(source))

    async def refresh_metadata(self, source_id: str) -> None:
        await self._get_source(source_id)
        self.metadata_cache.invalidate(source_id)
        logger.info(f"Metadata cache cleared for source {source_id}")

    # ==================== Capabilities ====================

    async def get_users(self, source_id: str) -> list[SourceUser]:
        source = await self._get_source(source_id)
        plugin = self.get_plugin(source.plugin_id)
        if not supports(plugin, UserDirectoryCapability):
            raise CapabilityNotSupportedError(
                f"{plugin.display_name} does not support listing users", system=plugin.kind.value
            )
        return await plugin.get_users(source.config, await self._context(source))  # type: ignore[attr-defined]

    async def reassign_task(self, task_id: str, user_ids: list[str]) -> ReassignResult:
        task = await self._get_task(task_id)
        source = await self._linked_source(task)
        plugin = self.get_plugin(source.plugin_id)
        if not supports(plugin, ReassignCapability):
            raise CapabilityNotSupportedError(
                f"{plugin.display_name} does not support reassignment", system=plugin.kind.value
            )
        return await plugin.reassign_task(task, user_ids, source.config, await self._context(source))  # type: ignore[attr-defined]

    # ==================== Output fields ====================

    async def extract_output_fields(
        self, task_id: str, messages: list[AgentMessage]
    ) -> TaskRecord:
        """Fill the task's output fields from an agent transcript and store them."""
        task = await self._get_task(task_id)
        fields = extract_output_from_messages(messages, task.output_fields)
        if fields is None:
            logger.info(f"No output values found for task {task_id}")
            return task
        updated = await self.store.update_task(task_id, TaskUpdate(output_fields=fields))
        return updated or task


# Singleton instance
sync_manager = SyncManager()
