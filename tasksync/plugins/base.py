"""Task source plugin contract.

Every source plugin provides a consistent way to:
1. Declare its configuration form (and resolve live dropdown options)
2. Validate configuration before any network call
3. Import remote records as local tasks (see tasksync.sync.orchestrator)
4. Push local edits back to the remote system
5. Run source-specific actions (comment, close, approve, ...)

Directory lookup and reassignment are optional capabilities expressed as
mixin interfaces; query them with ``supports``.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar

from tasksync.errors import AuthenticationError, SourceError
from tasksync.models.plugin import (
    ActionResult,
    ConfigFieldOption,
    ConfigFieldSchema,
    FieldMapping,
    PluginAction,
    PluginMeta,
    PluginSyncResult,
    ReassignResult,
    SourceKind,
    SourceUser,
)
from tasksync.models.task import TaskRecord
from tasksync.sync.context import PluginContext

logger = logging.getLogger(__name__)


class TaskSourcePlugin(ABC):
    """Abstract base class for task source plugins.

    Example implementation:
        @PluginRegistry.register
        class NotionPlugin(TaskSourcePlugin):
            kind = SourceKind.NOTION
            display_name = "Notion"

            async def import_tasks(self, source_id, config, ctx):
                orchestrator = SyncOrchestrator(ctx, source_id, fetch=..., map_record=..., describe=...)
                return await orchestrator.run()
    """

    # Class-level metadata
    kind: ClassVar[SourceKind]
    display_name: ClassVar[str]
    description: ClassVar[str] = ""
    icon: ClassVar[str] = "plug"
    requires_mcp_server: ClassVar[bool] = False

    @classmethod
    def meta(cls) -> PluginMeta:
        return PluginMeta(
            id=cls.kind,
            display_name=cls.display_name,
            description=cls.description,
            icon=cls.icon,
            requires_mcp_server=cls.requires_mcp_server,
            capabilities=[name for name, cap in CAPABILITIES.items() if issubclass(cls, cap)],
        )

    # =========================================================================
    # Abstract Methods (must implement)
    # =========================================================================

    @abstractmethod
    def get_config_schema(self) -> list[ConfigFieldSchema]:
        """Ordered configuration fields for the settings form."""
        pass

    @abstractmethod
    def validate_config(self, config: dict[str, Any]) -> str | None:
        """Check configuration without touching the network.

        Returns:
            None if valid, otherwise a human-readable error
        """
        pass

    @abstractmethod
    def get_field_mapping(self, config: dict[str, Any]) -> list[FieldMapping]:
        """Document which remote fields feed each local field."""
        pass

    @abstractmethod
    def get_actions(self, config: dict[str, Any]) -> list[PluginAction]:
        """Remote actions available on tasks from this source."""
        pass

    @abstractmethod
    async def import_tasks(
        self, source_id: str, config: dict[str, Any], ctx: PluginContext
    ) -> PluginSyncResult:
        """Import remote records into the local store.

        Never raises for per-record problems; they are reported in the result.
        """
        pass

    @abstractmethod
    async def _export_update(
        self,
        task: TaskRecord,
        changed_fields: dict[str, Any],
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> None:
        pass

    @abstractmethod
    async def _execute_action(
        self,
        action: PluginAction,
        task: TaskRecord,
        input: str | None,
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> ActionResult:
        pass

    # =========================================================================
    # Contract entry points
    # =========================================================================

    async def resolve_options(
        self, resolver_key: str, config: dict[str, Any], ctx: PluginContext
    ) -> list[ConfigFieldOption]:
        """Fetch live choices for a dynamic-select field.

        Used to populate dropdowns speculatively, so failures (including
        missing credentials) are logged and yield an empty list.
        """
        try:
            return await self._resolve_options(resolver_key, config, ctx)
        except Exception as e:
            logger.warning(f"{self.kind.value}: resolving options '{resolver_key}' failed: {e}")
            return []

    async def _resolve_options(
        self, resolver_key: str, config: dict[str, Any], ctx: PluginContext
    ) -> list[ConfigFieldOption]:
        """Override to support dynamic-select fields."""
        return []

    async def export_update(
        self,
        task: TaskRecord,
        changed_fields: dict[str, Any],
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> None:
        """Best-effort push of local changes; errors are logged, never raised."""
        if not task.external_id:
            return
        try:
            await self._export_update(task, changed_fields, config, ctx)
        except Exception as e:
            logger.error(
                f"{self.kind.value}: exporting {sorted(changed_fields)} for task {task.id} failed: {e}"
            )

    async def execute_action(
        self,
        action_id: str,
        task: TaskRecord,
        input: str | None,
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> ActionResult:
        """Run a declared action against the task's remote record."""
        action = next((a for a in self.get_actions(config) if a.id == action_id), None)
        if action is None:
            return ActionResult(success=False, error=f"Unknown action: {action_id}")
        if action.requires_input and not (input and input.strip()):
            return ActionResult(success=False, error=f"{action.input_label or 'Input'} is required")
        if not task.external_id:
            return ActionResult(success=False, error="Task is not linked to a remote record")

        try:
            return await self._execute_action(action, task, input, config, ctx)
        except SourceError as e:
            logger.warning(f"{self.kind.value}: action {action_id} on task {task.id} failed: {e}")
            return ActionResult(success=False, error=str(e))

    # =========================================================================
    # Helper Methods
    # =========================================================================

    @staticmethod
    def _missing(config: dict[str, Any], *keys: str) -> list[str]:
        return [key for key in keys if not str(config.get(key) or "").strip()]

    async def _delegated_token(self, ctx: PluginContext, source_id: str | None = None) -> str:
        """Token from the OAuth collaborator for the given (or the context's) source."""
        source_id = source_id or ctx.source_id
        token = None
        if ctx.token_provider is not None and source_id:
            token = await ctx.token_provider.get_valid_token(source_id)
        if not token:
            raise AuthenticationError(
                f"{self.display_name} is not connected. Please authenticate.",
                system=self.kind.value,
            )
        return token


# =============================================================================
# Optional capabilities
# =============================================================================


class UserDirectoryCapability(ABC):
    """Plugin can list users of the remote system."""

    @abstractmethod
    async def get_users(self, config: dict[str, Any], ctx: PluginContext) -> list[SourceUser]:
        pass


class ReassignCapability(ABC):
    """Plugin can change the remote assignee of a task."""

    @abstractmethod
    async def reassign_task(
        self,
        task: TaskRecord,
        user_ids: list[str],
        config: dict[str, Any],
        ctx: PluginContext,
    ) -> ReassignResult:
        pass


CAPABILITIES: dict[str, type] = {
    "users": UserDirectoryCapability,
    "reassign": ReassignCapability,
}


def supports(plugin: TaskSourcePlugin, capability: type) -> bool:
    """Whether the plugin implements an optional capability interface."""
    return isinstance(plugin, capability)


# =============================================================================
# Registry
# =============================================================================


class PluginRegistry:
    """Registry mapping each source kind to its plugin.

    Plugins are stateless, so one instance per kind is shared.
    """

    _plugins: dict[SourceKind, type[TaskSourcePlugin]] = {}
    _instances: dict[SourceKind, TaskSourcePlugin] = {}

    @classmethod
    def register(cls, plugin_class: type[TaskSourcePlugin]) -> type[TaskSourcePlugin]:
        """Register a plugin class.

        Can be used as a decorator:
            @PluginRegistry.register
            class NotionPlugin(TaskSourcePlugin):
                kind = SourceKind.NOTION
        """
        cls._plugins[plugin_class.kind] = plugin_class
        cls._instances.pop(plugin_class.kind, None)
        return plugin_class

    @classmethod
    def get(cls, plugin_id: str | SourceKind) -> TaskSourcePlugin | None:
        """Get the plugin instance for a source kind, or None if unknown."""
        try:
            kind = SourceKind(plugin_id)
        except ValueError:
            return None
        plugin_class = cls._plugins.get(kind)
        if plugin_class is None:
            return None
        if kind not in cls._instances:
            cls._instances[kind] = plugin_class()
        return cls._instances[kind]

    @classmethod
    def list_plugins(cls) -> list[PluginMeta]:
        return [plugin_class.meta() for plugin_class in cls._plugins.values()]
