"""Collaborators handed to plugins for one import, export or action call."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import httpx

from tasksync.clients.base import SleepFn
from tasksync.clients.tool_caller import ToolCaller
from tasksync.models.task import (
    McpServerRecord,
    TaskCreate,
    TaskRecord,
    TaskSourceRecord,
    TaskUpdate,
)
from tasksync.settings import Settings, get_settings
from tasksync.sync.metadata_cache import MetadataCache


class TaskStore(Protocol):
    """Local task persistence consumed by plugins and the orchestrator."""

    async def get_task(self, task_id: str) -> TaskRecord | None: ...

    async def get_task_by_external_id(
        self, source_id: str, external_id: str
    ) -> TaskRecord | None: ...

    async def create_task(self, data: TaskCreate) -> TaskRecord | None: ...

    async def update_task(self, task_id: str, update: TaskUpdate) -> TaskRecord | None: ...

    async def update_task_source_last_synced(self, source_id: str) -> None: ...

    async def get_task_source(self, source_id: str) -> TaskSourceRecord | None: ...

    async def get_attachments_dir(self, task_id: str) -> Path: ...


class TokenProvider(Protocol):
    """Delegated-auth token source (OAuth), refreshed by the provider as needed."""

    async def get_valid_token(self, source_id: str) -> str | None: ...


@dataclass
class PluginContext:
    """Everything a plugin may touch besides its own configuration."""

    store: TaskStore
    source_id: str | None = None
    tool_caller: ToolCaller | None = None
    mcp_server: McpServerRecord | None = None
    token_provider: TokenProvider | None = None
    metadata_cache: MetadataCache = field(default_factory=MetadataCache)
    settings: Settings = field(default_factory=get_settings)
    # Shared transport and sleep hook; tests inject stubs here
    http_client: httpx.AsyncClient | None = None
    sleep: SleepFn | None = None

    def client_options(self) -> dict[str, Any]:
        """Keyword arguments for constructing a remote API client."""
        return {"http_client": self.http_client, "settings": self.settings, "sleep": self.sleep}
