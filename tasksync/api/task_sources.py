"""API routes for plugins, task sources and tool servers."""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from tasksync.api.deps import get_sync_manager, http_error
from tasksync.errors import SourceError
from tasksync.models import (
    ConfigFieldOption,
    ConfigFieldSchema,
    FieldMapping,
    McpServerCreate,
    McpServerRecord,
    PluginAction,
    PluginMeta,
    PluginSyncResult,
    SourceUser,
    TaskSourceCreate,
    TaskSourceRecord,
    TaskSourceUpdate,
)
from tasksync.plugins import PluginRegistry
from tasksync.services.sync_manager import SyncManager

logger = logging.getLogger(__name__)

router = APIRouter()

Manager = Annotated[SyncManager, Depends(get_sync_manager)]


class OptionsRequest(BaseModel):
    """Request to resolve live choices for a dynamic-select field."""

    resolver_key: str
    config: dict[str, Any] = Field(default_factory=dict)
    source_id: str | None = None


class ValidateRequest(BaseModel):
    config: dict[str, Any] = Field(default_factory=dict)


class ValidateResponse(BaseModel):
    valid: bool
    error: str | None = None


# ==================== Plugins ====================


@router.get("/plugins", response_model=list[PluginMeta])
async def list_plugins() -> list[PluginMeta]:
    """List registered source plugins and their capabilities."""
    return PluginRegistry.list_plugins()


@router.get("/plugins/{plugin_id}/schema", response_model=list[ConfigFieldSchema])
async def get_config_schema(plugin_id: str, manager: Manager) -> list[ConfigFieldSchema]:
    try:
        return manager.get_plugin(plugin_id).get_config_schema()
    except SourceError as e:
        raise http_error(e)


@router.post("/plugins/{plugin_id}/options", response_model=list[ConfigFieldOption])
async def resolve_options(
    plugin_id: str, request: OptionsRequest, manager: Manager
) -> list[ConfigFieldOption]:
    """Resolve dropdown choices; failures yield an empty list."""
    try:
        return await manager.resolve_options(
            plugin_id, request.resolver_key, request.config, request.source_id
        )
    except SourceError as e:
        raise http_error(e)


@router.post("/plugins/{plugin_id}/validate", response_model=ValidateResponse)
async def validate_config(plugin_id: str, request: ValidateRequest, manager: Manager) -> ValidateResponse:
    try:
        error = manager.validate_config(plugin_id, request.config)
    except SourceError as e:
        raise http_error(e)
    return ValidateResponse(valid=error is None, error=error)


# ==================== Task sources ====================


@router.get("/task-sources", response_model=list[TaskSourceRecord])
async def list_task_sources(manager: Manager) -> list[TaskSourceRecord]:
    return await manager.store.list_task_sources()


@router.post("/task-sources", response_model=TaskSourceRecord, status_code=status.HTTP_201_CREATED)
async def create_task_source(data: TaskSourceCreate, manager: Manager) -> TaskSourceRecord:
    """Create a task source after validating its configuration."""
    try:
        error = manager.validate_config(data.plugin_id, data.config)
    except SourceError as e:
        raise http_error(e)
    if error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error)

    source = await manager.store.create_task_source(data)
    logger.info(f"Created task source {source.name} ({source.plugin_id})")
    return source


@router.get("/task-sources/{source_id}", response_model=TaskSourceRecord)
async def get_task_source(source_id: str, manager: Manager) -> TaskSourceRecord:
    source = await manager.store.get_task_source(source_id)
    if not source:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task source not found")
    return source


@router.patch("/task-sources/{source_id}", response_model=TaskSourceRecord)
async def update_task_source(
    source_id: str, data: TaskSourceUpdate, manager: Manager
) -> TaskSourceRecord:
    existing = await manager.store.get_task_source(source_id)
    if not existing:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task source not found")

    if data.config is not None:
        try:
            error = manager.validate_config(existing.plugin_id, data.config)
        except SourceError as e:
            raise http_error(e)
        if error:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error)
        # Config drives which metadata applies
        manager.metadata_cache.invalidate(source_id)

    return await manager.store.update_task_source(source_id, data)  # type: ignore[return-value]


@router.delete("/task-sources/{source_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task_source(source_id: str, manager: Manager) -> None:
    """Delete a source; its tasks are kept but unlinked."""
    if not await manager.store.delete_task_source(source_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task source not found")
    manager.metadata_cache.invalidate(source_id)


@router.post("/task-sources/{source_id}/sync", response_model=PluginSyncResult)
async def sync_task_source(source_id: str, manager: Manager) -> PluginSyncResult:
    """Import tasks from the source. Per-record failures are in ``errors``."""
    result = await manager.import_tasks(source_id)
    if result.errors == ["Task source not found"]:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task source not found")
    return result


@router.post("/task-sources/{source_id}/refresh-metadata", status_code=status.HTTP_204_NO_CONTENT)
async def refresh_metadata(source_id: str, manager: Manager) -> None:
    try:
        await manager.refresh_metadata(source_id)
    except SourceError as e:
        raise http_error(e)


@router.get("/task-sources/{source_id}/actions", response_model=list[PluginAction])
async def get_actions(source_id: str, manager: Manager) -> list[PluginAction]:
    try:
        return await manager.get_actions(source_id)
    except SourceError as e:
        raise http_error(e)


@router.get("/task-sources/{source_id}/field-mapping", response_model=list[FieldMapping])
async def get_field_mapping(source_id: str, manager: Manager) -> list[FieldMapping]:
    source = await manager.store.get_task_source(source_id)
    if not source:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task source not found")
    try:
        return manager.get_field_mapping(source.plugin_id, source.config)
    except SourceError as e:
        raise http_error(e)


@router.get("/task-sources/{source_id}/users", response_model=list[SourceUser])
async def get_users(source_id: str, manager: Manager) -> list[SourceUser]:
    try:
        return await manager.get_users(source_id)
    except SourceError as e:
        raise http_error(e)


# ==================== Tool servers ====================


@router.get("/mcp-servers", response_model=list[McpServerRecord])
async def list_mcp_servers(manager: Manager) -> list[McpServerRecord]:
    return await manager.store.list_mcp_servers()


@router.post("/mcp-servers", response_model=McpServerRecord, status_code=status.HTTP_201_CREATED)
async def create_mcp_server(data: McpServerCreate, manager: Manager) -> McpServerRecord:
    if data.type == "remote" and not data.url:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Remote servers need a URL")
    if data.type == "local" and not data.command:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Local servers need a command")
    return await manager.store.create_mcp_server(data)


@router.delete("/mcp-servers/{server_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_mcp_server(server_id: str, manager: Manager) -> None:
    if not await manager.store.delete_mcp_server(server_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="MCP server not found")
