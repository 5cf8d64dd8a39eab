"""API routes for tasks: edits, plugin actions, reassignment and output extraction."""

import logging
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from tasksync.api.deps import get_sync_manager, http_error
from tasksync.errors import SourceError
from tasksync.models import (
    ActionResult,
    AgentMessage,
    ReassignResult,
    TaskCreate,
    TaskRecord,
    TaskStatus,
    TaskUpdate,
)
from tasksync.services.sync_manager import SyncManager

logger = logging.getLogger(__name__)

router = APIRouter()

Manager = Annotated[SyncManager, Depends(get_sync_manager)]


class ActionRequest(BaseModel):
    input: str | None = None


class ReassignRequest(BaseModel):
    user_ids: list[str] = Field(default_factory=list)


class ExtractOutputRequest(BaseModel):
    """Agent transcript to mine for output field values."""

    messages: list[AgentMessage]


async def _get_task_or_404(manager: SyncManager, task_id: str) -> TaskRecord:
    task = await manager.store.get_task(task_id)
    if not task:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return task


# ==================== Task CRUD ====================


@router.get("/tasks", response_model=list[TaskRecord])
async def list_tasks(
    manager: Manager,
    source_id: str | None = None,
    task_status: TaskStatus | None = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> list[TaskRecord]:
    return await manager.store.list_tasks(
        source_id=source_id, status=task_status, limit=limit, offset=offset
    )


@router.post("/tasks", response_model=TaskRecord, status_code=status.HTTP_201_CREATED)
async def create_task(data: TaskCreate, manager: Manager) -> TaskRecord:
    """Create a local task."""
    task = await manager.store.create_task(data)
    if task is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A task is already linked to this external record",
        )
    return task


@router.get("/tasks/{task_id}", response_model=TaskRecord)
async def get_task(task_id: str, manager: Manager) -> TaskRecord:
    return await _get_task_or_404(manager, task_id)


@router.patch("/tasks/{task_id}", response_model=TaskRecord)
async def update_task(
    task_id: str,
    data: TaskUpdate,
    manager: Manager,
    background_tasks: BackgroundTasks,
) -> TaskRecord:
    """Update a task locally; linked tasks push the change to their source afterwards."""
    task = await _get_task_or_404(manager, task_id)
    updated = await manager.store.update_task(task_id, data)

    changed_fields = data.model_dump(mode="json", exclude_unset=True)
    if task.is_linked and changed_fields:
        background_tasks.add_task(manager.export_task_update, task_id, changed_fields)
    return updated or task


@router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(task_id: str, manager: Manager) -> None:
    if not await manager.store.delete_task(task_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")


# ==================== Plugin operations ====================


@router.post("/tasks/{task_id}/actions/{action_id}", response_model=ActionResult)
async def execute_action(
    task_id: str, action_id: str, request: ActionRequest, manager: Manager
) -> ActionResult:
    """Run a source action. Remote failures are reported in ``error``."""
    try:
        return await manager.execute_action(task_id, action_id, request.input)
    except SourceError as e:
        raise http_error(e)


@router.post("/tasks/{task_id}/reassign", response_model=ReassignResult)
async def reassign_task(task_id: str, request: ReassignRequest, manager: Manager) -> ReassignResult:
    try:
        result = await manager.reassign_task(task_id, request.user_ids)
    except SourceError as e:
        raise http_error(e)
    if result.success and request.user_ids:
        logger.info(f"Task {task_id} reassigned to {request.user_ids}")
    return result


@router.post("/tasks/{task_id}/extract-output", response_model=TaskRecord)
async def extract_output(task_id: str, request: ExtractOutputRequest, manager: Manager) -> TaskRecord:
    """Fill the task's output fields from an agent transcript."""
    try:
        return await manager.extract_output_fields(task_id, request.messages)
    except SourceError as e:
        raise http_error(e)
