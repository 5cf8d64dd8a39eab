"""Pydantic models for local tasks and the sources they are imported from.

Tasks are owned by the local task store. Source plugins only ever read them
or submit partial updates; the (source_id, external_id) pair links a task to
the remote record it was imported from.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

# =============================================================================
# Enums
# =============================================================================


class TaskStatus(str, Enum):
    """Local task status."""

    NOT_STARTED = "not_started"
    AGENT_WORKING = "agent_working"
    READY_FOR_REVIEW = "ready_for_review"
    COMPLETED = "completed"


class TaskPriority(str, Enum):
    """Local task priority."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class OutputFieldType(str, Enum):
    """Value types an output field can hold."""

    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    EMAIL = "email"
    URL = "url"
    SELECT = "select"
    FILE = "file"


# =============================================================================
# Task components
# =============================================================================


class OutputFieldRecord(BaseModel):
    """A typed value a task expects before it can be completed."""

    id: str
    name: str
    type: OutputFieldType = OutputFieldType.TEXT
    value: Any = None
    options: list[str] | None = None
    required: bool = False
    multiple: bool = False


class FileAttachment(BaseModel):
    """A file stored in a task's attachments directory."""

    id: str
    filename: str
    size: int
    mime_type: str | None = None
    added_at: datetime
    # Identifier of the file in the remote system, used to avoid re-downloads
    external_file_id: str | None = None


# =============================================================================
# Tasks
# =============================================================================


class TaskRecord(BaseModel):
    """A task in the local tracker."""

    id: str
    external_id: str | None = None
    source_id: str | None = None
    source: str = Field("local", description="Display name of the originating source")
    title: str
    description: str = ""
    type: str = "general"
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.NOT_STARTED
    assignee: str | None = None
    due_date: str | None = None
    labels: list[str] = Field(default_factory=list)
    attachments: list[FileAttachment] = Field(default_factory=list)
    output_fields: list[OutputFieldRecord] = Field(default_factory=list)
    resolution: str | None = None
    repos: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @property
    def is_linked(self) -> bool:
        """Whether the task was imported from an external source."""
        return bool(self.source_id and self.external_id)


class TaskCreate(BaseModel):
    """Request to create a task."""

    title: str
    description: str = ""
    external_id: str | None = None
    source_id: str | None = None
    source: str = "local"
    type: str = "general"
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.NOT_STARTED
    assignee: str | None = None
    due_date: str | None = None
    labels: list[str] = Field(default_factory=list)
    output_fields: list[OutputFieldRecord] = Field(default_factory=list)
    resolution: str | None = None
    repos: list[str] = Field(default_factory=list)


class TaskUpdate(BaseModel):
    """Partial update to a task. Only explicitly set fields are applied."""

    title: str | None = None
    description: str | None = None
    type: str | None = None
    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    assignee: str | None = None
    due_date: str | None = None
    labels: list[str] | None = None
    attachments: list[FileAttachment] | None = None
    output_fields: list[OutputFieldRecord] | None = None
    resolution: str | None = None
    repos: list[str] | None = None


# =============================================================================
# Task sources
# =============================================================================


class TaskSourceRecord(BaseModel):
    """A configured integration instance for one external system."""

    id: str
    name: str
    plugin_id: str
    config: dict[str, Any] = Field(default_factory=dict)
    mcp_server_id: str | None = None
    enabled: bool = True
    last_synced_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class TaskSourceCreate(BaseModel):
    """Request to create a task source."""

    name: str = Field(..., min_length=1)
    plugin_id: str
    config: dict[str, Any] = Field(default_factory=dict)
    mcp_server_id: str | None = None


class TaskSourceUpdate(BaseModel):
    """Request to update a task source."""

    name: str | None = None
    config: dict[str, Any] | None = None
    mcp_server_id: str | None = None
    enabled: bool | None = None


# =============================================================================
# MCP servers
# =============================================================================


class McpServerRecord(BaseModel):
    """A tool server reached through the tool-calling layer."""

    id: str
    name: str
    type: Literal["local", "remote"] = "remote"
    url: str | None = None
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    environment: dict[str, str] = Field(default_factory=dict)


class McpServerCreate(BaseModel):
    """Request to register a tool server."""

    name: str = Field(..., min_length=1)
    type: Literal["local", "remote"] = "remote"
    url: str | None = None
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    environment: dict[str, str] = Field(default_factory=dict)
