"""Pydantic models describing the task source plugin contract."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from tasksync.models.task import (
    OutputFieldRecord,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskUpdate,
)

# ==================== Enums ====================


class SourceKind(str, Enum):
    """The fixed set of source kinds a plugin can implement."""

    GITHUB_ISSUES = "github-issues"
    HUBSPOT = "hubspot"
    LINEAR = "linear"
    NOTION = "notion"
    PEAKFLO = "peakflo"


class ConfigFieldType(str, Enum):
    """Input types understood by the settings UI."""

    TEXT = "text"
    NUMBER = "number"
    CHECKBOX = "checkbox"
    SELECT = "select"
    DYNAMIC_SELECT = "dynamic-select"
    KEY_VALUE = "key-value"
    PASSWORD = "password"


class ActionVariant(str, Enum):
    """Visual emphasis of an action button."""

    DEFAULT = "default"
    DESTRUCTIVE = "destructive"
    OUTLINE = "outline"


# ==================== Config Schema ====================


class ConfigFieldOption(BaseModel):
    """One choice of a select field."""

    value: str
    label: str


class FieldDependency(BaseModel):
    """Show a field only when another field holds a given value."""

    field: str
    value: Any = None


class ConfigFieldSchema(BaseModel):
    """A single field of a plugin's configuration form."""

    key: str
    label: str
    type: ConfigFieldType
    placeholder: str | None = None
    required: bool = False
    default: Any = None
    description: str | None = None
    options: list[ConfigFieldOption] | None = None
    options_resolver: str | None = Field(
        None, description="Resolver key passed to resolve_options for live choices"
    )
    depends_on: FieldDependency | None = None


class FieldMapping(BaseModel):
    """Documents which remote path feeds a local field.

    The remote path may list alternatives separated by ``|``, e.g. ``taskId|id``.
    """

    local: str
    remote: str
    transform: str | None = None


# ==================== Actions ====================


class PluginAction(BaseModel):
    """A remote action a user can trigger on an imported task."""

    id: str
    label: str
    icon: str | None = None
    variant: ActionVariant = ActionVariant.DEFAULT
    requires_input: bool = False
    input_label: str | None = None
    input_placeholder: str | None = None


class ActionResult(BaseModel):
    """Outcome of execute_action.

    ``task_update`` lists the local fields the caller should apply after a
    successful remote action.
    """

    success: bool
    error: str | None = None
    task_update: TaskUpdate | None = None


# ==================== Sync ====================


class PluginSyncResult(BaseModel):
    """Counts and per-record errors accumulated by one import run."""

    imported: int = 0
    updated: int = 0
    errors: list[str] = Field(default_factory=list)


class MappedTask(BaseModel):
    """A remote record translated into local task vocabulary.

    Only explicitly set fields are written to an existing task, so a mapper
    can leave a field untouched by not setting it.
    """

    external_id: str
    title: str
    description: str | None = None
    type: str | None = None
    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    assignee: str | None = None
    due_date: str | None = None
    labels: list[str] | None = None
    resolution: str | None = None
    repos: list[str] | None = None
    output_fields: list[OutputFieldRecord] | None = None

    def to_create(self, source_id: str, source_name: str) -> TaskCreate:
        """Build the create request for a task that is not yet linked."""
        data = self.model_dump(exclude_unset=True, exclude_none=True)
        data.setdefault("status", TaskStatus.NOT_STARTED)
        return TaskCreate(**data, source_id=source_id, source=source_name)

    def to_update(self, include_status: bool = True) -> TaskUpdate:
        """Build the partial update for an already linked task."""
        exclude = {"external_id"}
        if not include_status:
            exclude.add("status")
        return TaskUpdate(**self.model_dump(exclude_unset=True, exclude=exclude))


# ==================== Plugin metadata & capabilities ====================


class PluginMeta(BaseModel):
    """Static description of a registered plugin."""

    id: SourceKind
    display_name: str
    description: str
    icon: str
    requires_mcp_server: bool = False
    capabilities: list[str] = Field(default_factory=list)


class SourceUser(BaseModel):
    """A user in the remote system's directory."""

    id: str
    email: str | None = None
    name: str


class ReassignResult(BaseModel):
    """Outcome of reassigning a task remotely."""

    success: bool
    error: str | None = None
