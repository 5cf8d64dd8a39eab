"""Pydantic models for tasksync."""

from tasksync.models.agent import AgentMessage, MessageInfo, MessagePart, ToolState
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
    PluginMeta,
    PluginSyncResult,
    ReassignResult,
    SourceKind,
    SourceUser,
)
from tasksync.models.task import (
    FileAttachment,
    McpServerCreate,
    McpServerRecord,
    OutputFieldRecord,
    OutputFieldType,
    TaskCreate,
    TaskPriority,
    TaskRecord,
    TaskSourceCreate,
    TaskSourceRecord,
    TaskSourceUpdate,
    TaskStatus,
    TaskUpdate,
)

__all__ = [
    # Tasks
    "TaskRecord",
    "TaskCreate",
    "TaskUpdate",
    "TaskStatus",
    "TaskPriority",
    "OutputFieldRecord",
    "OutputFieldType",
    "FileAttachment",
    # Sources
    "TaskSourceRecord",
    "TaskSourceCreate",
    "TaskSourceUpdate",
    "McpServerRecord",
    "McpServerCreate",
    # Plugin contract
    "SourceKind",
    "ConfigFieldType",
    "ConfigFieldOption",
    "ConfigFieldSchema",
    "FieldDependency",
    "FieldMapping",
    "PluginAction",
    "ActionVariant",
    "ActionResult",
    "PluginSyncResult",
    "MappedTask",
    "PluginMeta",
    "SourceUser",
    "ReassignResult",
    # Agent transcripts
    "AgentMessage",
    "MessageInfo",
    "MessagePart",
    "ToolState",
]
