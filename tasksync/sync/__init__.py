"""Sync orchestration shared by all task source plugins."""

from tasksync.sync.context import PluginContext, TaskStore, TokenProvider
from tasksync.sync.metadata_cache import MetadataCache
from tasksync.sync.orchestrator import SyncOrchestrator, SyncWindow, resolve_sync_window

__all__ = [
    "PluginContext",
    "TaskStore",
    "TokenProvider",
    "MetadataCache",
    "SyncOrchestrator",
    "SyncWindow",
    "resolve_sync_window",
]
