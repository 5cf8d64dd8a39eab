"""Application services."""

from tasksync.services.sync_manager import SyncManager, sync_manager

__all__ = ["SyncManager", "sync_manager"]
