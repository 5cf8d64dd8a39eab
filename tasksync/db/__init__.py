"""Database module."""

from tasksync.db.database import close_database, get_db, init_database
from tasksync.db.task_store import SQLiteTaskStore, task_store

__all__ = ["get_db", "init_database", "close_database", "task_store", "SQLiteTaskStore"]
