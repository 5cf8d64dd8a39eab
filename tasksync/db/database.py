"""SQLite database connection and schema initialization."""

from pathlib import Path

import aiosqlite

# Global connection holder
_db_connection: aiosqlite.Connection | None = None


async def init_database(db_path: str) -> None:
    """Initialize the database connection and create schema."""
    global _db_connection

    # Ensure the data directory exists
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    _db_connection = await aiosqlite.connect(db_path)
    _db_connection.row_factory = aiosqlite.Row

    await _db_connection.execute("PRAGMA foreign_keys = ON")

    await _create_schema(_db_connection)


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection
    if _db_connection:
        await _db_connection.close()
        _db_connection = None


async def get_db() -> aiosqlite.Connection:
    """Get the database connection."""
    if _db_connection is None:
        raise RuntimeError("Database not initialized. Call init_database first.")
    return _db_connection


async def _create_schema(db: aiosqlite.Connection) -> None:
    """Create database tables and indexes."""
    # Tool servers used by tool-call sources
    await db.execute("""
        CREATE TABLE IF NOT EXISTS mcp_servers (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'remote',
            url TEXT,
            command TEXT,
            args_json TEXT NOT NULL DEFAULT '[]',
            headers_json TEXT NOT NULL DEFAULT '{}',
            environment_json TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    # Configured integrations
    await db.execute("""
        CREATE TABLE IF NOT EXISTS task_sources (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            plugin_id TEXT NOT NULL,
            config_json TEXT NOT NULL DEFAULT '{}',
            mcp_server_id TEXT,
            enabled INTEGER NOT NULL DEFAULT 1,
            last_synced_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (mcp_server_id) REFERENCES mcp_servers(id) ON DELETE SET NULL
        )
    """)

    # Tasks; deleting a source unlinks its tasks rather than dropping them
    await db.execute("""
        CREATE TABLE IF NOT EXISTS tasks (
            id TEXT PRIMARY KEY,
            external_id TEXT,
            source_id TEXT,
            source TEXT NOT NULL DEFAULT 'local',
            title TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            type TEXT NOT NULL DEFAULT 'general',
            priority TEXT NOT NULL DEFAULT 'medium',
            status TEXT NOT NULL DEFAULT 'not_started',
            assignee TEXT,
            due_date TEXT,
            labels_json TEXT NOT NULL DEFAULT '[]',
            attachments_json TEXT NOT NULL DEFAULT '[]',
            output_fields_json TEXT NOT NULL DEFAULT '[]',
            resolution TEXT,
            repos_json TEXT NOT NULL DEFAULT '[]',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (source_id) REFERENCES task_sources(id) ON DELETE SET NULL
        )
    """)

    # At most one local task per remote record
    await db.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_source_external
        ON tasks(source_id, external_id)
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_tasks_status
        ON tasks(status, updated_at)
    """)

    await db.commit()
