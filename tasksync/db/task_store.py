"""SQLiteTaskStore - SQLite persistence for tasks, task sources and tool servers."""

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from tasksync.db.database import get_db
from tasksync.db.secrets import decrypt_config, encrypt_config
from tasksync.models import (
    FileAttachment,
    McpServerCreate,
    McpServerRecord,
    OutputFieldRecord,
    TaskCreate,
    TaskPriority,
    TaskRecord,
    TaskSourceCreate,
    TaskSourceRecord,
    TaskSourceUpdate,
    TaskStatus,
    TaskUpdate,
)
from tasksync.models.plugin import ConfigFieldType
from tasksync.plugins import PluginRegistry
from tasksync.settings import get_settings

logger = logging.getLogger(__name__)

# TaskUpdate fields stored as JSON columns
_JSON_FIELDS = {"labels", "attachments", "output_fields", "repos"}


def _generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def _now() -> str:
    """Get current timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def _row_to_task(row: aiosqlite.Row) -> TaskRecord:
    """Convert a database row to a TaskRecord model."""
    return TaskRecord(
        id=row["id"],
        external_id=row["external_id"],
        source_id=row["source_id"],
        source=row["source"],
        title=row["title"],
        description=row["description"],
        type=row["type"],
        priority=TaskPriority(row["priority"]),
        status=TaskStatus(row["status"]),
        assignee=row["assignee"],
        due_date=row["due_date"],
        labels=json.loads(row["labels_json"] or "[]"),
        attachments=[FileAttachment(**a) for a in json.loads(row["attachments_json"] or "[]")],
        output_fields=[OutputFieldRecord(**f) for f in json.loads(row["output_fields_json"] or "[]")],
        resolution=row["resolution"],
        repos=json.loads(row["repos_json"] or "[]"),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_source(row: aiosqlite.Row) -> TaskSourceRecord:
    """Convert a database row to a TaskSourceRecord with secrets decrypted."""
    return TaskSourceRecord(
        id=row["id"],
        name=row["name"],
        plugin_id=row["plugin_id"],
        config=decrypt_config(json.loads(row["config_json"] or "{}")),
        mcp_server_id=row["mcp_server_id"],
        enabled=bool(row["enabled"]),
        last_synced_at=datetime.fromisoformat(row["last_synced_at"]) if row["last_synced_at"] else None,
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_mcp_server(row: aiosqlite.Row) -> McpServerRecord:
    return McpServerRecord(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        url=row["url"],
        command=row["command"],
        args=json.loads(row["args_json"] or "[]"),
        headers=json.loads(row["headers_json"] or "{}"),
        environment=json.loads(row["environment_json"] or "{}"),
    )


def _column_value(field: str, value: Any) -> Any:
    if field in _JSON_FIELDS:
        return json.dumps(
            [v.model_dump(mode="json") if hasattr(v, "model_dump") else v for v in value or []]
        )
    if hasattr(value, "value"):
        return value.value
    return value


def _secret_keys(plugin_id: str) -> set[str]:
    """Config keys the plugin declares as passwords."""
    plugin = PluginRegistry.get(plugin_id)
    if plugin is None:
        return set()
    return {f.key for f in plugin.get_config_schema() if f.type == ConfigFieldType.PASSWORD}


class SQLiteTaskStore:
    """Storage abstraction for tasks and their sources."""

    # ==================== Tasks ====================

    async def list_tasks(
        self,
        source_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[TaskRecord]:
        db = await get_db()

        conditions = []
        params: list = []
        if source_id:
            conditions.append("source_id = ?")
            params.append(source_id)
        if status:
            conditions.append("status = ?")
            params.append(status.value)
        where_clause = " AND ".join(conditions) if conditions else "1=1"

        cursor = await db.execute(
            f"SELECT * FROM tasks WHERE {where_clause} ORDER BY updated_at DESC LIMIT ? OFFSET ?",
            [*params, limit, offset],
        )
        return [_row_to_task(row) for row in await cursor.fetchall()]

    async def get_task(self, task_id: str) -> TaskRecord | None:
        db = await get_db()
        cursor = await db.execute("SELECT * FROM tasks WHERE id = ?", [task_id])
        row = await cursor.fetchone()
        return _row_to_task(row) if row else None

    async def get_task_by_external_id(self, source_id: str, external_id: str) -> TaskRecord | None:
        db = await get_db()
        cursor = await db.execute(
            "SELECT * FROM tasks WHERE source_id = ? AND external_id = ?",
            [source_id, external_id],
        )
        row = await cursor.fetchone()
        return _row_to_task(row) if row else None

    async def create_task(self, data: TaskCreate) -> TaskRecord | None:
        """Insert a task; returns None if its remote record is already linked."""
        db = await get_db()
        task_id = _generate_id()
        now = _now()

        try:
            await db.execute(
                """
                INSERT INTO tasks (
                    id, external_id, source_id, source, title, description, type,
                    priority, status, assignee, due_date, labels_json,
                    output_fields_json, resolution, repos_json, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    task_id,
                    data.external_id,
                    data.source_id,
                    data.source,
                    data.title,
                    data.description,
                    data.type,
                    data.priority.value,
                    data.status.value,
                    data.assignee,
                    data.due_date,
                    _column_value("labels", data.labels),
                    _column_value("output_fields", data.output_fields),
                    data.resolution,
                    _column_value("repos", data.repos),
                    now,
                    now,
                ],
            )
        except aiosqlite.IntegrityError as e:
            logger.warning(f"Task for {data.source_id}/{data.external_id} not created: {e}")
            return None
        await db.commit()
        return await self.get_task(task_id)

    async def update_task(self, task_id: str, update: TaskUpdate) -> TaskRecord | None:
        """Apply the explicitly set fields of ``update``."""
        db = await get_db()
        changes = update.model_dump(exclude_unset=True)
        # Only nullable columns accept None
        changes = {
            k: v for k, v in changes.items()
            if v is not None or k in ("assignee", "due_date", "resolution")
        }
        if not changes:
            return await self.get_task(task_id)

        columns = [f"{k}_json = ?" if k in _JSON_FIELDS else f"{k} = ?" for k in changes]
        params = [_column_value(k, getattr(update, k)) for k in changes]
        columns.append("updated_at = ?")
        params.extend([_now(), task_id])

        await db.execute(f"UPDATE tasks SET {', '.join(columns)} WHERE id = ?", params)
        await db.commit()
        return await self.get_task(task_id)

    async def delete_task(self, task_id: str) -> bool:
        db = await get_db()
        cursor = await db.execute("DELETE FROM tasks WHERE id = ?", [task_id])
        await db.commit()
        return cursor.rowcount > 0

    async def get_attachments_dir(self, task_id: str) -> Path:
        path = Path(get_settings().attachments_path) / task_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    # ==================== Task sources ====================

    async def list_task_sources(self) -> list[TaskSourceRecord]:
        db = await get_db()
        cursor = await db.execute("SELECT * FROM task_sources ORDER BY name ASC")
        return [_row_to_source(row) for row in await cursor.fetchall()]

    async def get_task_source(self, source_id: str) -> TaskSourceRecord | None:
        db = await get_db()
        cursor = await db.execute("SELECT * FROM task_sources WHERE id = ?", [source_id])
        row = await cursor.fetchone()
        return _row_to_source(row) if row else None

    async def create_task_source(self, data: TaskSourceCreate) -> TaskSourceRecord:
        db = await get_db()
        source_id = _generate_id()
        now = _now()
        config = encrypt_config(data.config, _secret_keys(data.plugin_id))

        await db.execute(
            """
            INSERT INTO task_sources (
                id, name, plugin_id, config_json, mcp_server_id, enabled, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, 1, ?, ?)
            """,
            [source_id, data.name, data.plugin_id, json.dumps(config), data.mcp_server_id, now, now],
        )
        await db.commit()
        return await self.get_task_source(source_id)  # type: ignore

    async def update_task_source(
        self, source_id: str, data: TaskSourceUpdate
    ) -> TaskSourceRecord | None:
        db = await get_db()

        existing = await self.get_task_source(source_id)
        if not existing:
            return None

        updates = []
        params: list = []

        if data.name is not None:
            updates.append("name = ?")
            params.append(data.name)

        if data.config is not None:
            updates.append("config_json = ?")
            params.append(json.dumps(encrypt_config(data.config, _secret_keys(existing.plugin_id))))

        if "mcp_server_id" in data.model_fields_set:
            updates.append("mcp_server_id = ?")
            params.append(data.mcp_server_id)

        if data.enabled is not None:
            updates.append("enabled = ?")
            params.append(int(data.enabled))

        if not updates:
            return existing

        updates.append("updated_at = ?")
        params.extend([_now(), source_id])

        await db.execute(f"UPDATE task_sources SET {', '.join(updates)} WHERE id = ?", params)
        await db.commit()
        return await self.get_task_source(source_id)

    async def update_task_source_last_synced(self, source_id: str) -> None:
        db = await get_db()
        now = _now()
        await db.execute(
            "UPDATE task_sources SET last_synced_at = ?, updated_at = ? WHERE id = ?",
            [now, now, source_id],
        )
        await db.commit()

    async def delete_task_source(self, source_id: str) -> bool:
        db = await get_db()
        cursor = await db.execute("DELETE FROM task_sources WHERE id = ?", [source_id])
        await db.commit()
        return cursor.rowcount > 0

    # ==================== Tool servers ====================

    async def list_mcp_servers(self) -> list[McpServerRecord]:
        db = await get_db()
        cursor = await db.execute("SELECT * FROM mcp_servers ORDER BY name ASC")
        return [_row_to_mcp_server(row) for row in await cursor.fetchall()]

    async def get_mcp_server(self, server_id: str) -> McpServerRecord | None:
        db = await get_db()
        cursor = await db.execute("SELECT * FROM mcp_servers WHERE id = ?", [server_id])
        row = await cursor.fetchone()
        return _row_to_mcp_server(row) if row else None

    async def create_mcp_server(self, data: McpServerCreate) -> McpServerRecord:
        db = await get_db()
        server_id = _generate_id()
        now = _now()

        await db.execute(
            """
            INSERT INTO mcp_servers (
                id, name, type, url, command, args_json, headers_json, environment_json,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                server_id,
                data.name,
                data.type,
                data.url,
                data.command,
                json.dumps(data.args),
                json.dumps(data.headers),
                json.dumps(data.environment),
                now,
                now,
            ],
        )
        await db.commit()
        return await self.get_mcp_server(server_id)  # type: ignore

    async def delete_mcp_server(self, server_id: str) -> bool:
        db = await get_db()
        cursor = await db.execute("DELETE FROM mcp_servers WHERE id = ?", [server_id])
        await db.commit()
        return cursor.rowcount > 0


# Singleton instance
task_store = SQLiteTaskStore()
