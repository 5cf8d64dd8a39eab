"""Import/reconciliation of remote records into local tasks.

Every plugin's import_tasks runs the same algorithm:
1. Pick the sync window from the source's last_synced_at
2. Fetch all matching remote records (the plugin applies its filters)
3. Map each record, look up its linked task, then update or create it
4. Collect per-record failures without aborting the batch
5. Record the sync time once the fetch has completed
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Generic, TypeVar

from tasksync.models.plugin import MappedTask, PluginSyncResult
from tasksync.models.task import TaskRecord, TaskStatus
from tasksync.sync.context import PluginContext

logger = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass(frozen=True)
class SyncWindow:
    """Which remote records a run should fetch.

    A full sync (first run) fetches open records only. An incremental sync
    fetches open and closed records modified at or after ``modified_after``.
    """

    modified_after: datetime | None = None

    @property
    def is_incremental(self) -> bool:
        return self.modified_after is not None

    @property
    def open_only(self) -> bool:
        return self.modified_after is None


def resolve_sync_window(
    last_synced_at: datetime | None,
    lookback_hours: int = 24,
    now: datetime | None = None,
) -> SyncWindow:
    """Choose the window for the next run.

    The incremental window starts ``lookback_hours`` before now, or at the
    previous sync if that was longer ago, so a gap between runs never drops
    changes.
    """
    if last_synced_at is None:
        return SyncWindow()
    now = now or datetime.now(timezone.utc)
    if last_synced_at.tzinfo is None:
        last_synced_at = last_synced_at.replace(tzinfo=timezone.utc)
    return SyncWindow(modified_after=min(now - timedelta(hours=lookback_hours), last_synced_at))


class SyncOrchestrator(Generic[R]):
    """Runs one import for one task source.

    Args:
        ctx: Plugin context (store, settings)
        source_id: Task source being synced
        fetch: Returns every remote record for the window, in remote order
        map_record: Translates a record; returning None skips it silently
        describe: Short label for a record, used in error messages
        source_name: Display name stored on created tasks (defaults to the source's name)
        update_status: Whether updates to linked tasks may change their status
        after_upsert: Called with the stored task and its record after each upsert
    """

    def __init__(
        self,
        ctx: PluginContext,
        source_id: str,
        *,
        fetch: Callable[[SyncWindow], Awaitable[list[R]]],
        map_record: Callable[[R], Awaitable[MappedTask | None]],
        describe: Callable[[R], str],
        source_name: str | None = None,
        update_status: bool = True,
        after_upsert: Callable[[TaskRecord, R], Awaitable[None]] | None = None,
    ) -> None:
        self._ctx = ctx
        self._store = ctx.store
        self._source_id = source_id
        self._fetch = fetch
        self._map_record = map_record
        self._describe = describe
        self._source_name = source_name
        self._update_status = update_status
        self._after_upsert = after_upsert

    async def run(self) -> PluginSyncResult:
        result = PluginSyncResult()

        source = await self._store.get_task_source(self._source_id)
        if source is None:
            result.errors.append("Task source not found")
            return result
        source_name = self._source_name or source.name

        window = resolve_sync_window(source.last_synced_at, self._ctx.settings.lookback_hours)
        logger.info(
            f"Syncing source {source.name} ({self._source_id}): "
            + (f"incremental since {window.modified_after.isoformat()}" if window.modified_after else "full, open records only")
        )

        try:
            records = await self._fetch(window)
        except Exception as e:
            logger.error(f"Fetching records for source {self._source_id} failed: {e}")
            result.errors.append(f"Import failed: {e}")
            return result

        for record in records:
            await self._process(record, source_name, result)

        await self._store.update_task_source_last_synced(self._source_id)
        logger.info(
            f"Sync of {source.name} finished: {result.imported} imported, "
            f"{result.updated} updated, {len(result.errors)} error(s)"
        )
        return result

    async def _process(self, record: R, source_name: str, result: PluginSyncResult) -> None:
        try:
            mapped = await self._map_record(record)
            if mapped is None:
                return

            existing = await self._store.get_task_by_external_id(self._source_id, mapped.external_id)
            if self._should_skip(mapped, existing):
                logger.debug(f"Skipping completed record {mapped.external_id}")
                return

            if existing is not None:
                task = await self._store.update_task(
                    existing.id, mapped.to_update(include_status=self._update_status)
                )
                result.updated += 1
                task = task or existing
            else:
                task = await self._store.create_task(mapped.to_create(self._source_id, source_name))
                if task is None:
                    raise RuntimeError("task store rejected the new task")
                result.imported += 1

            if self._after_upsert is not None:
                await self._after_upsert(task, record)
        except Exception as e:
            label = self._label(record)
            logger.warning(f"Failed to import {label}: {e}")
            result.errors.append(f"Failed to import {label}: {e}")

    def _should_skip(self, mapped: MappedTask, existing: TaskRecord | None) -> bool:
        """Completed records are skipped unless they close a task that is still open locally."""
        if not self._ctx.settings.skip_completed or mapped.status != TaskStatus.COMPLETED:
            return False
        return existing is None or existing.status == TaskStatus.COMPLETED

    def _label(self, record: R) -> str:
        try:
            return self._describe(record)
        except Exception:
            return "record"
