"""Tests for the import/reconciliation orchestrator."""

from datetime import datetime, timedelta, timezone

import pytest

from tasksync.models import MappedTask, TaskStatus, TaskUpdate
from tasksync.sync.orchestrator import SyncOrchestrator, SyncWindow, resolve_sync_window


def _record(external_id: str, title: str, status: str = "open") -> dict:
    return {"id": external_id, "title": title, "status": status}


async def _map(record: dict) -> MappedTask:
    if record.get("broken"):
        raise ValueError("record is malformed")
    return MappedTask(
        external_id=record["id"],
        title=record["title"],
        status=TaskStatus.COMPLETED if record["status"] == "done" else TaskStatus.NOT_STARTED,
    )


def _orchestrator(ctx, source_id, records, windows=None, **kwargs) -> SyncOrchestrator:
    async def fetch(window: SyncWindow) -> list[dict]:
        if windows is not None:
            windows.append(window)
        return list(records)

    return SyncOrchestrator(
        ctx,
        source_id,
        fetch=fetch,
        map_record=kwargs.pop("map_record", _map),
        describe=lambda r: f'"{r.get("title")}"',
        **kwargs,
    )


class TestResolveSyncWindow:
    """Tests for choosing the sync window."""

    def test_first_sync_is_full(self):
        window = resolve_sync_window(None)
        assert window.open_only
        assert not window.is_incremental

    def test_recent_sync_uses_lookback(self):
        now = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
        window = resolve_sync_window(now - timedelta(hours=1), lookback_hours=24, now=now)
        assert window.modified_after == now - timedelta(hours=24)
        assert window.is_incremental

    def test_old_sync_reaches_back_to_last_sync(self):
        now = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
        last = now - timedelta(days=3)
        assert resolve_sync_window(last, lookback_hours=24, now=now).modified_after == last

    def test_naive_timestamp_treated_as_utc(self):
        now = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
        last = datetime(2024, 5, 1, 12, 0)
        window = resolve_sync_window(last, now=now)
        assert window.modified_after == last.replace(tzinfo=timezone.utc)


class TestSyncOrchestrator:
    """Tests for SyncOrchestrator.run."""

    @pytest.fixture
    async def source(self, create_source):
        return await create_source("peakflo", {})

    async def test_first_run_imports_records(self, store, make_context, source):
        records = [_record("a", "First"), _record("b", "Second")]
        windows: list[SyncWindow] = []

        result = await _orchestrator(make_context(source.id), source.id, records, windows).run()

        assert result.imported == 2
        assert result.updated == 0
        assert result.errors == []
        assert windows[0].open_only

        tasks = await store.list_tasks(source_id=source.id)
        assert sorted(t.title for t in tasks) == ["First", "Second"]
        assert all(t.source == source.name for t in tasks)

    async def test_rerun_updates_without_duplicating(self, store, make_context, source):
        ctx = make_context(source.id)
        await _orchestrator(ctx, source.id, [_record("a", "First")]).run()

        result = await _orchestrator(ctx, source.id, [_record("a", "First, renamed")]).run()

        assert result.imported == 0
        assert result.updated == 1
        tasks = await store.list_tasks(source_id=source.id)
        assert len(tasks) == 1
        assert tasks[0].title == "First, renamed"

    async def test_second_run_is_incremental(self, store, make_context, source):
        ctx = make_context(source.id)
        windows: list[SyncWindow] = []
        await _orchestrator(ctx, source.id, [], windows).run()
        await _orchestrator(ctx, source.id, [], windows).run()

        assert windows[0].open_only
        assert windows[1].is_incremental
        refreshed = await store.get_task_source(source.id)
        assert refreshed.last_synced_at is not None

    async def test_record_failure_does_not_abort_batch(self, store, make_context, source):
        records = [
            _record("a", "Good one"),
            {"id": "b", "title": "Bad one", "status": "open", "broken": True},
            _record("c", "Good two"),
        ]

        result = await _orchestrator(make_context(source.id), source.id, records).run()

        assert result.imported == 2
        assert len(result.errors) == 1
        assert '"Bad one"' in result.errors[0]
        assert "record is malformed" in result.errors[0]

    async def test_fetch_failure_reports_and_keeps_sync_time(self, store, make_context, source):
        async def fetch(window):
            raise RuntimeError("service unavailable")

        orchestrator = SyncOrchestrator(
            make_context(source.id), source.id, fetch=fetch, map_record=_map, describe=str
        )
        result = await orchestrator.run()

        assert result.errors == ["Import failed: service unavailable"]
        refreshed = await store.get_task_source(source.id)
        assert refreshed.last_synced_at is None

    async def test_unknown_source(self, make_context):
        result = await _orchestrator(make_context("missing"), "missing", []).run()
        assert result.errors == ["Task source not found"]

    async def test_mapper_returning_none_skips_silently(self, store, make_context, source):
        async def map_record(record):
            return None if record["id"] == "skip" else await _map(record)

        records = [_record("skip", "Archived"), _record("a", "Kept")]
        result = await _orchestrator(make_context(source.id), source.id, records, map_record=map_record).run()

        assert result.imported == 1
        assert result.errors == []


class TestCompletedRecords:
    """Tests for the rule that completed records only close open tasks."""

    @pytest.fixture
    async def source(self, create_source):
        return await create_source("peakflo", {})

    async def test_new_completed_record_is_not_imported(self, store, make_context, source):
        result = await _orchestrator(make_context(source.id), source.id, [_record("a", "Done", "done")]).run()

        assert result.imported == 0
        assert await store.list_tasks(source_id=source.id) == []

    async def test_completed_record_closes_open_task(self, store, make_context, source):
        ctx = make_context(source.id)
        await _orchestrator(ctx, source.id, [_record("a", "Task")]).run()

        result = await _orchestrator(ctx, source.id, [_record("a", "Task", "done")]).run()

        assert result.updated == 1
        task = await store.get_task_by_external_id(source.id, "a")
        assert task.status == TaskStatus.COMPLETED

    async def test_completed_record_for_completed_task_is_skipped(self, store, make_context, source):
        ctx = make_context(source.id)
        await _orchestrator(ctx, source.id, [_record("a", "Task")]).run()
        task = await store.get_task_by_external_id(source.id, "a")
        await store.update_task(task.id, TaskUpdate(status=TaskStatus.COMPLETED, title="Local title"))

        result = await _orchestrator(ctx, source.id, [_record("a", "Remote title", "done")]).run()

        assert result.updated == 0
        assert (await store.get_task(task.id)).title == "Local title"

    async def test_skip_can_be_disabled(self, store, make_context, source, settings):
        settings.skip_completed = False
        result = await _orchestrator(make_context(source.id), source.id, [_record("a", "Done", "done")]).run()
        assert result.imported == 1


class TestOrchestratorOptions:
    """Tests for source_name, update_status and after_upsert."""

    @pytest.fixture
    async def source(self, create_source):
        return await create_source("peakflo", {})

    async def test_source_name_override(self, store, make_context, source):
        await _orchestrator(make_context(source.id), source.id, [_record("a", "A")], source_name="Remote").run()
        assert (await store.get_task_by_external_id(source.id, "a")).source == "Remote"

    async def test_local_status_preserved_when_status_updates_disabled(self, store, make_context, source):
        ctx = make_context(source.id)
        await _orchestrator(ctx, source.id, [_record("a", "A")], update_status=False).run()
        task = await store.get_task_by_external_id(source.id, "a")
        await store.update_task(task.id, TaskUpdate(status=TaskStatus.AGENT_WORKING))

        await _orchestrator(ctx, source.id, [_record("a", "A2")], update_status=False).run()

        task = await store.get_task(task.id)
        assert task.status == TaskStatus.AGENT_WORKING
        assert task.title == "A2"

    async def test_after_upsert_receives_task_and_record(self, make_context, source):
        seen = []

        async def after_upsert(task, record):
            seen.append((task.external_id, record["title"]))

        await _orchestrator(
            make_context(source.id), source.id, [_record("a", "A"), _record("b", "B")], after_upsert=after_upsert
        ).run()

        assert seen == [("a", "A"), ("b", "B")]

    async def test_after_upsert_failure_is_recorded(self, make_context, source):
        async def after_upsert(task, record):
            raise RuntimeError("attachment download failed")

        result = await _orchestrator(
            make_context(source.id), source.id, [_record("a", "A")], after_upsert=after_upsert
        ).run()

        assert result.imported == 1
        assert "attachment download failed" in result.errors[0]
