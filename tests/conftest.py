"""Pytest configuration and fixtures."""

import os
import tempfile
from collections.abc import AsyncGenerator, Callable
from typing import Any

# Settings are read once per process, so point them at scratch paths before importing the app
_scratch_dir = tempfile.mkdtemp(prefix="tasksync-tests-")
os.environ.setdefault("DATABASE_PATH", os.path.join(_scratch_dir, "tasksync.db"))
os.environ.setdefault("ATTACHMENTS_PATH", os.path.join(_scratch_dir, "attachments"))
os.environ.setdefault("SECRETS_KEY", "test-secrets-key")

import httpx  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from tasksync.db.database import close_database, init_database  # noqa: E402
from tasksync.db.task_store import SQLiteTaskStore  # noqa: E402
from tasksync.main import app  # noqa: E402
from tasksync.models import TaskSourceCreate  # noqa: E402
from tasksync.settings import Settings  # noqa: E402
from tasksync.sync.context import PluginContext  # noqa: E402


@pytest.fixture(autouse=True)
async def setup_test_db():
    """Set up a test database for each test."""
    # Create a temporary database file
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    # Initialize the database
    await init_database(db_path)

    yield

    # Clean up
    await close_database()
    os.unlink(db_path)


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with no inter-page delay and a small retry budget."""
    return Settings(
        database_path=str(tmp_path / "unused.db"),
        attachments_path=str(tmp_path / "attachments"),
        page_delay_seconds=0,
        max_retries=3,
        lookback_hours=24,
    )


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def store() -> SQLiteTaskStore:
    return SQLiteTaskStore()


def mock_http(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    """An httpx client whose requests are answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def make_context(store, settings, sleep) -> Callable[..., PluginContext]:
    """Build a PluginContext wired to the test store, settings and sleep hook."""

    def _make(source_id: str | None = None, **kwargs: Any) -> PluginContext:
        return PluginContext(store=store, source_id=source_id, settings=settings, sleep=sleep, **kwargs)

    return _make


@pytest.fixture
def create_source(store) -> Callable[..., Any]:
    """Create a task source in the test database."""

    async def _create(plugin_id: str, config: dict[str, Any], **kwargs: Any):
        return await store.create_task_source(
            TaskSourceCreate(name=kwargs.pop("name", f"{plugin_id} source"), plugin_id=plugin_id, config=config, **kwargs)
        )

    return _create
