"""FastAPI application entry point."""

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tasksync import __version__
from tasksync.db.database import close_database, init_database
from tasksync.settings import get_settings

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup and shutdown."""
    await init_database(settings.database_path)
    logger.info(f"Task sync service started (database: {settings.database_path})")

    yield

    await close_database()


app = FastAPI(
    title="Task Sync",
    description="Keep local tasks in sync with external issue trackers, CRMs and workflow tools",
    version=__version__,
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


# Import and include routers after app is created to avoid circular imports
from tasksync.api import task_sources, tasks  # noqa: E402

app.include_router(task_sources.router, prefix="/api/v1", tags=["task-sources"])
app.include_router(tasks.router, prefix="/api/v1", tags=["tasks"])
