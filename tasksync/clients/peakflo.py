"""Peakflo Workflo client.

Peakflo has no REST API of its own here; every call goes through the MCP
tool server configured for the source.
"""

import json
import logging
from typing import Any, ClassVar

from tasksync.clients.base import RemoteClient
from tasksync.clients.tool_caller import ToolCaller, unwrap_tool_result
from tasksync.errors import ToolCallError
from tasksync.models.task import McpServerRecord

logger = logging.getLogger(__name__)

PAGE_LIMIT = 100


def extract_tasks(payload: Any) -> tuple[list[dict[str, Any]], int | None]:
    """Task list and optional total from an unwrapped ``task_list`` payload."""
    if isinstance(payload, list):
        return payload, None
    if isinstance(payload, dict):
        tasks = payload.get("tasks")
        if tasks is None:
            tasks = payload.get("items")
        total = payload.get("total")
        return (tasks if isinstance(tasks, list) else []), (int(total) if total is not None else None)
    return [], None


class PeakfloClient(RemoteClient):
    """Calls Peakflo tools and pages ``task_list`` by offset."""

    system: ClassVar[str] = "peakflo"

    def __init__(self, tool_caller: ToolCaller, server: McpServerRecord, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._tool_caller = tool_caller
        self._server = server

    async def call(self, tool_name: str, args: dict[str, Any]) -> Any:
        """Call a tool and unwrap its payload.

        Raises:
            ToolCallError: On transport failures and application-level errors
        """
        result = await self._tool_caller.call_tool(self._server, tool_name, args)
        if not result.success:
            raise ToolCallError(result.error or f"{tool_name} call failed", system=self.system)
        return unwrap_tool_result(result.result)

    async def list_tasks(self, status: str | None = None) -> list[dict[str, Any]]:
        """All tasks, optionally limited to one workflow status.

        Paging stops on a short page or once ``total`` is reached.
        """

        async def fetch_page(offset: int | None) -> tuple[list[dict[str, Any]], int | None]:
            offset = offset or 0
            args: dict[str, Any] = {"limit": PAGE_LIMIT, "offset": offset}
            if status:
                args["status"] = status
            tasks, total = extract_tasks(await self.call("task_list", args))
            next_offset = offset + PAGE_LIMIT
            if len(tasks) < PAGE_LIMIT or (total is not None and next_offset >= total):
                return tasks, None
            return tasks, next_offset

        return await self.paginate(fetch_page)

    async def complete_task(self, task_id: str, outputs: dict[str, Any]) -> None:
        await self.call("task_complete", {"taskId": task_id, "outputs": json.dumps(outputs)})
        logger.info(f"Submitted Peakflo task {task_id} ({outputs.get('action')})")
