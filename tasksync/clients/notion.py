"""Notion API client for database-backed task lists.

Uses the official notion-client SDK for transport, adding the shared
pagination, inter-page delay and rate-limit retry rules on top.
"""

import logging
from datetime import datetime, timezone
from typing import Any, ClassVar

import httpx
from notion_client import AsyncClient
from notion_client.errors import HTTPResponseError, RequestTimeoutError

from tasksync.clients.base import RemoteClient, SleepFn, parse_retry_after
from tasksync.errors import AuthenticationError, RateLimitError, TransportError
from tasksync.settings import Settings

logger = logging.getLogger(__name__)

NOTION_VERSION = "2022-06-28"
PAGE_SIZE = 100


class NotionClient(RemoteClient):
    """Client for the Notion REST API (pinned to version 2022-06-28)."""

    system: ClassVar[str] = "notion"

    def __init__(
        self,
        token: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        super().__init__(settings=settings, sleep=sleep)
        self._owns_client = http_client is None
        # Rate limits are retried here with the shared backoff, not by the SDK
        self._sdk = AsyncClient(
            client=http_client,
            auth=token,
            notion_version=NOTION_VERSION,
            timeout_ms=int(self._settings.http_timeout_seconds * 1000),
            retry=False,
            logger=logging.getLogger("notion_client"),
        )

    async def __aenter__(self) -> "NotionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._sdk.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> Any:
        for attempt in range(self.max_retries + 1):
            try:
                return await self._sdk.request(path=path, method=method, query=query, body=body)
            except RequestTimeoutError as e:
                raise TransportError(f"Notion request timed out: {method} {path}", system=self.system) from e
            except HTTPResponseError as e:
                if e.status == 401:
                    raise AuthenticationError(
                        "Notion authentication failed. Check your integration token.",
                        system=self.system,
                    ) from e
                if e.status == 403:
                    raise AuthenticationError(
                        "Notion access forbidden. Make sure the database is shared with your integration.",
                        system=self.system,
                    ) from e
                if e.status == 404 and allow_not_found:
                    return None
                if e.status == 429:
                    retry_after = e.headers.get("Retry-After")
                    if attempt < self.max_retries:
                        await self._backoff(retry_after, attempt, f"{method} {path}")
                        continue
                    raise RateLimitError(
                        f"Notion rate limit exceeded after {self.max_retries} retries",
                        retry_after=parse_retry_after(retry_after),
                        system=self.system,
                    ) from e
                raise TransportError(
                    f"Notion API error: {e.status} {e}", status_code=e.status, system=self.system
                ) from e
            except httpx.HTTPError as e:
                raise TransportError(f"Notion request failed: {e}", system=self.system) from e

        raise TransportError(f"Notion request failed: {method} {path}", system=self.system)

    async def _collect(
        self, method: str, path: str, body: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Follow Notion's start_cursor/has_more pagination."""

        async def fetch_page(cursor: str | None) -> tuple[list[dict[str, Any]], str | None]:
            if method == "GET":
                query: dict[str, Any] = {"page_size": PAGE_SIZE}
                if cursor:
                    query["start_cursor"] = cursor
                data = await self._request(method, path, query=query)
            else:
                payload = {**(body or {}), "page_size": PAGE_SIZE}
                if cursor:
                    payload["start_cursor"] = cursor
                data = await self._request(method, path, body=payload)
            next_cursor = data.get("next_cursor") if data.get("has_more") else None
            return data.get("results", []), next_cursor

        return await self.paginate(fetch_page)

    # ==================== Databases & pages ====================

    async def search_databases(self) -> list[dict[str, Any]]:
        """List databases shared with the integration."""
        return await self._collect(
            "POST", "search", {"filter": {"property": "object", "value": "database"}}
        )

    async def get_database(self, database_id: str) -> dict[str, Any]:
        return await self._request("GET", f"databases/{database_id}")

    async def query_all_pages(
        self,
        database_id: str,
        filter: dict[str, Any] | None = None,
        edited_after: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """Query every page of a database.

        The user filter and the last-edited window are combined into one flat
        ``and`` so the request stays within Notion's nesting limit.
        """
        clauses: list[dict[str, Any]] = []
        if filter:
            clauses.extend(filter["and"] if "and" in filter else [filter])
        if edited_after is not None:
            if edited_after.tzinfo is None:
                edited_after = edited_after.replace(tzinfo=timezone.utc)
            clauses.append(
                {
                    "timestamp": "last_edited_time",
                    "last_edited_time": {"on_or_after": edited_after.isoformat()},
                }
            )

        body: dict[str, Any] = {}
        if len(clauses) == 1:
            body["filter"] = clauses[0]
        elif clauses:
            body["filter"] = {"and": clauses}

        logger.debug(f"Notion query filter for {database_id}: {body.get('filter')}")
        return await self._collect("POST", f"databases/{database_id}/query", body)

    async def update_page(self, page_id: str, properties: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PATCH", f"pages/{page_id}", body={"properties": properties})

    async def get_page_content(self, page_id: str, max_depth: int = 2) -> str:
        """Render a page's blocks as markdown, following children up to max_depth levels."""
        blocks = await self._fetch_blocks(page_id, max_depth)
        return blocks_to_markdown(blocks)

    async def _fetch_blocks(self, block_id: str, depth: int) -> list[dict[str, Any]]:
        blocks = await self._collect("GET", f"blocks/{block_id}/children")
        if depth > 0:
            for block in blocks:
                if block.get("has_children"):
                    block["_children"] = await self._fetch_blocks(block["id"], depth - 1)
        return blocks

    # ==================== Users ====================

    async def get_users(self) -> list[dict[str, Any]]:
        return await self._collect("GET", "users")


# ==================== Markdown rendering ====================


def _rich_text(block: dict[str, Any]) -> str:
    data = block.get(block.get("type", "")) or {}
    return "".join(t.get("plain_text", "") for t in data.get("rich_text") or [])


def blocks_to_markdown(blocks: list[dict[str, Any]], indent: str = "") -> str:
    """Convert Notion blocks (with fetched ``_children``) to markdown."""
    lines: list[str] = []
    for block in blocks:
        text = _rich_text(block)
        block_type = block.get("type")

        if block_type == "paragraph":
            lines.append(indent + text)
        elif block_type in ("heading_1", "heading_2", "heading_3"):
            lines.append(f"{indent}{'#' * int(block_type[-1])} {text}")
        elif block_type == "bulleted_list_item":
            lines.append(f"{indent}- {text}")
        elif block_type == "numbered_list_item":
            lines.append(f"{indent}1. {text}")
        elif block_type == "to_do":
            checked = "x" if (block.get("to_do") or {}).get("checked") else " "
            lines.append(f"{indent}- [{checked}] {text}")
        elif block_type == "toggle":
            lines.append(f"{indent}**{text}**")
        elif block_type == "code":
            language = (block.get("code") or {}).get("language") or ""
            lines.append(f"{indent}```{language}\n{text}\n```")
        elif block_type in ("quote", "callout"):
            lines.append(f"{indent}> {text}")
        elif block_type == "divider":
            lines.append(f"{indent}---")
        elif text:
            lines.append(indent + text)

        children = block.get("_children")
        if children:
            lines.append(blocks_to_markdown(children, indent))

    return "\n\n".join(lines)
