"""Remote API clients for external task sources."""

from tasksync.clients.base import ApiClient, RemoteClient, parse_retry_after
from tasksync.clients.github import GitHubClient
from tasksync.clients.hubspot import HubSpotClient
from tasksync.clients.notion import NotionClient
from tasksync.clients.tool_caller import McpToolCaller, ToolCaller, ToolCallResult, unwrap_tool_result

__all__ = [
    "ApiClient",
    "RemoteClient",
    "parse_retry_after",
    "GitHubClient",
    "HubSpotClient",
    "NotionClient",
    "McpToolCaller",
    "ToolCaller",
    "ToolCallResult",
    "unwrap_tool_result",
]
