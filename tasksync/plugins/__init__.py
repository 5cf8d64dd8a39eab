"""Task source plugins.

Importing this package registers every built-in plugin with PluginRegistry.
"""

from tasksync.plugins.base import (
    CAPABILITIES,
    PluginRegistry,
    ReassignCapability,
    TaskSourcePlugin,
    UserDirectoryCapability,
    supports,
)
from tasksync.plugins.github_issues import GitHubIssuesPlugin
from tasksync.plugins.hubspot import HubSpotPlugin
from tasksync.plugins.linear import LinearPlugin
from tasksync.plugins.notion import NotionPlugin
from tasksync.plugins.peakflo import PeakfloPlugin

__all__ = [
    "CAPABILITIES",
    "PluginRegistry",
    "ReassignCapability",
    "TaskSourcePlugin",
    "UserDirectoryCapability",
    "supports",
    "GitHubIssuesPlugin",
    "HubSpotPlugin",
    "LinearPlugin",
    "NotionPlugin",
    "PeakfloPlugin",
]
