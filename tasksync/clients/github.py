"""GitHub REST API client for repository issues."""

import logging
from datetime import datetime
from typing import Any, ClassVar

import httpx

from tasksync.clients.base import ApiClient

logger = logging.getLogger(__name__)

PER_PAGE = 100


def next_link(link_header: str | None) -> str | None:
    """Extract the rel="next" URL from a GitHub Link header."""
    if not link_header:
        return None
    for part in link_header.split(","):
        part = part.strip()
        if 'rel="next"' in part:
            url_part, _ = part.split(";", 1)
            return url_part.strip(" <>")
    return None


class GitHubClient(ApiClient):
    """Client for the GitHub v3 REST API."""

    system: ClassVar[str] = "github"
    base_url: ClassVar[str] = "https://api.github.com"

    def _default_headers(self) -> dict[str, str]:
        headers = super()._default_headers()
        headers["Accept"] = "application/vnd.github+json"
        headers["X-GitHub-Api-Version"] = "2022-11-28"
        return headers

    def _auth_error_message(self, response: httpx.Response) -> str:
        return "GitHub authentication failed. Check the access token and its repository scopes."

    async def _list(self, path: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Follow Link headers until the last page."""
        first_params = {"per_page": PER_PAGE, **(params or {})}

        async def fetch_page(url: str | None) -> tuple[list[dict[str, Any]], str | None]:
            # Subsequent pages carry their query string in the Link URL
            if url is None:
                response = await self.request_response("GET", path, params=first_params)
            else:
                response = await self.request_response("GET", url)
            items = response.json()
            return (items if isinstance(items, list) else []), next_link(response.headers.get("Link"))

        return await self.paginate(fetch_page)

    # ==================== Issues ====================

    async def list_issues(
        self,
        owner: str,
        repo: str,
        state: str = "open",
        since: datetime | None = None,
        assignee: str | None = None,
        labels: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """List repository issues, excluding pull requests."""
        params: dict[str, Any] = {"state": state, "sort": "updated", "direction": "desc"}
        if since:
            params["since"] = since.strftime("%Y-%m-%dT%H:%M:%SZ")
        if assignee:
            params["assignee"] = assignee
        if labels:
            params["labels"] = ",".join(labels)

        items = await self._list(f"/repos/{owner}/{repo}/issues", params)
        return [item for item in items if not item.get("pull_request")]

    async def get_issue(self, owner: str, repo: str, number: int | str) -> dict[str, Any] | None:
        return await self.request_json(
            "GET", f"/repos/{owner}/{repo}/issues/{number}", allow_not_found=True
        )

    async def update_issue(
        self, owner: str, repo: str, number: int | str, fields: dict[str, Any]
    ) -> dict[str, Any]:
        return await self.request_json(
            "PATCH", f"/repos/{owner}/{repo}/issues/{number}", json=fields
        )

    async def add_comment(self, owner: str, repo: str, number: int | str, body: str) -> dict[str, Any]:
        return await self.request_json(
            "POST", f"/repos/{owner}/{repo}/issues/{number}/comments", json={"body": body}
        )

    # ==================== Owners & repositories ====================

    async def get_authenticated_user(self) -> dict[str, Any]:
        return await self.request_json("GET", "/user")

    async def list_owners(self) -> list[str]:
        """The authenticated user's login followed by their organizations."""
        user = await self.get_authenticated_user()
        orgs = await self._list("/user/orgs")
        return [user["login"]] + [org["login"] for org in orgs]

    async def list_repos(self, owner: str) -> list[dict[str, Any]]:
        user = await self.get_authenticated_user()
        if user.get("login") == owner:
            return await self._list("/user/repos", {"affiliation": "owner", "sort": "updated"})
        return await self._list(f"/orgs/{owner}/repos", {"sort": "updated"})

    async def list_collaborators(self, owner: str, repo: str) -> list[dict[str, Any]]:
        return await self._list(f"/repos/{owner}/{repo}/collaborators")
