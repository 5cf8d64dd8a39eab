"""Linear GraphQL API client for issues, teams, workflow states and users.

Connections are paged with Relay cursors: each page reports
``pageInfo.hasNextPage`` and ``pageInfo.endCursor``, and the cursor is passed
back as ``after``.
"""

import logging
from datetime import datetime
from typing import Any, ClassVar

import httpx

from tasksync.clients.base import ApiClient
from tasksync.errors import SourceError

logger = logging.getLogger(__name__)

PAGE_SIZE = 50

# Workflow state types that mean the issue is finished
CLOSED_STATE_TYPES = ("completed", "canceled")

ISSUE_FIELDS = """
    id
    identifier
    title
    description
    url
    priority
    dueDate
    createdAt
    updatedAt
    state { id name type }
    team { id name key }
    assignee { id name displayName email }
    project { id name }
    labels { nodes { id name } }
"""

ISSUES_QUERY = f"""
query Issues($filter: IssueFilter, $first: Int!, $after: String) {{
  issues(filter: $filter, first: $first, after: $after, orderBy: updatedAt) {{
    nodes {{ {ISSUE_FIELDS} }}
    pageInfo {{ hasNextPage endCursor }}
  }}
}}
"""

ISSUE_QUERY = f"""
query Issue($id: String!) {{
  issue(id: $id) {{ {ISSUE_FIELDS} }}
}}
"""

TEAMS_QUERY = """
query Teams($first: Int!, $after: String) {
  teams(first: $first, after: $after) {
    nodes { id name key }
    pageInfo { hasNextPage endCursor }
  }
}
"""

WORKFLOW_STATES_QUERY = """
query WorkflowStates($teamId: String!) {
  team(id: $teamId) {
    states { nodes { id name type position } }
  }
}
"""

USERS_QUERY = """
query Users($first: Int!, $after: String) {
  users(first: $first, after: $after) {
    nodes { id name displayName email active }
    pageInfo { hasNextPage endCursor }
  }
}
"""

UPDATE_ISSUE_MUTATION = """
mutation UpdateIssue($id: String!, $input: IssueUpdateInput!) {
  issueUpdate(id: $id, input: $input) { success }
}
"""

CREATE_COMMENT_MUTATION = """
mutation CreateComment($issueId: String!, $body: String!) {
  commentCreate(input: { issueId: $issueId, body: $body }) { success }
}
"""


def build_issue_filter(
    team_id: str | None = None,
    assignee_id: str | None = None,
    updated_after: datetime | None = None,
    open_only: bool = False,
) -> dict[str, Any]:
    """IssueFilter for the issues connection; an empty dict matches everything."""
    issue_filter: dict[str, Any] = {}
    if team_id:
        issue_filter["team"] = {"id": {"eq": team_id}}
    if assignee_id:
        issue_filter["assignee"] = {"id": {"eq": assignee_id}}
    if updated_after:
        issue_filter["updatedAt"] = {"gte": updated_after.isoformat()}
    if open_only:
        issue_filter["state"] = {"type": {"nin": list(CLOSED_STATE_TYPES)}}
    return issue_filter


class LinearClient(ApiClient):
    """Client for the Linear GraphQL API.

    OAuth access tokens are sent as Bearer tokens; personal API keys are sent
    bare in the Authorization header.
    """

    system: ClassVar[str] = "linear"
    base_url: ClassVar[str] = "https://api.linear.app"

    def __init__(self, token: str, *, api_key: bool = False, **kwargs: Any) -> None:
        super().__init__(token, **kwargs)
        self._api_key = api_key

    def _default_headers(self) -> dict[str, str]:
        headers = super()._default_headers()
        if self._api_key:
            headers["Authorization"] = self._token
        return headers

    def _auth_error_message(self, response: httpx.Response) -> str:
        if response.status_code == 403:
            return "Linear access forbidden. Check the granted OAuth scopes."
        return "Linear authentication failed. Please re-authenticate."

    async def query(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run a GraphQL operation and return its ``data``.

        Raises:
            SourceError: When the response carries GraphQL errors or no data
        """
        payload = await self.request_json(
            "POST", "/graphql", json={"query": query, "variables": variables or {}}
        )
        payload = payload or {}
        errors = payload.get("errors") or []
        if errors:
            raise SourceError(f"Linear GraphQL error: {errors[0].get('message')}", system=self.system)
        data = payload.get("data")
        if data is None:
            raise SourceError("Linear API returned no data", system=self.system)
        return data

    async def _connection(
        self, query: str, key: str, variables: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Collect every node of a paged connection."""

        async def fetch_page(after: str | None) -> tuple[list[dict[str, Any]], str | None]:
            data = await self.query(query, {**(variables or {}), "first": PAGE_SIZE, "after": after})
            connection = data.get(key) or {}
            page_info = connection.get("pageInfo") or {}
            next_cursor = page_info.get("endCursor") if page_info.get("hasNextPage") else None
            return connection.get("nodes") or [], next_cursor

        return await self.paginate(fetch_page)

    # ==================== Issues ====================

    async def list_issues(
        self,
        team_id: str | None = None,
        assignee_id: str | None = None,
        updated_after: datetime | None = None,
        open_only: bool = False,
    ) -> list[dict[str, Any]]:
        issue_filter = build_issue_filter(team_id, assignee_id, updated_after, open_only)
        return await self._connection(ISSUES_QUERY, "issues", {"filter": issue_filter or None})

    async def get_issue(self, issue_id: str) -> dict[str, Any] | None:
        data = await self.query(ISSUE_QUERY, {"id": issue_id})
        return data.get("issue")

    async def update_issue(self, issue_id: str, fields: dict[str, Any]) -> None:
        data = await self.query(UPDATE_ISSUE_MUTATION, {"id": issue_id, "input": fields})
        if not (data.get("issueUpdate") or {}).get("success"):
            raise SourceError(f"Linear rejected the update of issue {issue_id}", system=self.system)

    async def add_comment(self, issue_id: str, body: str) -> None:
        data = await self.query(CREATE_COMMENT_MUTATION, {"issueId": issue_id, "body": body})
        if not (data.get("commentCreate") or {}).get("success"):
            raise SourceError(f"Linear rejected the comment on issue {issue_id}", system=self.system)

    # ==================== Teams & users ====================

    async def list_teams(self) -> list[dict[str, Any]]:
        return await self._connection(TEAMS_QUERY, "teams")

    async def list_workflow_states(self, team_id: str) -> list[dict[str, Any]]:
        data = await self.query(WORKFLOW_STATES_QUERY, {"teamId": team_id})
        team = data.get("team") or {}
        states = (team.get("states") or {}).get("nodes") or []
        return sorted(states, key=lambda s: s.get("position") or 0)

    async def list_users(self) -> list[dict[str, Any]]:
        users = await self._connection(USERS_QUERY, "users")
        logger.debug(f"Fetched {len(users)} Linear users")
        return [u for u in users if u.get("active", True)]
