"""Repository access gateway: every GitHub call the service makes.

A :class:`GitHubGateway` wraps one user's OAuth credential.  REST calls go
through :func:`~issue_hunter.retry_utils.request_with_retry`; GraphQL calls
carry the feature header that exposes coding-agent assignment.  Any
transport failure, non-2xx response, body that is not JSON or GraphQL
``errors`` array is raised as :class:`GatewayError`.

The gateway keeps no local state, and multi-step operations (mirror an
issue, then assign it) are not rolled back when a later step fails.
"""

from __future__ import annotations

import pathlib
from typing import Any

import requests

from issue_hunter import database
from issue_hunter.fork_repo import ensure_fork
from issue_hunter.github_utils import (
    AGENT_FEATURES_HEADER,
    GITHUB_API,
    GRAPHQL_URL,
    gh_headers,
    label_names,
)
from issue_hunter.log_utils import repo_slug, sanitize_log
from issue_hunter.logging_config import setup_logging
from issue_hunter.models import (
    ISSUE_TYPE,
    PULL_REQUEST_TYPE,
    AgentPRStatus,
    ForkInfo,
    UpstreamIssue,
)
from issue_hunter.retry_utils import request_with_retry

logger = setup_logging(__name__)

_PAGE_SIZE = 100
_MAX_PAGES = 10

_SUGGESTED_ACTORS_QUERY = """
query($owner: String!, $repo: String!) {
  repository(owner: $owner, name: $repo) {
    suggestedActors(capabilities: [CAN_BE_ASSIGNED], first: 100) {
      nodes {
        __typename
        login
        ... on Bot { id }
        ... on User { id }
      }
    }
  }
}
"""

_ISSUE_NODE_QUERY = """
query($owner: String!, $repo: String!, $number: Int!) {
  repository(owner: $owner, name: $repo) {
    issue(number: $number) { id }
  }
}
"""

_ASSIGN_MUTATION = """
mutation($issueId: ID!, $assigneeIds: [ID!]!) {
  addAssigneesToAssignable(input: {assignableId: $issueId, assigneeIds: $assigneeIds}) {
    clientMutationId
  }
}
"""

_READY_FOR_REVIEW_MUTATION = """
mutation($pullRequestId: ID!) {
  markPullRequestReadyForReview(input: {pullRequestId: $pullRequestId}) {
    pullRequest { id isDraft }
  }
}
"""


class GatewayError(Exception):
    """A GitHub call failed (transport, credential or API error)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def _no_pr() -> AgentPRStatus:
    return {"has_pr": False}


class GitHubGateway:
    """GitHub REST and GraphQL access on behalf of one user."""

    def __init__(
        self,
        token: str,
        agent_login: str = "copilot",
        fork_ready_attempts: int = 12,
        fork_ready_delay: float = 5.0,
    ) -> None:
        self._token = token
        self.agent_login = agent_login.lower()
        self.fork_ready_attempts = fork_ready_attempts
        self.fork_ready_delay = fork_ready_delay

    # -- transport ---------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: Any = None,
    ) -> requests.Response:
        url = path if path.startswith("http") else f"{GITHUB_API}{path}"
        try:
            resp = request_with_retry(
                method, url,
                headers=gh_headers(self._token),
                params=params,
                json=json,
                timeout=30,
            )
        except requests.exceptions.RequestException as exc:
            raise GatewayError(f"{method} {path} failed: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            raise GatewayError(
                f"{method} {path} returned {resp.status_code}",
                status_code=resp.status_code,
            )
        return resp

    @staticmethod
    def _decode(resp: requests.Response, what: str) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise GatewayError(
                f"{what} returned a non-JSON body", status_code=resp.status_code,
            ) from exc

    def _get(self, path: str, params: dict | None = None) -> Any:
        return self._decode(self._request("GET", path, params=params), f"GET {path}")

    def _get_paginated(self, path: str, params: dict | None = None) -> list[dict]:
        items: list[dict] = []
        for page in range(1, _MAX_PAGES + 1):
            batch = self._get(path, {**(params or {}), "per_page": _PAGE_SIZE, "page": page})
            if not isinstance(batch, list):
                break
            items.extend(batch)
            if len(batch) < _PAGE_SIZE:
                break
        return items

    def _graphql(self, query: str, variables: dict, agent_features: bool = False) -> dict:
        headers = gh_headers(self._token)
        if agent_features:
            headers.update(AGENT_FEATURES_HEADER)
        try:
            resp = request_with_retry(
                "POST", GRAPHQL_URL,
                headers=headers,
                json={"query": query, "variables": variables},
                timeout=30,
            )
        except requests.exceptions.RequestException as exc:
            raise GatewayError(f"GraphQL request failed: {exc}") from exc
        if resp.status_code != 200:
            raise GatewayError(
                f"GraphQL request returned {resp.status_code}",
                status_code=resp.status_code,
            )
        body = self._decode(resp, "GraphQL request")
        if not isinstance(body, dict):
            raise GatewayError("GraphQL request returned an unexpected body")
        if body.get("errors"):
            messages = "; ".join(str(e.get("message", e)) for e in body["errors"])
            raise GatewayError(f"GraphQL errors: {messages}")
        return body.get("data") or {}

    # -- issues and pull requests -----------------------------------------

    def list_open_issues(self, owner: str, repo: str) -> list[UpstreamIssue]:
        """Open issues of ``owner/repo``, newest first, pull requests excluded."""
        raw = self._get_paginated(
            f"/repos/{owner}/{repo}/issues",
            {"state": "open", "sort": "created", "direction": "desc"},
        )
        return [
            {
                "number": item["number"],
                "title": item.get("title", ""),
                "html_url": item.get("html_url", ""),
                "labels": label_names(item.get("labels", [])),
                "body": item.get("body") or "",
                "type": ISSUE_TYPE,
            }
            for item in raw
            if "pull_request" not in item
        ]

    def list_open_pull_requests(self, owner: str, repo: str) -> list[UpstreamIssue]:
        raw = self._get_paginated(
            f"/repos/{owner}/{repo}/pulls",
            {"state": "open", "sort": "created", "direction": "desc"},
        )
        return [
            {
                "number": item["number"],
                "title": item.get("title", ""),
                "html_url": item.get("html_url", ""),
                "labels": label_names(item.get("labels", [])),
                "body": item.get("body") or "",
                "type": PULL_REQUEST_TYPE,
            }
            for item in raw
        ]

    def _timeline(self, owner: str, repo: str, number: int) -> list[dict]:
        data = self._get(
            f"/repos/{owner}/{repo}/issues/{number}/timeline",
            {"per_page": _PAGE_SIZE},
        )
        return data if isinstance(data, list) else []

    def issue_has_linked_pr(self, owner: str, repo: str, number: int) -> bool:
        """True if any pull request cross-references the issue."""
        for event in self._timeline(owner, repo, number):
            if event.get("event") != "cross-referenced":
                continue
            source_issue = (event.get("source") or {}).get("issue") or {}
            if source_issue.get("pull_request"):
                return True
        return False

    def fetch_issue_state(self, owner: str, repo: str, number: int) -> dict:
        data = self._get(f"/repos/{owner}/{repo}/issues/{number}")
        return {"state": data.get("state", "open"), "closed_at": data.get("closed_at")}

    # -- ownership and forks ----------------------------------------------

    def check_ownership(self, owner: str, repo: str) -> dict:
        """Whether the user can push to ``owner/repo``.

        ``permission_level`` is the highest of ``admin``, ``maintain``,
        ``push``, ``triage`` and ``pull`` the API reports, or ``none``.
        """
        data = self._get(f"/repos/{owner}/{repo}")
        permissions = data.get("permissions") or {}
        level = "none"
        for name in ("admin", "maintain", "push", "triage", "pull"):
            if permissions.get(name):
                level = name
                break
        return {
            "is_owned": bool(permissions.get("push") or permissions.get("admin")),
            "permission_level": level,
        }

    def fork_repository(self, owner: str, repo: str) -> ForkInfo:
        """Return the user's fork of ``owner/repo``, creating it if needed."""
        me = self.get_authenticated_user()["login"]
        try:
            return ensure_fork(
                self._token, owner, repo, me,
                ready_attempts=self.fork_ready_attempts,
                ready_delay=self.fork_ready_delay,
            )
        except requests.exceptions.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            raise GatewayError(f"Fork of {owner}/{repo} failed: {exc}", status_code=status) from exc
        except requests.exceptions.RequestException as exc:
            raise GatewayError(f"Fork of {owner}/{repo} failed: {exc}") from exc

    # -- coding agent ------------------------------------------------------

    def find_coding_agent(self, owner: str, repo: str) -> str | None:
        """Node id of the coding agent if it can be assigned in ``owner/repo``."""
        data = self._graphql(
            _SUGGESTED_ACTORS_QUERY, {"owner": owner, "repo": repo}, agent_features=True,
        )
        nodes = ((data.get("repository") or {}).get("suggestedActors") or {}).get("nodes") or []
        for actor in nodes:
            if (actor.get("login") or "").lower() == self.agent_login and actor.get("id"):
                return actor["id"]
        logger.info(
            "Coding agent not assignable in %s (actors: %s)",
            repo_slug(owner, repo),
            ", ".join(sanitize_log(a.get("login", "")) for a in nodes),
        )
        return None

    def _issue_node_id(self, owner: str, repo: str, number: int) -> str | None:
        data = self._graphql(
            _ISSUE_NODE_QUERY, {"owner": owner, "repo": repo, "number": number},
        )
        issue = (data.get("repository") or {}).get("issue") or {}
        return issue.get("id")

    def assign_coding_agent(
        self, owner: str, repo: str, number: int, agent_id: str | None = None,
    ) -> dict:
        """Assign the coding agent to issue ``number``.

        *agent_id* skips the lookup when the caller already resolved the
        agent in this repository.  Returns ``{"success": False, "agent_id":
        None}`` without raising when the agent is not available in the
        repository or the issue cannot be resolved; transport failures
        still raise.
        """
        if agent_id is None:
            agent_id = self.find_coding_agent(owner, repo)
        if not agent_id:
            return {"success": False, "agent_id": None}
        issue_id = self._issue_node_id(owner, repo, number)
        if not issue_id:
            logger.warning("Issue #%d not found in %s", number, repo_slug(owner, repo))
            return {"success": False, "agent_id": agent_id}
        self._graphql(
            _ASSIGN_MUTATION,
            {"issueId": issue_id, "assigneeIds": [agent_id]},
            agent_features=True,
        )
        logger.info("Assigned coding agent to %s#%d", repo_slug(owner, repo), number)
        return {"success": True, "agent_id": agent_id}

    def create_linked_fork_issue(
        self,
        upstream_owner: str,
        upstream_repo: str,
        number: int,
        fork_owner: str,
        fork_repo: str,
    ) -> int:
        """Mirror upstream issue ``number`` into the fork; return the new number."""
        original = self._get(f"/repos/{upstream_owner}/{upstream_repo}/issues/{number}")
        body = (
            f"This issue tracks the fix for upstream issue: {original.get('html_url', '')}"
            f"\n\n---\n\n{original.get('body') or 'No description provided.'}"
        )
        path = f"/repos/{fork_owner}/{fork_repo}/issues"
        created = self._decode(
            self._request(
                "POST", path,
                json={
                    "title": f"[Upstream #{number}] {original.get('title', '')}",
                    "body": body,
                    "labels": label_names(original.get("labels", [])),
                },
            ),
            f"POST {path}",
        )
        logger.info(
            "Mirrored %s#%d to %s#%d",
            repo_slug(upstream_owner, upstream_repo), number,
            repo_slug(fork_owner, fork_repo), created["number"],
        )
        return created["number"]

    def check_agent_pr_status(self, owner: str, repo: str, number: int) -> AgentPRStatus:
        """Look for an agent-authored PR cross-referencing issue ``number``."""
        for event in self._timeline(owner, repo, number):
            if event.get("event") != "cross-referenced":
                continue
            source_issue = (event.get("source") or {}).get("issue") or {}
            if not (source_issue.get("pull_request") and source_issue.get("number")
                    and source_issue.get("html_url")):
                continue
            login = ((source_issue.get("user") or {}).get("login") or "").lower()
            if self.agent_login in login:
                return {
                    "has_pr": True,
                    "pr_number": source_issue["number"],
                    "pr_url": source_issue["html_url"],
                    "is_draft": bool(source_issue.get("draft", False)),
                }
        return _no_pr()

    def find_agent_pr_on_fork(
        self,
        fork_owner: str,
        fork_repo: str,
        upstream_owner: str,
        upstream_repo: str,
        number: int,
    ) -> AgentPRStatus:
        """Scan the fork's recent PRs for one the agent opened for ``number``."""
        pulls = self._get(
            f"/repos/{fork_owner}/{fork_repo}/pulls",
            {"state": "all", "per_page": 30},
        )
        refs = (
            f"{upstream_owner}/{upstream_repo}#{number}",
            f"{upstream_owner}/{upstream_repo}/issues/{number}",
        )
        for pr in pulls or []:
            login = ((pr.get("user") or {}).get("login") or "").lower()
            if self.agent_login not in login:
                continue
            body = pr.get("body") or ""
            title = pr.get("title") or ""
            if any(ref in body for ref in refs) or f"[Upstream #{number}]" in title:
                return {
                    "has_pr": True,
                    "pr_number": pr["number"],
                    "pr_url": pr.get("html_url", ""),
                    "is_draft": bool(pr.get("draft", False)),
                }
        return _no_pr()

    def publish_draft_pr(self, owner: str, repo: str, pull_number: int) -> None:
        """Mark a draft pull request ready for review."""
        pr = self._get(f"/repos/{owner}/{repo}/pulls/{pull_number}")
        node_id = pr.get("node_id")
        if not node_id:
            raise GatewayError(f"Pull request {owner}/{repo}#{pull_number} has no node id")
        self._graphql(_READY_FOR_REVIEW_MUTATION, {"pullRequestId": node_id})

    def close_draft_pr(self, owner: str, repo: str, pull_number: int) -> None:
        self._request(
            "PATCH",
            f"/repos/{owner}/{repo}/pulls/{pull_number}",
            json={"state": "closed"},
        )

    # -- search and identity ----------------------------------------------

    def search_repositories(
        self,
        query: str,
        page: int = 1,
        per_page: int = 20,
        search_type: str = "all",
    ) -> dict:
        """Search repositories by free text, by name, or list an owner's repos."""
        if search_type == "owner":
            raw = self._get(
                f"/users/{query}/repos",
                {"sort": "updated", "per_page": per_page, "page": page},
            )
            items = raw if isinstance(raw, list) else []
            total = (page - 1) * per_page + len(items)
            has_more = len(items) == per_page
        else:
            q = f"{query} in:name" if search_type == "name" else query
            data = self._get(
                "/search/repositories",
                {"q": q, "sort": "stars", "order": "desc", "per_page": per_page, "page": page},
            )
            items = data.get("items", [])
            total = data.get("total_count", 0)
            has_more = page * per_page < total
        return {
            "items": [
                {
                    "full_name": r.get("full_name", ""),
                    "owner": (r.get("owner") or {}).get("login", ""),
                    "name": r.get("name", ""),
                    "description": r.get("description") or "",
                    "html_url": r.get("html_url", ""),
                    "stargazers_count": r.get("stargazers_count", 0),
                    "language": r.get("language"),
                }
                for r in items
            ],
            "total_count": total,
            "page": page,
            "per_page": per_page,
            "has_more": has_more,
        }

    def get_authenticated_user(self) -> dict:
        data = self._get("/user")
        return {
            "login": data.get("login", ""),
            "name": data.get("name") or "",
            "email": data.get("email") or "",
            "avatar_url": data.get("avatar_url") or "",
        }


class GatewayFactory:
    """Builds a :class:`GitHubGateway` for a stored user credential."""

    def __init__(
        self,
        db_path: str | pathlib.Path,
        agent_login: str = "copilot",
        fork_ready_attempts: int = 12,
        fork_ready_delay: float = 5.0,
    ) -> None:
        self.db_path = db_path
        self.agent_login = agent_login
        self.fork_ready_attempts = fork_ready_attempts
        self.fork_ready_delay = fork_ready_delay

    def for_token(self, token: str) -> GitHubGateway:
        return GitHubGateway(
            token,
            agent_login=self.agent_login,
            fork_ready_attempts=self.fork_ready_attempts,
            fork_ready_delay=self.fork_ready_delay,
        )

    def for_user(self, user_id: int) -> GitHubGateway:
        with database.db_connection(self.db_path) as conn:
            user = database.get_user(conn, user_id)
        if user is None or not user.access_token:
            raise GatewayError(f"GitHub access token not found for user {user_id}")
        return self.for_token(user.access_token)
