"""Find or create the user's fork of a repository they cannot push to.

Watching a repository the user does not own routes the coding agent
through a fork in the user's account: the agent works on an issue
mirrored into the fork and opens its pull request there.

Functions here talk to the REST API directly and raise
``requests.HTTPError`` on failure; :class:`~issue_hunter.github_gateway.GitHubGateway`
wraps them and converts errors to ``GatewayError``.
"""

from __future__ import annotations

import time

from issue_hunter.github_utils import GITHUB_API, gh_headers
from issue_hunter.log_utils import repo_slug
from issue_hunter.logging_config import setup_logging
from issue_hunter.models import ForkInfo
from issue_hunter.retry_utils import request_with_retry

logger = setup_logging(__name__)


def check_fork_exists(token: str, owner: str, repo: str, my_user: str) -> dict | None:
    """Check whether ``my_user`` already has a fork of ``owner/repo``.

    Uses the ``GET /repos/{my_user}/{repo}`` endpoint and verifies that the
    returned repository is actually a fork whose parent matches the target.
    Returns the repo JSON dict if a valid fork is found, otherwise ``None``.
    """
    resp = request_with_retry(
        "GET",
        f"{GITHUB_API}/repos/{my_user}/{repo}",
        headers=gh_headers(token),
        timeout=30,
    )
    if resp.status_code == 200:
        data = resp.json()
        if data.get("fork"):
            parent = data.get("parent") or {}
            if parent.get("full_name", "").lower() == f"{owner}/{repo}".lower():
                return data
            if not parent:
                return data
    return None


def create_fork(
    token: str,
    owner: str,
    repo: str,
    ready_attempts: int = 12,
    ready_delay: float = 5.0,
) -> dict:
    """Create a new fork of ``owner/repo`` under the authenticated user.

    After the API call returns, GitHub may still be copying data.  The
    function polls up to *ready_attempts* times, *ready_delay* seconds
    apart, until the fork's ``size`` field is non-zero.  If the fork never
    reports a size the creation response is returned anyway.
    """
    logger.info("Creating fork of %s", repo_slug(owner, repo))
    resp = request_with_retry(
        "POST",
        f"{GITHUB_API}/repos/{owner}/{repo}/forks",
        headers=gh_headers(token),
        json={"default_branch_only": False},
        timeout=60,
    )
    resp.raise_for_status()
    fork_data = resp.json()

    for attempt in range(1, ready_attempts + 1):
        time.sleep(ready_delay)
        check = request_with_retry(
            "GET",
            fork_data["url"],
            headers=gh_headers(token),
            timeout=30,
        )
        if check.status_code == 200 and check.json().get("size", 0) > 0:
            logger.info("Fork ready (attempt %d)", attempt)
            return check.json()
        logger.info("Waiting for fork to be ready (attempt %d/%d)", attempt, ready_attempts)

    logger.warning("Fork of %s not confirmed ready; continuing", repo_slug(owner, repo))
    return fork_data


def ensure_fork(
    token: str,
    owner: str,
    repo: str,
    my_user: str,
    ready_attempts: int = 12,
    ready_delay: float = 5.0,
) -> ForkInfo:
    """Return the user's fork of ``owner/repo``, creating it when missing."""
    existing = check_fork_exists(token, owner, repo, my_user)
    if existing is not None:
        logger.info("Using existing fork %s", existing.get("full_name", ""))
        data = existing
    else:
        data = create_fork(token, owner, repo, ready_attempts, ready_delay)
    return {
        "fork_owner": data.get("owner", {}).get("login") or my_user,
        "fork_repo": data.get("name") or repo,
    }
