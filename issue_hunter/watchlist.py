"""Per-user management of watched repositories."""

from __future__ import annotations

import pathlib
import re

from issue_hunter import database
from issue_hunter.autofix import ActionError, NotFoundError, PreconditionError
from issue_hunter.github_gateway import GatewayError, GatewayFactory
from issue_hunter.log_utils import repo_slug
from issue_hunter.logging_config import setup_logging

logger = setup_logging(__name__)

_NAME_RE = re.compile(r"^[\w.-]+$")


class DuplicateWatchError(ActionError):
    status_code = 409


def _clean_labels(labels) -> list[str]:
    if labels is None:
        return []
    if not isinstance(labels, list):
        raise PreconditionError("label_filters must be a list of strings")
    return [str(label).strip() for label in labels if str(label).strip()]


class WatchList:
    def __init__(self, db_path: str | pathlib.Path, gateways: GatewayFactory) -> None:
        self.db_path = db_path
        self.gateways = gateways

    def add(
        self,
        user_id: int,
        owner: str,
        repo: str,
        label_filters: list[str] | None = None,
        title_query: str | None = None,
    ) -> dict:
        """Start watching ``owner/repo``.

        Ownership is resolved once here.  When the user cannot push to the
        repository a fork is found or created and recorded, so later
        auto-fix work is routed through it.
        """
        owner = (owner or "").strip()
        repo = (repo or "").strip()
        if not _NAME_RE.match(owner) or not _NAME_RE.match(repo):
            raise PreconditionError("owner and repo are required")
        labels = _clean_labels(label_filters)

        with database.db_connection(self.db_path) as conn:
            if database.find_watched_repo(conn, user_id, owner, repo) is not None:
                raise DuplicateWatchError("Repository already watched")

        try:
            gateway = self.gateways.for_user(user_id)
            ownership = gateway.check_ownership(owner, repo)
            fork = None
            if not ownership["is_owned"]:
                fork = gateway.fork_repository(owner, repo)
        except GatewayError as exc:
            logger.error(
                "Could not resolve access to %s: %s", repo_slug(owner, repo), exc,
                extra={"user_id": user_id},
            )
            if exc.status_code == 404:
                raise NotFoundError("Repository not found") from exc
            raise ActionError("Failed to add repository") from exc

        with database.db_connection(self.db_path) as conn:
            repo_id = database.insert_watched_repo(
                conn, user_id, owner, repo,
                label_filters=labels,
                title_query=title_query,
                is_owned=ownership["is_owned"],
                fork_owner=fork["fork_owner"] if fork else None,
                fork_repo=fork["fork_repo"] if fork else None,
            )
            if repo_id is None:
                raise DuplicateWatchError("Repository already watched")
            watched = database.get_watched_repo(conn, repo_id)
        logger.info(
            "Watching %s (owned=%s)", repo_slug(owner, repo), ownership["is_owned"],
            extra={"user_id": user_id},
        )
        return watched.to_dict()

    def update(
        self,
        user_id: int,
        repo_id: int,
        label_filters: list[str] | None = None,
        title_query: str | None = None,
        frozen: bool | None = None,
        *,
        clear_title_query: bool = False,
    ) -> dict:
        fields: dict = {}
        if label_filters is not None:
            fields["label_filters"] = _clean_labels(label_filters)
        if title_query is not None or clear_title_query:
            fields["title_query"] = title_query
        if frozen is not None:
            fields["frozen"] = frozen

        with database.db_connection(self.db_path) as conn:
            if database.get_watched_repo(conn, repo_id, user_id=user_id) is None:
                raise NotFoundError("Repository not found")
            if fields:
                database.update_watched_repo(conn, repo_id, **fields)
            return database.get_watched_repo(conn, repo_id).to_dict()

    def remove(self, user_id: int, repo_id: int) -> None:
        """Stop watching; tracked issues of the repo are deleted with it."""
        with database.db_connection(self.db_path) as conn:
            if not database.delete_watched_repo(conn, repo_id, user_id):
                raise NotFoundError("Repository not found")

    def list_for_user(self, user_id: int) -> list[dict]:
        with database.db_connection(self.db_path) as conn:
            return database.list_watched_repos(conn, user_id)
