"""Archive tracked issues that were closed upstream."""

from __future__ import annotations

import pathlib
from datetime import datetime, timezone
from typing import Callable

from issue_hunter import database
from issue_hunter.autofix import NotFoundError, PreconditionError
from issue_hunter.github_gateway import GatewayError, GatewayFactory
from issue_hunter.log_utils import repo_slug
from issue_hunter.logging_config import setup_logging
from issue_hunter.models import ISSUE_CLOSED, STATE_CLOSED
from issue_hunter.notifications import NotificationContext, NotificationDispatcher

logger = setup_logging(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ClosureReconciler:
    def __init__(
        self,
        db_path: str | pathlib.Path,
        gateways: GatewayFactory,
        dispatcher: NotificationDispatcher,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.db_path = db_path
        self.gateways = gateways
        self.dispatcher = dispatcher
        self.now = now

    def sweep(self) -> dict:
        """Check every open, unarchived issue against its upstream state.

        Issues closed upstream are marked closed and archived in one
        conditional update, then the watcher is notified in-app.  A failure
        on one issue is logged and counted; the sweep continues.
        """
        with database.db_connection(self.db_path) as conn:
            pairs = database.list_open_unarchived_issues(conn)

        stats = {"issues_checked": 0, "issues_closed": 0, "errors": 0}
        for issue, repo in pairs:
            stats["issues_checked"] += 1
            try:
                state = self.gateways.for_user(repo.user_id).fetch_issue_state(
                    repo.owner, repo.repo, issue.issue_number,
                )
            except GatewayError as exc:
                stats["errors"] += 1
                logger.warning(
                    "State check for %s#%d failed: %s",
                    repo_slug(repo.owner, repo.repo), issue.issue_number, exc,
                    extra={"issue_id": issue.id},
                )
                continue
            except Exception:
                stats["errors"] += 1
                logger.exception(
                    "State check for %s#%d failed",
                    repo_slug(repo.owner, repo.repo), issue.issue_number,
                    extra={"issue_id": issue.id},
                )
                continue

            if state.get("state") != STATE_CLOSED:
                continue

            now = self.now().isoformat()
            with database.db_connection(self.db_path) as conn:
                closed = database.close_and_archive_issue(
                    conn, issue.id, state.get("closed_at") or now, now,
                )
            if not closed:
                continue
            stats["issues_closed"] += 1
            logger.info(
                "Archived %s#%d (closed upstream)",
                repo_slug(repo.owner, repo.repo), issue.issue_number,
                extra={"issue_id": issue.id},
            )
            self.dispatcher.dispatch(
                ISSUE_CLOSED,
                NotificationContext(user_id=repo.user_id, issue_id=issue.id),
                {
                    "owner": repo.owner,
                    "repo": repo.repo,
                    "issue_number": issue.issue_number,
                    "issue_title": issue.title,
                },
            )

        logger.info("Issue state sweep complete: %s", stats)
        return stats

    def _set_archived(self, user_id: int, issue_id: int, archived: bool) -> dict:
        with database.db_connection(self.db_path) as conn:
            pair = database.get_issue_with_repo(conn, issue_id, user_id=user_id)
            if pair is None:
                raise NotFoundError("Issue not found")
            if not database.set_archived(conn, issue_id, archived):
                message = "Issue is already archived" if archived else "Issue is not archived"
                raise PreconditionError(message)
            issue = database.get_tracked_issue(conn, issue_id)
        d = issue.to_dict()
        d["owner"] = pair[1].owner
        d["repo"] = pair[1].repo
        return d

    def restore(self, user_id: int, issue_id: int) -> dict:
        """Un-archive an issue; its state and ``closed_at`` are left as they are."""
        return self._set_archived(user_id, issue_id, archived=False)

    def archive(self, user_id: int, issue_id: int) -> dict:
        return self._set_archived(user_id, issue_id, archived=True)
