"""Auto-fix lifecycle: hand issues to the coding agent and track the result.

Every status change is a conditional update on the current status (see
:func:`issue_hunter.database.transition_status`), so cron polls, webhook
triggers and dashboard actions racing on the same issue cannot both act
on it.  Any failure while starting a fix moves the issue to
``failed``; failures while polling leave it ``generating`` until the
timeout sweeps it.

Repositories the user cannot push to are routed through their fork: the
upstream issue is mirrored into the fork and the agent is assigned there,
never on the upstream repository.
"""

from __future__ import annotations

import pathlib
from concurrent.futures import Executor
from datetime import datetime, timedelta, timezone
from typing import Callable

from issue_hunter import database
from issue_hunter.github_gateway import GatewayError, GatewayFactory
from issue_hunter.log_utils import repo_slug
from issue_hunter.logging_config import setup_logging
from issue_hunter.models import (
    DRAFT_READY,
    DRAFT_READY_KIND,
    FAILED,
    GENERATING,
    ISSUE_TYPE,
    PUBLISHED,
    QUEUED,
    REJECTED,
    SKIPPED,
    TrackedIssue,
    WatchedRepo,
)
from issue_hunter.notifications import NotificationContext, NotificationDispatcher
from issue_hunter.tasks import join_tolerant

logger = setup_logging(__name__)

POLL_TIMED_OUT = "timed_out"
POLL_DRAFT_READY = "draft_ready"
POLL_GENERATING = "generating"
POLL_SKIPPED = "skipped"

_TRIGGERABLE = "claimed_at IS NULL AND type = 'issue'"


class ActionError(Exception):
    """A dashboard action could not be carried out."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(ActionError):
    status_code = 404


class PreconditionError(ActionError):
    status_code = 400


class ActionFailed(ActionError):
    status_code = 500


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AutoFixOrchestrator:
    def __init__(
        self,
        db_path: str | pathlib.Path,
        gateways: GatewayFactory,
        dispatcher: NotificationDispatcher,
        executor: Executor,
        generating_timeout: timedelta = timedelta(hours=2),
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.db_path = db_path
        self.gateways = gateways
        self.dispatcher = dispatcher
        self.executor = executor
        self.generating_timeout = generating_timeout
        self.now = now

    def _stamp(self) -> str:
        return self.now().isoformat()

    # -- starting a fix ----------------------------------------------------

    def trigger(self, issue_id: int) -> bool:
        """Move a queued issue to ``generating`` and assign the coding agent.

        Returns ``False`` without touching GitHub when the issue is not a
        queued, unclaimed issue (another caller won the transition, it was
        claimed, or it is a pull request row).  Returns ``False`` after
        marking the issue ``failed`` when the assignment does not succeed.
        """
        with database.db_connection(self.db_path) as conn:
            pair = database.get_issue_with_repo(conn, issue_id)
            if pair is None:
                return False
            issue, repo = pair
            won = database.transition_status(
                conn, issue_id, QUEUED, GENERATING, _TRIGGERABLE,
                generating_at=self._stamp(),
            )
        if not won:
            return False

        try:
            assigned = self._assign(issue, repo)
        except GatewayError as exc:
            logger.warning(
                "Agent assignment for %s#%d failed: %s",
                repo_slug(repo.owner, repo.repo), issue.issue_number, exc,
                extra={"issue_id": issue_id},
            )
            assigned = False
        except Exception:
            logger.exception(
                "Agent assignment for %s#%d failed",
                repo_slug(repo.owner, repo.repo), issue.issue_number,
                extra={"issue_id": issue_id},
            )
            assigned = False

        if not assigned:
            self._mark_failed(issue_id)
            return False
        logger.info(
            "Auto-fix started for %s#%d", repo_slug(repo.owner, repo.repo), issue.issue_number,
            extra={"issue_id": issue_id, "status": GENERATING},
        )
        return True

    def _assign(self, issue: TrackedIssue, repo: WatchedRepo) -> bool:
        gateway = self.gateways.for_user(repo.user_id)
        if repo.is_owned:
            result = gateway.assign_coding_agent(repo.owner, repo.repo, issue.issue_number)
            return bool(result["success"])

        if not repo.fork_owner or not repo.fork_repo:
            logger.warning(
                "No fork recorded for %s; cannot assign agent",
                repo_slug(repo.owner, repo.repo),
                extra={"issue_id": issue.id},
            )
            return False

        agent_id = gateway.find_coding_agent(repo.fork_owner, repo.fork_repo)
        if not agent_id:
            logger.warning(
                "Coding agent not available in fork %s",
                repo_slug(repo.fork_owner, repo.fork_repo),
                extra={"issue_id": issue.id},
            )
            return False

        fork_number = gateway.create_linked_fork_issue(
            repo.owner, repo.repo, issue.issue_number, repo.fork_owner, repo.fork_repo,
        )
        with database.db_connection(self.db_path) as conn:
            database.update_issue(conn, issue.id, fork_issue_number=fork_number)

        result = gateway.assign_coding_agent(
            repo.fork_owner, repo.fork_repo, fork_number, agent_id=agent_id,
        )
        return bool(result["success"])

    def _mark_failed(self, issue_id: int) -> None:
        with database.db_connection(self.db_path) as conn:
            database.transition_status(conn, issue_id, GENERATING, FAILED)
        logger.info("Auto-fix failed", extra={"issue_id": issue_id, "status": FAILED})

    # -- polling -----------------------------------------------------------

    def poll_generating(self) -> dict:
        """Check every ``generating`` issue for a draft PR or a timeout."""
        with database.db_connection(self.db_path) as conn:
            issue_ids = database.list_issue_ids_by_status(conn, GENERATING)

        futures = {self.executor.submit(self.poll_issue, i): i for i in issue_ids}
        results, errors = join_tolerant(futures, "agent poll for issue")
        outcomes = list(results.values())
        stats = {
            "polled": len(issue_ids),
            "draft_ready": outcomes.count(POLL_DRAFT_READY),
            "timed_out": outcomes.count(POLL_TIMED_OUT),
            "still_generating": outcomes.count(POLL_GENERATING),
            "errors": errors,
        }
        logger.info("Agent poll complete: %s", stats)
        return stats

    def poll_issue(self, issue_id: int) -> str:
        """Evaluate one issue; gateway errors propagate and leave it unchanged."""
        with database.db_connection(self.db_path) as conn:
            pair = database.get_issue_with_repo(conn, issue_id)
        if pair is None:
            return POLL_SKIPPED
        issue, repo = pair
        if issue.auto_fix_status != GENERATING:
            return POLL_SKIPPED

        started = database.parse_ts(issue.generating_at)
        if started is not None and self.now() - started > self.generating_timeout:
            with database.db_connection(self.db_path) as conn:
                won = database.transition_status(conn, issue_id, GENERATING, FAILED)
            if won:
                logger.info(
                    "Auto-fix timed out for %s#%d",
                    repo_slug(repo.owner, repo.repo), issue.issue_number,
                    extra={"issue_id": issue_id, "status": FAILED},
                )
                return POLL_TIMED_OUT
            return POLL_SKIPPED

        gateway = self.gateways.for_user(repo.user_id)
        if repo.is_owned:
            status = gateway.check_agent_pr_status(repo.owner, repo.repo, issue.issue_number)
            pr_owner = repo.owner
        elif repo.fork_owner and repo.fork_repo:
            status = {"has_pr": False}
            if issue.fork_issue_number:
                status = gateway.check_agent_pr_status(
                    repo.fork_owner, repo.fork_repo, issue.fork_issue_number,
                )
            if not status.get("has_pr"):
                status = gateway.find_agent_pr_on_fork(
                    repo.fork_owner, repo.fork_repo, repo.owner, repo.repo, issue.issue_number,
                )
            pr_owner = repo.fork_owner
        else:
            return POLL_GENERATING

        if not (status.get("has_pr") and status.get("pr_number")):
            return POLL_GENERATING

        with database.db_connection(self.db_path) as conn:
            won = database.transition_status(
                conn, issue_id, GENERATING, DRAFT_READY,
                draft_pr_number=status["pr_number"],
                draft_pr_url=status.get("pr_url"),
                draft_pr_owner=pr_owner,
            )
        if not won:
            return POLL_SKIPPED

        logger.info(
            "Draft PR #%d ready for %s#%d",
            status["pr_number"], repo_slug(repo.owner, repo.repo), issue.issue_number,
            extra={"issue_id": issue_id, "status": DRAFT_READY},
        )
        self.dispatcher.dispatch(
            DRAFT_READY_KIND,
            NotificationContext(user_id=repo.user_id, issue_id=issue_id),
            {
                "owner": repo.owner,
                "repo": repo.repo,
                "issue_number": issue.issue_number,
                "pr_number": status["pr_number"],
            },
        )
        return POLL_DRAFT_READY

    # -- dashboard actions -------------------------------------------------

    def _load_owned(self, user_id: int, issue_id: int) -> tuple[TrackedIssue, WatchedRepo]:
        with database.db_connection(self.db_path) as conn:
            pair = database.get_issue_with_repo(conn, issue_id, user_id=user_id)
        if pair is None:
            raise NotFoundError("Issue not found")
        return pair

    def _reload(self, issue_id: int, repo: WatchedRepo) -> dict:
        with database.db_connection(self.db_path) as conn:
            issue = database.get_tracked_issue(conn, issue_id)
        d = issue.to_dict() if issue else {"id": issue_id}
        d["owner"] = repo.owner
        d["repo"] = repo.repo
        return d

    def get_draft(self, user_id: int, issue_id: int) -> dict:
        issue, repo = self._load_owned(user_id, issue_id)
        if issue.auto_fix_status != DRAFT_READY:
            raise NotFoundError("Draft not found")
        d = issue.to_dict()
        d["owner"] = repo.owner
        d["repo"] = repo.repo
        d["is_owned"] = repo.is_owned
        return d

    @staticmethod
    def draft_target(issue: TrackedIssue, repo: WatchedRepo) -> tuple[str, str]:
        """Where the draft PR lives: ``(owner, repo)`` on the fork or upstream."""
        owner = issue.draft_pr_owner or repo.owner
        if repo.fork_owner and repo.fork_repo and owner.lower() == repo.fork_owner.lower():
            return owner, repo.fork_repo
        return owner, repo.repo

    def _load_draft(self, user_id: int, issue_id: int) -> tuple[TrackedIssue, WatchedRepo]:
        issue, repo = self._load_owned(user_id, issue_id)
        if issue.auto_fix_status != DRAFT_READY:
            raise NotFoundError("Draft not found")
        if not issue.draft_pr_number:
            raise PreconditionError("No draft PR associated with this issue")
        return issue, repo

    def publish(self, user_id: int, issue_id: int) -> dict:
        issue, repo = self._load_draft(user_id, issue_id)
        owner, name = self.draft_target(issue, repo)
        try:
            self.gateways.for_user(repo.user_id).publish_draft_pr(owner, name, issue.draft_pr_number)
        except GatewayError as exc:
            logger.error(
                "Publishing %s#%d failed: %s", repo_slug(owner, name), issue.draft_pr_number, exc,
                extra={"issue_id": issue_id},
            )
            raise ActionFailed("Failed to publish draft PR") from exc

        with database.db_connection(self.db_path) as conn:
            won = database.transition_status(
                conn, issue_id, DRAFT_READY, PUBLISHED, published_at=self._stamp(),
            )
        if not won:
            raise PreconditionError("Draft is no longer awaiting review", status_code=409)
        return self._reload(issue_id, repo)

    def reject(self, user_id: int, issue_id: int) -> dict:
        issue, repo = self._load_draft(user_id, issue_id)
        owner, name = self.draft_target(issue, repo)
        try:
            self.gateways.for_user(repo.user_id).close_draft_pr(owner, name, issue.draft_pr_number)
        except GatewayError as exc:
            logger.error(
                "Closing %s#%d failed: %s", repo_slug(owner, name), issue.draft_pr_number, exc,
                extra={"issue_id": issue_id},
            )
            raise ActionFailed("Failed to reject draft PR") from exc

        with database.db_connection(self.db_path) as conn:
            won = database.transition_status(conn, issue_id, DRAFT_READY, REJECTED)
        if not won:
            raise PreconditionError("Draft is no longer awaiting review", status_code=409)
        return self._reload(issue_id, repo)

    def claim(self, user_id: int, issue_id: int) -> dict:
        """Take an issue off the agent's queue to work on it by hand."""
        issue, repo = self._load_owned(user_id, issue_id)
        if issue.auto_fix_status != QUEUED:
            raise PreconditionError("Only queued issues can be claimed", status_code=409)
        with database.db_connection(self.db_path) as conn:
            won = database.transition_status(
                conn, issue_id, QUEUED, SKIPPED, claimed_at=self._stamp(),
            )
        if not won:
            raise PreconditionError("Only queued issues can be claimed", status_code=409)
        return self._reload(issue_id, repo)

    def unclaim(self, user_id: int, issue_id: int) -> dict:
        issue, repo = self._load_owned(user_id, issue_id)
        if issue.auto_fix_status != SKIPPED or not issue.claimed_at or issue.type != ISSUE_TYPE:
            raise PreconditionError("Issue is not claimed", status_code=409)
        with database.db_connection(self.db_path) as conn:
            won = database.transition_status(
                conn, issue_id, SKIPPED, QUEUED, "claimed_at IS NOT NULL", claimed_at=None,
            )
        if not won:
            raise PreconditionError("Issue is not claimed", status_code=409)
        return self._reload(issue_id, repo)

    def retry(self, user_id: int, issue_id: int) -> dict:
        """Start the agent on a queued issue from the dashboard."""
        issue, repo = self._load_owned(user_id, issue_id)
        if issue.auto_fix_status != QUEUED or issue.claimed_at or issue.type != ISSUE_TYPE:
            raise PreconditionError("Only queued, unclaimed issues can be started", status_code=409)
        if not self.trigger(issue_id):
            raise ActionFailed("Failed to start auto-fix")
        return self._reload(issue_id, repo)

    def requeue(self, user_id: int, issue_id: int) -> dict:
        issue, repo = self._load_owned(user_id, issue_id)
        if issue.auto_fix_status != FAILED:
            raise PreconditionError("Only failed issues can be re-queued", status_code=409)
        with database.db_connection(self.db_path) as conn:
            won = database.transition_status(
                conn, issue_id, FAILED, QUEUED,
                generating_at=None, fork_issue_number=None,
                draft_pr_number=None, draft_pr_url=None, draft_pr_owner=None,
            )
        if not won:
            raise PreconditionError("Only failed issues can be re-queued", status_code=409)
        return self._reload(issue_id, repo)
