"""Issue discovery: find new upstream issues and start tracking them.

Three entry points feed the same per-candidate pipeline:

* :meth:`DiscoveryEngine.poll_all` (cron) fetches each distinct
  ``owner/repo`` once, using the first watcher's credential, and evaluates
  the issues for every non-frozen watcher of that repo.
* :meth:`DiscoveryEngine.handle_issue_event` (webhook) evaluates a single
  ``opened`` or ``labeled`` issue for every watcher of its repository.
* :meth:`DiscoveryEngine.sync_user` (dashboard) re-reads one user's
  repositories, including open pull requests, which are tracked as
  ``skipped`` and never handed to the coding agent.

For each candidate and watcher the pipeline applies the label and title
filters, skips issues already tracked or already linked to a pull
request, creates the tracked row, notifies the watcher and finally
submits an auto-fix trigger to the worker pool.  A failure on one
candidate is logged and counted in ``items_failed``; the rest of the
batch carries on.  Triggers are joined at the end of the batch; their
failures are counted, never raised.
"""

from __future__ import annotations

import pathlib
from concurrent.futures import Executor, Future

from issue_hunter import database
from issue_hunter.autofix import AutoFixOrchestrator
from issue_hunter.github_gateway import GatewayError, GatewayFactory, GitHubGateway
from issue_hunter.github_utils import label_names
from issue_hunter.log_utils import repo_slug, sanitize_log
from issue_hunter.logging_config import setup_logging
from issue_hunter.models import (
    HANDLED_ISSUE_ACTIONS,
    ISSUE_TYPE,
    NEW_ISSUE,
    PULL_REQUEST_TYPE,
    QUEUED,
    SKIPPED,
    UpstreamIssue,
    WatchedRepo,
)
from issue_hunter.notifications import NotificationContext, NotificationDispatcher
from issue_hunter.tasks import join_tolerant

logger = setup_logging(__name__)


def matches_filters(watcher: WatchedRepo, issue: UpstreamIssue) -> bool:
    """Label filter (empty, or any shared label) and title substring filter."""
    if watcher.label_filters:
        wanted = {label.lower() for label in watcher.label_filters}
        if not wanted & {label.lower() for label in issue["labels"]}:
            return False
    if watcher.title_query:
        if watcher.title_query.lower() not in issue["title"].lower():
            return False
    return True


def _empty_stats() -> dict:
    return {
        "repos_polled": 0,
        "repos_failed": 0,
        "items_failed": 0,
        "issues_created": 0,
        "prs_created": 0,
        "autofix_triggered": 0,
        "autofix_failed": 0,
    }


class DiscoveryEngine:
    def __init__(
        self,
        db_path: str | pathlib.Path,
        gateways: GatewayFactory,
        dispatcher: NotificationDispatcher,
        orchestrator: AutoFixOrchestrator,
        executor: Executor,
    ) -> None:
        self.db_path = db_path
        self.gateways = gateways
        self.dispatcher = dispatcher
        self.orchestrator = orchestrator
        self.executor = executor

    # -- entry points ------------------------------------------------------

    def poll_all(self) -> dict:
        stats = _empty_stats()
        with database.db_connection(self.db_path) as conn:
            watchers = database.list_active_watched_repos(conn)

        groups: dict[tuple[str, str], list[WatchedRepo]] = {}
        for watcher in watchers:
            groups.setdefault((watcher.owner.lower(), watcher.repo.lower()), []).append(watcher)

        triggers: dict[Future, int] = {}
        for group in groups.values():
            first = group[0]
            try:
                gateway = self.gateways.for_user(first.user_id)
                issues = gateway.list_open_issues(first.owner, first.repo)
                for watcher in group:
                    self._process_candidates(watcher, issues, gateway, triggers, stats)
            except GatewayError as exc:
                stats["repos_failed"] += 1
                logger.warning(
                    "Polling %s failed: %s", repo_slug(first.owner, first.repo), exc,
                    extra={"repo": repo_slug(first.owner, first.repo)},
                )
                continue
            stats["repos_polled"] += 1

        self._join_triggers(triggers, stats)
        logger.info("Issue poll complete: %s", stats)
        return stats

    def handle_issue_event(self, payload: dict) -> dict:
        stats = _empty_stats()
        if payload.get("action") not in HANDLED_ISSUE_ACTIONS:
            return stats
        raw = payload.get("issue") or {}
        repository = payload.get("repository") or {}
        owner = (repository.get("owner") or {}).get("login", "")
        repo = repository.get("name", "")
        number = raw.get("number")
        if not owner or not repo or "pull_request" in raw:
            return stats
        if not isinstance(number, int):
            logger.warning("Ignoring issues event without an issue number")
            return stats

        issue: UpstreamIssue = {
            "number": number,
            "title": raw.get("title", ""),
            "html_url": raw.get("html_url", ""),
            "labels": label_names(raw.get("labels", [])),
            "body": raw.get("body") or "",
            "type": ISSUE_TYPE,
        }

        with database.db_connection(self.db_path) as conn:
            watchers = database.list_watchers(conn, owner, repo)

        triggers: dict[Future, int] = {}
        for watcher in watchers:
            try:
                gateway = self.gateways.for_user(watcher.user_id)
                self._process_candidates(watcher, [issue], gateway, triggers, stats)
            except GatewayError as exc:
                stats["repos_failed"] += 1
                logger.warning(
                    "Webhook processing of %s#%d failed for watcher %d: %s",
                    repo_slug(owner, repo), issue["number"], watcher.id, exc,
                )
                continue
            stats["repos_polled"] += 1

        self._join_triggers(triggers, stats)
        return stats

    def sync_user(self, user_id: int) -> dict:
        stats = _empty_stats()
        with database.db_connection(self.db_path) as conn:
            watchers = database.list_active_watched_repos(conn, user_id=user_id)

        triggers: dict[Future, int] = {}
        for watcher in watchers:
            try:
                gateway = self.gateways.for_user(user_id)
                candidates = gateway.list_open_issues(watcher.owner, watcher.repo)
                candidates += gateway.list_open_pull_requests(watcher.owner, watcher.repo)
                self._process_candidates(watcher, candidates, gateway, triggers, stats)
            except GatewayError as exc:
                stats["repos_failed"] += 1
                logger.warning(
                    "Sync of %s failed: %s", repo_slug(watcher.owner, watcher.repo), exc,
                    extra={"user_id": user_id},
                )
                continue
            stats["repos_polled"] += 1

        self._join_triggers(triggers, stats)
        return stats

    # -- pipeline ----------------------------------------------------------

    def _process_candidates(
        self,
        watcher: WatchedRepo,
        candidates: list[UpstreamIssue],
        gateway: GitHubGateway,
        triggers: dict[Future, int],
        stats: dict,
    ) -> None:
        for candidate in candidates:
            try:
                issue_id = self._track(watcher, candidate, gateway)
            except GatewayError as exc:
                stats["items_failed"] += 1
                logger.warning(
                    "Evaluating %s#%d failed: %s",
                    repo_slug(watcher.owner, watcher.repo), candidate["number"], exc,
                    extra={"user_id": watcher.user_id},
                )
                continue
            except Exception:
                stats["items_failed"] += 1
                logger.exception(
                    "Evaluating %s#%d failed",
                    repo_slug(watcher.owner, watcher.repo), candidate["number"],
                    extra={"user_id": watcher.user_id},
                )
                continue
            if issue_id is None:
                continue
            is_pr = candidate["type"] == PULL_REQUEST_TYPE
            stats["prs_created" if is_pr else "issues_created"] += 1

            self.dispatcher.dispatch(
                NEW_ISSUE,
                NotificationContext(user_id=watcher.user_id, issue_id=issue_id),
                {
                    "owner": watcher.owner,
                    "repo": watcher.repo,
                    "issue_number": candidate["number"],
                    "issue_title": candidate["title"],
                    "issue_url": candidate["html_url"],
                    "item_type": candidate["type"],
                },
            )

            if not is_pr:
                future = self.executor.submit(self.orchestrator.trigger, issue_id)
                triggers[future] = issue_id

    def _track(
        self, watcher: WatchedRepo, candidate: UpstreamIssue, gateway: GitHubGateway,
    ) -> int | None:
        """Create the tracked row for *candidate*, or return ``None`` to skip it."""
        if not matches_filters(watcher, candidate):
            return None

        with database.db_connection(self.db_path) as conn:
            if database.tracked_issue_exists(conn, watcher.id, candidate["number"]):
                return None

        is_pr = candidate["type"] == PULL_REQUEST_TYPE
        if not is_pr and gateway.issue_has_linked_pr(watcher.owner, watcher.repo, candidate["number"]):
            logger.info(
                "Skipping %s#%d: already has a linked PR",
                repo_slug(watcher.owner, watcher.repo), candidate["number"],
            )
            return None

        with database.db_connection(self.db_path) as conn:
            issue_id = database.insert_tracked_issue(
                conn,
                watcher.id,
                candidate["number"],
                candidate["title"],
                candidate["html_url"],
                candidate["labels"],
                issue_type=candidate["type"],
                auto_fix_status=SKIPPED if is_pr else QUEUED,
            )
        if issue_id is not None:
            logger.info(
                "Tracking %s#%d: %s",
                repo_slug(watcher.owner, watcher.repo), candidate["number"],
                sanitize_log(candidate["title"]),
                extra={"issue_id": issue_id, "user_id": watcher.user_id},
            )
        return issue_id

    def _join_triggers(self, triggers: dict[Future, int], stats: dict) -> None:
        if not triggers:
            return
        results, failed = join_tolerant(triggers, "auto-fix trigger for issue")
        started = sum(1 for ok in results.values() if ok)
        stats["autofix_triggered"] += started
        stats["autofix_failed"] += failed + (len(results) - started)
