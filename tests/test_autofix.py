"""Tests for issue_hunter/autofix.py -- the auto-fix lifecycle."""

import os
import sys
from concurrent.futures import Executor, Future
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from issue_hunter import database
from issue_hunter.autofix import (
    POLL_DRAFT_READY,
    POLL_GENERATING,
    POLL_SKIPPED,
    POLL_TIMED_OUT,
    ActionFailed,
    AutoFixOrchestrator,
    NotFoundError,
    PreconditionError,
)
from issue_hunter.github_gateway import GatewayError, GitHubGateway
from issue_hunter.models import (
    DRAFT_READY,
    FAILED,
    GENERATING,
    PUBLISHED,
    PULL_REQUEST_TYPE,
    QUEUED,
    REJECTED,
    SKIPPED,
)
from issue_hunter.notifications import NotificationDispatcher

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _InlineExecutor(Executor):
    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


@pytest.fixture
def env(tmp_path):
    db_path = tmp_path / "test.db"
    with database.db_connection(db_path) as conn:
        user_id = database.upsert_user(conn, "octocat", "gho")
        owned_id = database.insert_watched_repo(conn, user_id, "acme", "widgets")
        fork_id = database.insert_watched_repo(
            conn, user_id, "upstream", "lib", is_owned=False,
            fork_owner="octocat", fork_repo="lib-fork",
        )

    gw = MagicMock()
    gw.assign_coding_agent.return_value = {"success": True, "agent_id": "BOT_1"}
    gw.check_agent_pr_status.return_value = {"has_pr": False}
    gw.find_agent_pr_on_fork.return_value = {"has_pr": False}
    gw.find_coding_agent.return_value = "BOT_1"
    gw.create_linked_fork_issue.return_value = 7
    gateways = MagicMock()
    gateways.for_user.return_value = gw

    clock = {"now": T0}
    dispatcher = NotificationDispatcher(db_path, MagicMock(), MagicMock(), "http://x")
    orchestrator = AutoFixOrchestrator(
        db_path, gateways, dispatcher, _InlineExecutor(), now=lambda: clock["now"],
    )
    return {
        "orc": orchestrator,
        "db_path": db_path,
        "user_id": user_id,
        "owned_id": owned_id,
        "fork_id": fork_id,
        "gw": gw,
        "clock": clock,
    }


def _add_issue(env, repo_key="owned_id", number=42, issue_type="issue", status=QUEUED):
    with database.db_connection(env["db_path"]) as conn:
        return database.insert_tracked_issue(
            conn, env[repo_key], number, f"Issue {number}", f"https://x/{number}", [],
            issue_type=issue_type, auto_fix_status=status,
        )


def _issue(env, issue_id):
    with database.db_connection(env["db_path"]) as conn:
        return database.get_tracked_issue(conn, issue_id)


def _set_generating(env, issue_id, started=T0, **fields):
    with database.db_connection(env["db_path"]) as conn:
        assert database.transition_status(
            conn, issue_id, QUEUED, GENERATING, generating_at=started.isoformat(), **fields,
        )


def _set_draft_ready(env, issue_id, pr_number=3, pr_owner="acme"):
    _set_generating(env, issue_id)
    with database.db_connection(env["db_path"]) as conn:
        assert database.transition_status(
            conn, issue_id, GENERATING, DRAFT_READY,
            draft_pr_number=pr_number, draft_pr_url=f"https://x/pull/{pr_number}",
            draft_pr_owner=pr_owner,
        )


class TestTrigger:
    def test_owned_repo_assigns_upstream(self, env):
        issue_id = _add_issue(env)
        assert env["orc"].trigger(issue_id) is True

        env["gw"].assign_coding_agent.assert_called_once_with("acme", "widgets", 42)
        issue = _issue(env, issue_id)
        assert issue.auto_fix_status == GENERATING
        assert issue.generating_at == T0.isoformat()

    def test_second_trigger_is_refused(self, env):
        issue_id = _add_issue(env)
        assert env["orc"].trigger(issue_id) is True
        assert env["orc"].trigger(issue_id) is False
        assert env["gw"].assign_coding_agent.call_count == 1

    def test_claimed_issue_is_refused(self, env):
        issue_id = _add_issue(env)
        with database.db_connection(env["db_path"]) as conn:
            database.update_issue(conn, issue_id, claimed_at=T0.isoformat())
        assert env["orc"].trigger(issue_id) is False
        assert _issue(env, issue_id).auto_fix_status == QUEUED
        env["gw"].assign_coding_agent.assert_not_called()

    def test_pull_request_row_is_refused(self, env):
        issue_id = _add_issue(env, issue_type=PULL_REQUEST_TYPE)
        assert env["orc"].trigger(issue_id) is False
        env["gw"].assign_coding_agent.assert_not_called()

    def test_missing_issue(self, env):
        assert env["orc"].trigger(999) is False

    def test_unsuccessful_assignment_marks_failed(self, env):
        env["gw"].assign_coding_agent.return_value = {"success": False}
        issue_id = _add_issue(env)
        assert env["orc"].trigger(issue_id) is False
        assert _issue(env, issue_id).auto_fix_status == FAILED

    def test_gateway_error_marks_failed(self, env):
        env["gw"].assign_coding_agent.side_effect = GatewayError("boom", status_code=502)
        issue_id = _add_issue(env)
        assert env["orc"].trigger(issue_id) is False
        assert _issue(env, issue_id).auto_fix_status == FAILED

    def test_unexpected_error_marks_failed(self, env):
        env["gw"].assign_coding_agent.side_effect = KeyError("number")
        issue_id = _add_issue(env)
        assert env["orc"].trigger(issue_id) is False
        assert _issue(env, issue_id).auto_fix_status == FAILED

    def test_html_response_marks_failed(self, env):
        html = MagicMock(status_code=200, headers={})
        html.json.side_effect = requests.exceptions.JSONDecodeError("Expecting value", "<html>", 0)
        env["orc"].gateways = MagicMock()
        env["orc"].gateways.for_user.return_value = GitHubGateway("gho")
        issue_id = _add_issue(env)
        with patch("issue_hunter.retry_utils.requests.request", return_value=html):
            assert env["orc"].trigger(issue_id) is False
        assert _issue(env, issue_id).auto_fix_status == FAILED

    def test_fork_repo_mirrors_and_assigns_on_fork(self, env):
        issue_id = _add_issue(env, "fork_id", number=9)
        assert env["orc"].trigger(issue_id) is True

        env["gw"].find_coding_agent.assert_called_once_with("octocat", "lib-fork")
        env["gw"].create_linked_fork_issue.assert_called_once_with(
            "upstream", "lib", 9, "octocat", "lib-fork",
        )
        env["gw"].assign_coding_agent.assert_called_once_with(
            "octocat", "lib-fork", 7, agent_id="BOT_1",
        )
        issue = _issue(env, issue_id)
        assert issue.fork_issue_number == 7
        assert issue.auto_fix_status == GENERATING

    def test_fork_without_agent_fails_before_mirroring(self, env):
        env["gw"].find_coding_agent.return_value = None
        issue_id = _add_issue(env, "fork_id", number=9)
        assert env["orc"].trigger(issue_id) is False
        env["gw"].create_linked_fork_issue.assert_not_called()
        env["gw"].assign_coding_agent.assert_not_called()
        assert _issue(env, issue_id).auto_fix_status == FAILED

    def test_unowned_repo_without_fork_fails(self, env):
        with database.db_connection(env["db_path"]) as conn:
            repo_id = database.insert_watched_repo(
                conn, env["user_id"], "other", "thing", is_owned=False,
            )
        env["bare_id"] = repo_id
        issue_id = _add_issue(env, "bare_id")
        assert env["orc"].trigger(issue_id) is False
        env["gw"].assign_coding_agent.assert_not_called()
        assert _issue(env, issue_id).auto_fix_status == FAILED


class TestPolling:
    def test_draft_found_on_owned_repo(self, env):
        issue_id = _add_issue(env)
        _set_generating(env, issue_id)
        env["gw"].check_agent_pr_status.return_value = {
            "has_pr": True, "pr_number": 5, "pr_url": "https://x/pull/5", "is_draft": True,
        }

        assert env["orc"].poll_issue(issue_id) == POLL_DRAFT_READY
        issue = _issue(env, issue_id)
        assert issue.auto_fix_status == DRAFT_READY
        assert issue.draft_pr_number == 5
        assert issue.draft_pr_owner == "acme"

        with database.db_connection(env["db_path"]) as conn:
            notes = database.query_notifications(conn, env["user_id"])
        assert notes[0]["message"] == "Draft PR #5 ready for review: acme/widgets issue #42"
        assert notes[0]["issue_id"] == issue_id

    def test_no_pr_yet(self, env):
        issue_id = _add_issue(env)
        _set_generating(env, issue_id)
        assert env["orc"].poll_issue(issue_id) == POLL_GENERATING
        assert _issue(env, issue_id).auto_fix_status == GENERATING

    def test_timeout_wins_over_a_ready_pr(self, env):
        issue_id = _add_issue(env)
        _set_generating(env, issue_id)
        env["gw"].check_agent_pr_status.return_value = {"has_pr": True, "pr_number": 5}
        env["clock"]["now"] = T0 + timedelta(hours=2, minutes=1)

        assert env["orc"].poll_issue(issue_id) == POLL_TIMED_OUT
        assert _issue(env, issue_id).auto_fix_status == FAILED
        env["gw"].check_agent_pr_status.assert_not_called()

    def test_just_under_timeout_still_checks(self, env):
        issue_id = _add_issue(env)
        _set_generating(env, issue_id)
        env["clock"]["now"] = T0 + timedelta(hours=1, minutes=59)
        assert env["orc"].poll_issue(issue_id) == POLL_GENERATING

    def test_fork_falls_back_to_scanning_fork_prs(self, env):
        issue_id = _add_issue(env, "fork_id", number=9)
        _set_generating(env, issue_id, fork_issue_number=7)
        env["gw"].find_agent_pr_on_fork.return_value = {
            "has_pr": True, "pr_number": 11, "pr_url": "https://x/pull/11",
        }

        assert env["orc"].poll_issue(issue_id) == POLL_DRAFT_READY
        env["gw"].check_agent_pr_status.assert_called_once_with("octocat", "lib-fork", 7)
        env["gw"].find_agent_pr_on_fork.assert_called_once_with(
            "octocat", "lib-fork", "upstream", "lib", 9,
        )
        issue = _issue(env, issue_id)
        assert issue.draft_pr_owner == "octocat"
        assert issue.draft_pr_number == 11

    def test_not_generating_is_skipped(self, env):
        issue_id = _add_issue(env)
        assert env["orc"].poll_issue(issue_id) == POLL_SKIPPED

    def test_poll_generating_counts_outcomes_and_errors(self, env):
        ready = _add_issue(env, number=1)
        waiting = _add_issue(env, number=2)
        broken = _add_issue(env, number=3)
        for issue_id in (ready, waiting, broken):
            _set_generating(env, issue_id)

        def check(owner, repo, number):
            if number == 1:
                return {"has_pr": True, "pr_number": 20}
            if number == 3:
                raise GatewayError("rate limited", status_code=403)
            return {"has_pr": False}

        env["gw"].check_agent_pr_status.side_effect = check
        stats = env["orc"].poll_generating()

        assert stats == {
            "polled": 3, "draft_ready": 1, "timed_out": 0,
            "still_generating": 1, "errors": 1,
        }
        assert _issue(env, broken).auto_fix_status == GENERATING


class TestDraftActions:
    def test_publish_owned(self, env):
        issue_id = _add_issue(env)
        _set_draft_ready(env, issue_id)

        result = env["orc"].publish(env["user_id"], issue_id)
        env["gw"].publish_draft_pr.assert_called_once_with("acme", "widgets", 3)
        assert result["auto_fix_status"] == PUBLISHED
        assert result["published_at"] == T0.isoformat()
        assert result["owner"] == "acme"

    def test_publish_targets_fork(self, env):
        issue_id = _add_issue(env, "fork_id", number=9)
        _set_draft_ready(env, issue_id, pr_number=11, pr_owner="octocat")

        env["orc"].publish(env["user_id"], issue_id)
        env["gw"].publish_draft_pr.assert_called_once_with("octocat", "lib-fork", 11)

    def test_reject_targets_fork(self, env):
        issue_id = _add_issue(env, "fork_id", number=9)
        _set_draft_ready(env, issue_id, pr_number=11, pr_owner="octocat")

        result = env["orc"].reject(env["user_id"], issue_id)
        env["gw"].close_draft_pr.assert_called_once_with("octocat", "lib-fork", 11)
        assert result["auto_fix_status"] == REJECTED

    def test_not_draft_ready_is_not_found(self, env):
        issue_id = _add_issue(env)
        with pytest.raises(NotFoundError):
            env["orc"].publish(env["user_id"], issue_id)

    def test_other_users_issue_is_not_found(self, env):
        issue_id = _add_issue(env)
        _set_draft_ready(env, issue_id)
        with pytest.raises(NotFoundError):
            env["orc"].publish(env["user_id"] + 1, issue_id)

    def test_missing_pr_number(self, env):
        issue_id = _add_issue(env)
        _set_generating(env, issue_id)
        with database.db_connection(env["db_path"]) as conn:
            database.transition_status(conn, issue_id, GENERATING, DRAFT_READY)
        with pytest.raises(PreconditionError) as exc_info:
            env["orc"].reject(env["user_id"], issue_id)
        assert exc_info.value.status_code == 400

    def test_gateway_failure_leaves_draft(self, env):
        issue_id = _add_issue(env)
        _set_draft_ready(env, issue_id)
        env["gw"].publish_draft_pr.side_effect = GatewayError("nope", status_code=422)

        with pytest.raises(ActionFailed) as exc_info:
            env["orc"].publish(env["user_id"], issue_id)
        assert exc_info.value.status_code == 500
        assert _issue(env, issue_id).auto_fix_status == DRAFT_READY

    def test_get_draft(self, env):
        issue_id = _add_issue(env, "fork_id", number=9)
        _set_draft_ready(env, issue_id, pr_number=11, pr_owner="octocat")
        draft = env["orc"].get_draft(env["user_id"], issue_id)
        assert draft["draft_pr_number"] == 11
        assert draft["is_owned"] is False
        assert draft["owner"] == "upstream"


class TestClaimAndQueue:
    def test_claim_and_unclaim(self, env):
        issue_id = _add_issue(env)
        claimed = env["orc"].claim(env["user_id"], issue_id)
        assert claimed["auto_fix_status"] == SKIPPED
        assert claimed["claimed_at"] == T0.isoformat()

        assert env["orc"].trigger(issue_id) is False

        unclaimed = env["orc"].unclaim(env["user_id"], issue_id)
        assert unclaimed["auto_fix_status"] == QUEUED
        assert unclaimed["claimed_at"] is None

    def test_claim_requires_queued(self, env):
        issue_id = _add_issue(env)
        _set_generating(env, issue_id)
        with pytest.raises(PreconditionError) as exc_info:
            env["orc"].claim(env["user_id"], issue_id)
        assert exc_info.value.status_code == 409

    def test_unclaim_refuses_pull_request_rows(self, env):
        issue_id = _add_issue(env, issue_type=PULL_REQUEST_TYPE, status=SKIPPED)
        with pytest.raises(PreconditionError):
            env["orc"].unclaim(env["user_id"], issue_id)

    def test_retry_starts_agent(self, env):
        issue_id = _add_issue(env)
        result = env["orc"].retry(env["user_id"], issue_id)
        assert result["auto_fix_status"] == GENERATING

    def test_retry_failure(self, env):
        env["gw"].assign_coding_agent.return_value = {"success": False}
        issue_id = _add_issue(env)
        with pytest.raises(ActionFailed):
            env["orc"].retry(env["user_id"], issue_id)
        assert _issue(env, issue_id).auto_fix_status == FAILED

    def test_requeue_clears_previous_attempt(self, env):
        issue_id = _add_issue(env, "fork_id", number=9)
        _set_generating(env, issue_id, fork_issue_number=7)
        with database.db_connection(env["db_path"]) as conn:
            database.transition_status(conn, issue_id, GENERATING, FAILED)

        result = env["orc"].requeue(env["user_id"], issue_id)
        assert result["auto_fix_status"] == QUEUED
        assert result["generating_at"] is None
        assert result["fork_issue_number"] is None

    def test_requeue_requires_failed(self, env):
        issue_id = _add_issue(env)
        with pytest.raises(PreconditionError):
            env["orc"].requeue(env["user_id"], issue_id)
