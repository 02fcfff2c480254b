"""Unit tests for issue_hunter/fork_repo.py.

Covers: check_fork_exists, create_fork readiness polling, ensure_fork.
"""

import os
import sys
from unittest.mock import MagicMock, patch

import pytest
import requests

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from issue_hunter.fork_repo import check_fork_exists, create_fork, ensure_fork


def _resp(status=200, payload=None):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload or {}
    if status >= 400:
        resp.raise_for_status.side_effect = requests.exceptions.HTTPError(response=resp)
    return resp


class TestCheckForkExists:
    @patch("issue_hunter.fork_repo.request_with_retry")
    def test_fork_found_with_matching_parent(self, mock_req):
        mock_req.return_value = _resp(payload={
            "fork": True, "parent": {"full_name": "acme/widgets"}, "name": "widgets",
        })
        assert check_fork_exists("token", "acme", "widgets", "me") is not None

    @patch("issue_hunter.fork_repo.request_with_retry")
    def test_fork_found_case_insensitive(self, mock_req):
        mock_req.return_value = _resp(payload={
            "fork": True, "parent": {"full_name": "ACME/Widgets"},
        })
        assert check_fork_exists("token", "acme", "widgets", "me") is not None

    @patch("issue_hunter.fork_repo.request_with_retry")
    def test_not_a_fork(self, mock_req):
        mock_req.return_value = _resp(payload={"fork": False})
        assert check_fork_exists("token", "acme", "widgets", "me") is None

    @patch("issue_hunter.fork_repo.request_with_retry")
    def test_fork_of_other_parent(self, mock_req):
        mock_req.return_value = _resp(payload={
            "fork": True, "parent": {"full_name": "other/widgets"},
        })
        assert check_fork_exists("token", "acme", "widgets", "me") is None

    @patch("issue_hunter.fork_repo.request_with_retry")
    def test_missing_repo(self, mock_req):
        mock_req.return_value = _resp(status=404)
        assert check_fork_exists("token", "acme", "widgets", "me") is None


class TestCreateFork:
    @patch("issue_hunter.fork_repo.time.sleep")
    @patch("issue_hunter.fork_repo.request_with_retry")
    def test_waits_until_non_empty(self, mock_req, mock_sleep):
        created = {"url": "https://api.github.com/repos/me/widgets", "name": "widgets"}
        mock_req.side_effect = [
            _resp(status=202, payload=created),
            _resp(payload={"size": 0}),
            _resp(payload={"size": 10, "name": "widgets", "owner": {"login": "me"}}),
        ]
        result = create_fork("token", "acme", "widgets", ready_attempts=5, ready_delay=0.1)
        assert result["size"] == 10
        assert mock_sleep.call_count == 2

    @patch("issue_hunter.fork_repo.time.sleep")
    @patch("issue_hunter.fork_repo.request_with_retry")
    def test_returns_creation_data_when_never_ready(self, mock_req, mock_sleep):
        created = {"url": "https://api.github.com/repos/me/widgets", "name": "widgets"}
        mock_req.side_effect = [_resp(status=202, payload=created)] + [
            _resp(payload={"size": 0}) for _ in range(3)
        ]
        assert create_fork("token", "acme", "widgets", ready_attempts=3, ready_delay=0) == created

    @patch("issue_hunter.fork_repo.request_with_retry")
    def test_creation_error_raises(self, mock_req):
        mock_req.return_value = _resp(status=403)
        with pytest.raises(requests.exceptions.HTTPError):
            create_fork("token", "acme", "widgets")


class TestEnsureFork:
    @patch("issue_hunter.fork_repo.create_fork")
    @patch("issue_hunter.fork_repo.check_fork_exists")
    def test_existing_fork_is_reused(self, mock_check, mock_create):
        mock_check.return_value = {"name": "widgets-fork", "owner": {"login": "me"}}
        assert ensure_fork("t", "acme", "widgets", "me") == {
            "fork_owner": "me", "fork_repo": "widgets-fork",
        }
        mock_create.assert_not_called()

    @patch("issue_hunter.fork_repo.create_fork")
    @patch("issue_hunter.fork_repo.check_fork_exists", return_value=None)
    def test_creates_when_missing(self, _check, mock_create):
        mock_create.return_value = {"name": "widgets", "owner": {"login": "me"}}
        assert ensure_fork("t", "acme", "widgets", "me", ready_attempts=1, ready_delay=0) == {
            "fork_owner": "me", "fork_repo": "widgets",
        }
        mock_create.assert_called_once_with("t", "acme", "widgets", 1, 0)
