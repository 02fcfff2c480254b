"""Tests for the notification dispatcher and the e-mail and push senders."""

import json
import os
import sys
from unittest.mock import MagicMock, patch

import pytest
from pywebpush import WebPushException

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from issue_hunter import database
from issue_hunter.email_sender import RESEND_API_URL, EmailSender
from issue_hunter.models import DRAFT_READY_KIND, ISSUE_CLOSED, NEW_ISSUE
from issue_hunter.notifications import NotificationContext, NotificationDispatcher, build_message
from issue_hunter.push_sender import EXPIRED, FAILED, SENT, SKIPPED, PushSender

_SUB = {"endpoint": "https://push.example/abc", "keys": {"p256dh": "k", "auth": "a"}}

_ISSUE_DATA = {
    "owner": "acme",
    "repo": "widgets",
    "issue_number": 42,
    "issue_title": "Crash on start",
    "issue_url": "https://github.com/acme/widgets/issues/42",
}


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test.db"


@pytest.fixture
def user_id(db_path):
    with database.db_connection(db_path) as conn:
        return database.upsert_user(conn, "octocat", "gho", email="octo@example.com")


@pytest.fixture
def senders():
    email = MagicMock()
    email.new_issue_email.return_value = ("subject", "<p>html</p>")
    email.draft_ready_email.return_value = ("subject", "<p>html</p>")
    push = MagicMock()
    push.send.return_value = SENT
    return email, push


@pytest.fixture
def dispatcher(db_path, senders):
    email, push = senders
    return NotificationDispatcher(db_path, email, push, "https://hunter.example.com")


def _prefs(db_path, user_id, **fields):
    with database.db_connection(db_path) as conn:
        database.upsert_preferences(conn, user_id, **fields)


def _notifications(db_path, user_id):
    with database.db_connection(db_path) as conn:
        return database.query_notifications(conn, user_id)


class TestMessages:
    def test_new_issue(self):
        assert build_message(NEW_ISSUE, _ISSUE_DATA) == "New issue in acme/widgets: #42 - Crash on start"

    def test_new_pull_request(self):
        msg = build_message(NEW_ISSUE, {**_ISSUE_DATA, "item_type": "pull_request"})
        assert msg.startswith("New pull request in acme/widgets")

    def test_draft_ready(self):
        msg = build_message(DRAFT_READY_KIND, {**_ISSUE_DATA, "pr_number": 7})
        assert msg == "Draft PR #7 ready for review: acme/widgets issue #42"

    def test_issue_closed(self):
        assert build_message(ISSUE_CLOSED, _ISSUE_DATA) == "Issue closed in acme/widgets: #42 - Crash on start"

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            build_message("digest", _ISSUE_DATA)


class TestDispatcher:
    def test_in_app_only_without_preferences(self, dispatcher, senders, db_path, user_id):
        nid = dispatcher.dispatch(NEW_ISSUE, NotificationContext(user_id), _ISSUE_DATA)
        assert nid is not None
        assert len(_notifications(db_path, user_id)) == 1
        senders[0].send.assert_not_called()
        senders[1].send.assert_not_called()

    def test_email_when_enabled(self, dispatcher, senders, db_path, user_id):
        _prefs(db_path, user_id, email_enabled=True)
        dispatcher.dispatch(NEW_ISSUE, NotificationContext(user_id), _ISSUE_DATA)
        senders[0].send.assert_called_once_with("octo@example.com", "subject", "<p>html</p>")

    def test_kind_toggle_respected(self, dispatcher, senders, db_path, user_id):
        _prefs(db_path, user_id, email_enabled=True, new_issue_email=False)
        dispatcher.dispatch(NEW_ISSUE, NotificationContext(user_id), _ISSUE_DATA)
        senders[0].send.assert_not_called()

    def test_push_when_subscribed(self, dispatcher, senders, db_path, user_id):
        with database.db_connection(db_path) as conn:
            database.set_push_subscription(conn, user_id, _SUB)
        dispatcher.dispatch(NEW_ISSUE, NotificationContext(user_id), _ISSUE_DATA)
        subscription, payload = senders[1].send.call_args.args
        assert subscription == _SUB
        assert payload["title"] == "New issue in acme/widgets"
        assert payload["icon"] == "/icon-192.png"

    def test_draft_ready_push_links_to_draft(self, dispatcher, senders, db_path, user_id):
        with database.db_connection(db_path) as conn:
            database.set_push_subscription(conn, user_id, _SUB)
        dispatcher.dispatch(
            DRAFT_READY_KIND, NotificationContext(user_id, issue_id=11),
            {**_ISSUE_DATA, "pr_number": 7},
        )
        payload = senders[1].send.call_args.args[1]
        assert payload["title"] == "Draft PR #7 ready"
        assert payload["url"] == "https://hunter.example.com/drafts/11"

    def test_expired_push_clears_subscription(self, dispatcher, senders, db_path, user_id):
        with database.db_connection(db_path) as conn:
            database.set_push_subscription(conn, user_id, _SUB)
        senders[1].send.return_value = EXPIRED
        dispatcher.dispatch(NEW_ISSUE, NotificationContext(user_id), _ISSUE_DATA)
        with database.db_connection(db_path) as conn:
            prefs = database.get_preferences(conn, user_id)
        assert prefs.push_subscription is None
        assert prefs.push_enabled is False

    def test_issue_closed_never_leaves_the_app(self, dispatcher, senders, db_path, user_id):
        _prefs(db_path, user_id, email_enabled=True)
        with database.db_connection(db_path) as conn:
            database.set_push_subscription(conn, user_id, _SUB)
        dispatcher.dispatch(ISSUE_CLOSED, NotificationContext(user_id), _ISSUE_DATA)
        senders[0].send.assert_not_called()
        senders[1].send.assert_not_called()
        assert _notifications(db_path, user_id)[0]["message"].startswith("Issue closed")

    def test_delivery_failures_are_swallowed(self, dispatcher, senders, db_path, user_id):
        _prefs(db_path, user_id, email_enabled=True)
        with database.db_connection(db_path) as conn:
            database.set_push_subscription(conn, user_id, _SUB)
        senders[0].send.side_effect = RuntimeError("smtp down")
        senders[1].send.side_effect = RuntimeError("push down")
        nid = dispatcher.dispatch(NEW_ISSUE, NotificationContext(user_id), _ISSUE_DATA)
        assert nid is not None
        assert len(_notifications(db_path, user_id)) == 1

    def test_in_app_write_failure_is_swallowed(self, dispatcher, user_id):
        with patch("issue_hunter.notifications.database.insert_notification",
                   side_effect=RuntimeError("disk full")):
            assert dispatcher.dispatch(NEW_ISSUE, NotificationContext(user_id), _ISSUE_DATA) is None

    def test_user_without_email_gets_no_email(self, senders, db_path):
        with database.db_connection(db_path) as conn:
            uid = database.upsert_user(conn, "noemail", "gho")
            database.upsert_preferences(conn, uid, email_enabled=True)
        dispatcher = NotificationDispatcher(db_path, senders[0], senders[1], "http://x")
        dispatcher.dispatch(NEW_ISSUE, NotificationContext(uid), _ISSUE_DATA)
        senders[0].send.assert_not_called()


class TestPushSender:
    def test_skipped_without_vapid(self):
        assert PushSender("", "", "").send(_SUB, {}) == SKIPPED

    @patch("issue_hunter.push_sender.webpush")
    def test_sent(self, mock_webpush):
        sender = PushSender("pub", "priv", "ops@example.com")
        assert sender.send(_SUB, {"title": "t"}) == SENT
        kwargs = mock_webpush.call_args.kwargs
        assert kwargs["vapid_claims"] == {"sub": "mailto:ops@example.com"}
        assert json.loads(kwargs["data"]) == {"title": "t"}

    @pytest.mark.parametrize("status,expected", [(410, EXPIRED), (404, EXPIRED), (500, FAILED)])
    @patch("issue_hunter.push_sender.webpush")
    def test_error_statuses(self, mock_webpush, status, expected):
        response = MagicMock()
        response.status_code = status
        mock_webpush.side_effect = WebPushException("push error", response=response)
        assert PushSender("pub", "priv", "ops@example.com").send(_SUB, {}) == expected


class TestEmailSender:
    def test_skipped_without_api_key(self):
        with patch("issue_hunter.email_sender.request_with_retry") as mock_req:
            assert EmailSender("", "from@example.com", "http://x").send("to@example.com", "s", "h") is False
        mock_req.assert_not_called()

    @patch("issue_hunter.email_sender.request_with_retry")
    def test_sends_through_resend(self, mock_req):
        mock_req.return_value = MagicMock(ok=True, status_code=200)
        sender = EmailSender("re_key", "from@example.com", "http://x")
        assert sender.send("to@example.com", "Subject", "<p>hi</p>") is True
        args, kwargs = mock_req.call_args
        assert args == ("POST", RESEND_API_URL)
        assert kwargs["headers"]["Authorization"] == "Bearer re_key"
        assert kwargs["json"]["to"] == ["to@example.com"]

    @patch("issue_hunter.email_sender.request_with_retry")
    def test_rejected_returns_false(self, mock_req):
        mock_req.return_value = MagicMock(ok=False, status_code=422, text="bad")
        assert EmailSender("re_key", "f@example.com", "http://x").send("t@example.com", "s", "h") is False

    def test_templates_render_and_escape(self):
        sender = EmailSender("re_key", "f@example.com", "https://hunter.example.com/")
        subject, html = sender.new_issue_email(
            "acme", "widgets", 42, "<script>alert(1)</script>", "https://github.com/acme/widgets/issues/42",
        )
        assert subject == "New issue in acme/widgets: #42"
        assert "&lt;script&gt;" in html
        assert "https://hunter.example.com/dashboard/settings" in html

        subject, html = sender.draft_ready_email("acme", "widgets", 42, 7, "https://hunter.example.com/drafts/1")
        assert subject == "Draft PR #7 ready for review: acme/widgets"
        assert "Draft PR #7" in html
