"""Unit tests for issue_hunter/models.py -- transition table and preferences."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from issue_hunter.models import (
    ALLOWED_TRANSITIONS,
    AUTO_FIX_STATUSES,
    DRAFT_READY,
    DRAFT_READY_KIND,
    FAILED,
    GENERATING,
    ISSUE_CLOSED,
    NEW_ISSUE,
    PUBLISHED,
    QUEUED,
    REJECTED,
    SKIPPED,
    NotificationPreferences,
    User,
    is_legal_transition,
)


class TestTransitions:
    @pytest.mark.parametrize("src,dst", [
        (QUEUED, GENERATING),
        (QUEUED, SKIPPED),
        (SKIPPED, QUEUED),
        (GENERATING, DRAFT_READY),
        (GENERATING, FAILED),
        (DRAFT_READY, PUBLISHED),
        (DRAFT_READY, REJECTED),
        (FAILED, QUEUED),
    ])
    def test_legal(self, src, dst):
        assert is_legal_transition(src, dst)

    @pytest.mark.parametrize("src,dst", [
        (QUEUED, DRAFT_READY),
        (GENERATING, PUBLISHED),
        (SKIPPED, GENERATING),
        (PUBLISHED, QUEUED),
        (REJECTED, DRAFT_READY),
        (FAILED, GENERATING),
        (DRAFT_READY, FAILED),
    ])
    def test_illegal(self, src, dst):
        assert not is_legal_transition(src, dst)

    def test_terminal_states_have_no_exits(self):
        assert ALLOWED_TRANSITIONS[PUBLISHED] == frozenset()
        assert ALLOWED_TRANSITIONS[REJECTED] == frozenset()

    def test_table_covers_every_status(self):
        assert set(ALLOWED_TRANSITIONS) == set(AUTO_FIX_STATUSES)

    def test_unknown_status(self):
        assert not is_legal_transition("bogus", QUEUED)


class TestNotificationPreferences:
    def test_defaults_disable_channels(self):
        prefs = NotificationPreferences(user_id=1)
        assert not prefs.wants_email(NEW_ISSUE)
        assert not prefs.wants_push(NEW_ISSUE)

    def test_email_requires_master_and_kind_toggle(self):
        prefs = NotificationPreferences(user_id=1, email_enabled=True, draft_ready_email=False)
        assert prefs.wants_email(NEW_ISSUE)
        assert not prefs.wants_email(DRAFT_READY_KIND)

    def test_push_requires_subscription(self):
        prefs = NotificationPreferences(user_id=1, push_enabled=True)
        assert not prefs.wants_push(NEW_ISSUE)
        prefs.push_subscription = {"endpoint": "https://push.example/abc"}
        assert prefs.wants_push(NEW_ISSUE)

    def test_issue_closed_is_in_app_only(self):
        prefs = NotificationPreferences(
            user_id=1, email_enabled=True, push_enabled=True,
            push_subscription={"endpoint": "https://push.example/abc"},
        )
        assert not prefs.wants_email(ISSUE_CLOSED)
        assert not prefs.wants_push(ISSUE_CLOSED)

    def test_to_dict_hides_subscription(self):
        prefs = NotificationPreferences(user_id=1, push_subscription={"endpoint": "x"})
        d = prefs.to_dict()
        assert d["has_push_subscription"] is True
        assert "push_subscription" not in d


def test_user_to_dict_drops_token():
    user = User(id=1, login="octocat", access_token="gho_secret")
    assert "access_token" not in user.to_dict()
    assert user.to_dict()["login"] == "octocat"
