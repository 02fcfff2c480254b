"""Data models and the auto-fix state machine.

Rows come out of SQLite as ``sqlite3.Row`` objects; each model exposes a
``from_row`` constructor that decodes JSON columns and integer booleans,
and a ``to_dict`` used by the JSON API.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any, TypedDict

QUEUED = "queued"
GENERATING = "generating"
DRAFT_READY = "draft_ready"
PUBLISHED = "published"
REJECTED = "rejected"
FAILED = "failed"
SKIPPED = "skipped"

AUTO_FIX_STATUSES = frozenset({
    QUEUED, GENERATING, DRAFT_READY, PUBLISHED, REJECTED, FAILED, SKIPPED,
})

# Every legal edge of the auto-fix lifecycle.  Anything else is refused by
# the store before it reaches the database.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    QUEUED: frozenset({GENERATING, SKIPPED}),
    GENERATING: frozenset({DRAFT_READY, FAILED}),
    DRAFT_READY: frozenset({PUBLISHED, REJECTED}),
    SKIPPED: frozenset({QUEUED}),
    FAILED: frozenset({QUEUED}),
    PUBLISHED: frozenset(),
    REJECTED: frozenset(),
}

ISSUE_TYPE = "issue"
PULL_REQUEST_TYPE = "pull_request"

STATE_OPEN = "open"
STATE_CLOSED = "closed"

# Webhook `issues` actions that can surface a new candidate.
HANDLED_ISSUE_ACTIONS = frozenset({"opened", "labeled"})

NEW_ISSUE = "new_issue"
DRAFT_READY_KIND = "draft_ready"
ISSUE_CLOSED = "issue_closed"


def is_legal_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def _json_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return [str(v) for v in value] if isinstance(value, list) else []


class UpstreamIssue(TypedDict):
    number: int
    title: str
    html_url: str
    labels: list[str]
    body: str
    type: str


class AgentPRStatus(TypedDict, total=False):
    has_pr: bool
    pr_number: int
    pr_url: str
    is_draft: bool


class ForkInfo(TypedDict):
    fork_owner: str
    fork_repo: str


@dataclass
class User:
    id: int
    login: str
    name: str = ""
    email: str = ""
    avatar_url: str = ""
    access_token: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> User:
        return cls(
            id=row["id"],
            login=row["login"],
            name=row["name"] or "",
            email=row["email"] or "",
            avatar_url=row["avatar_url"] or "",
            access_token=row["access_token"] or "",
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d.pop("access_token")
        return d


@dataclass
class WatchedRepo:
    id: int
    user_id: int
    owner: str
    repo: str
    label_filters: list[str] = field(default_factory=list)
    title_query: str | None = None
    frozen: bool = False
    is_owned: bool = True
    fork_owner: str | None = None
    fork_repo: str | None = None
    created_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> WatchedRepo:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            owner=row["owner"],
            repo=row["repo"],
            label_filters=_json_list(row["label_filters"]),
            title_query=row["title_query"],
            frozen=bool(row["frozen"]),
            is_owned=bool(row["is_owned"]),
            fork_owner=row["fork_owner"],
            fork_repo=row["fork_repo"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TrackedIssue:
    id: int
    watched_repo_id: int
    issue_number: int
    title: str
    url: str
    type: str = ISSUE_TYPE
    labels: list[str] = field(default_factory=list)
    state: str = STATE_OPEN
    is_read: bool = False
    claimed_at: str | None = None
    archived_at: str | None = None
    auto_fix_status: str = QUEUED
    generating_at: str | None = None
    fork_issue_number: int | None = None
    draft_pr_number: int | None = None
    draft_pr_url: str | None = None
    draft_pr_owner: str | None = None
    published_at: str | None = None
    closed_at: str | None = None
    notified_at: str | None = None
    created_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> TrackedIssue:
        return cls(
            id=row["id"],
            watched_repo_id=row["watched_repo_id"],
            issue_number=row["issue_number"],
            title=row["title"],
            url=row["url"],
            type=row["type"],
            labels=_json_list(row["labels"]),
            state=row["state"],
            is_read=bool(row["is_read"]),
            claimed_at=row["claimed_at"],
            archived_at=row["archived_at"],
            auto_fix_status=row["auto_fix_status"],
            generating_at=row["generating_at"],
            fork_issue_number=row["fork_issue_number"],
            draft_pr_number=row["draft_pr_number"],
            draft_pr_url=row["draft_pr_url"],
            draft_pr_owner=row["draft_pr_owner"],
            published_at=row["published_at"],
            closed_at=row["closed_at"],
            notified_at=row["notified_at"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Notification:
    id: int
    user_id: int
    issue_id: int | None
    message: str
    is_read: bool = False
    created_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Notification:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            issue_id=row["issue_id"],
            message=row["message"],
            is_read=bool(row["is_read"]),
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class NotificationPreferences:
    user_id: int
    email_enabled: bool = False
    push_enabled: bool = False
    new_issue_email: bool = True
    draft_ready_email: bool = True
    new_issue_push: bool = True
    draft_ready_push: bool = True
    push_subscription: dict | None = None

    # Per-kind toggles; kinds without an entry never reach email or push.
    _EMAIL_TOGGLES = {NEW_ISSUE: "new_issue_email", DRAFT_READY_KIND: "draft_ready_email"}
    _PUSH_TOGGLES = {NEW_ISSUE: "new_issue_push", DRAFT_READY_KIND: "draft_ready_push"}

    def wants_email(self, kind: str) -> bool:
        toggle = self._EMAIL_TOGGLES.get(kind)
        return bool(self.email_enabled and toggle and getattr(self, toggle))

    def wants_push(self, kind: str) -> bool:
        toggle = self._PUSH_TOGGLES.get(kind)
        return bool(
            self.push_enabled and toggle and getattr(self, toggle)
            and self.push_subscription
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> NotificationPreferences:
        subscription = None
        raw = row["push_subscription"]
        if raw:
            try:
                subscription = json.loads(raw)
            except json.JSONDecodeError:
                subscription = None
        return cls(
            user_id=row["user_id"],
            email_enabled=bool(row["email_enabled"]),
            push_enabled=bool(row["push_enabled"]),
            new_issue_email=bool(row["new_issue_email"]),
            draft_ready_email=bool(row["draft_ready_email"]),
            new_issue_push=bool(row["new_issue_push"]),
            draft_ready_push=bool(row["draft_ready_push"]),
            push_subscription=subscription if isinstance(subscription, dict) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "email_enabled": self.email_enabled,
            "push_enabled": self.push_enabled,
            "new_issue_email": self.new_issue_email,
            "draft_ready_email": self.draft_ready_email,
            "new_issue_push": self.new_issue_push,
            "draft_ready_push": self.draft_ready_push,
            "has_push_subscription": self.push_subscription is not None,
        }
