"""Notification fan-out: in-app row, then e-mail and push per preferences.

The in-app notification is always written first.  E-mail and push are
best effort: delivery problems are logged and swallowed so that the
discovery, polling and reconciliation workflows that call
:meth:`NotificationDispatcher.dispatch` are never interrupted by them.
"""

from __future__ import annotations

import pathlib
from dataclasses import dataclass

from issue_hunter import database
from issue_hunter.email_sender import EmailSender
from issue_hunter.logging_config import setup_logging
from issue_hunter.models import DRAFT_READY_KIND, ISSUE_CLOSED, NEW_ISSUE, PULL_REQUEST_TYPE
from issue_hunter.push_sender import EXPIRED, PushSender, draft_ready_payload, new_issue_payload

logger = setup_logging(__name__)

@dataclass(frozen=True)
class NotificationContext:
    user_id: int
    issue_id: int | None = None


def item_label(data: dict) -> str:
    return "pull request" if data.get("item_type") == PULL_REQUEST_TYPE else "issue"


def build_message(kind: str, data: dict) -> str:
    slug = f"{data['owner']}/{data['repo']}"
    if kind == NEW_ISSUE:
        return f"New {item_label(data)} in {slug}: #{data['issue_number']} - {data['issue_title']}"
    if kind == DRAFT_READY_KIND:
        return f"Draft PR #{data['pr_number']} ready for review: {slug} issue #{data['issue_number']}"
    if kind == ISSUE_CLOSED:
        return f"Issue closed in {slug}: #{data['issue_number']} - {data['issue_title']}"
    raise ValueError(f"Unknown notification kind: {kind}")


class NotificationDispatcher:
    def __init__(
        self,
        db_path: str | pathlib.Path,
        email_sender: EmailSender,
        push_sender: PushSender,
        app_base_url: str,
    ) -> None:
        self.db_path = db_path
        self.email_sender = email_sender
        self.push_sender = push_sender
        self.app_base_url = app_base_url.rstrip("/")

    def draft_url(self, issue_id: int | None) -> str:
        return f"{self.app_base_url}/drafts/{issue_id}"

    def dispatch(self, kind: str, context: NotificationContext, data: dict) -> int | None:
        """Notify ``context.user_id`` about an event of *kind*.

        *data* carries ``owner``, ``repo``, ``issue_number`` and, depending
        on the kind, ``issue_title``, ``issue_url``, ``item_type`` and
        ``pr_number``.  Returns the in-app notification id, or ``None`` if
        even that could not be written.  Unknown kinds raise ``ValueError``;
        nothing else escapes.
        """
        message = build_message(kind, data)

        try:
            with database.db_connection(self.db_path) as conn:
                notification_id = database.insert_notification(
                    conn, context.user_id, message, context.issue_id,
                )
                user = database.get_user(conn, context.user_id)
                prefs = database.get_preferences(conn, context.user_id)
        except Exception:
            logger.warning(
                "Could not record %s notification for user %s", kind, context.user_id,
                exc_info=True,
            )
            return None

        if user is None or prefs is None:
            return notification_id

        if prefs.wants_email(kind) and user.email:
            self._send_email(kind, user.email, context, data)

        if prefs.wants_push(kind):
            self._send_push(kind, prefs.push_subscription, context, data)

        return notification_id

    def _send_email(self, kind: str, to: str, context: NotificationContext, data: dict) -> None:
        try:
            if kind == NEW_ISSUE:
                subject, html = self.email_sender.new_issue_email(
                    data["owner"], data["repo"], data["issue_number"],
                    data["issue_title"], data["issue_url"], item_label(data),
                )
            else:
                subject, html = self.email_sender.draft_ready_email(
                    data["owner"], data["repo"], data["issue_number"],
                    data["pr_number"], self.draft_url(context.issue_id),
                )
            self.email_sender.send(to, subject, html)
        except Exception:
            logger.warning(
                "Email delivery failed for user %s", context.user_id, exc_info=True,
            )

    def _send_push(
        self, kind: str, subscription: dict | None, context: NotificationContext, data: dict,
    ) -> None:
        if kind == NEW_ISSUE:
            payload = new_issue_payload(
                data["owner"], data["repo"], data["issue_number"],
                data["issue_title"], data["issue_url"], item_label(data),
            )
        else:
            payload = draft_ready_payload(
                data["owner"], data["repo"], data["issue_number"],
                data["pr_number"], self.draft_url(context.issue_id),
            )
        try:
            result = self.push_sender.send(subscription or {}, payload)
            if result == EXPIRED:
                with database.db_connection(self.db_path) as conn:
                    database.set_push_subscription(conn, context.user_id, None)
                logger.info(
                    "Cleared expired push subscription", extra={"user_id": context.user_id},
                )
        except Exception:
            logger.warning(
                "Push delivery failed for user %s", context.user_id, exc_info=True,
            )
