"""Browser push delivery (Web Push with VAPID) via pywebpush."""

from __future__ import annotations

import json

from pywebpush import WebPushException, webpush

from issue_hunter.logging_config import setup_logging

logger = setup_logging(__name__)

SENT = "sent"
EXPIRED = "expired"
FAILED = "failed"
SKIPPED = "skipped"

ICON = "/icon-192.png"


def new_issue_payload(
    owner: str, repo: str, issue_number: int, issue_title: str, issue_url: str,
    item_type: str = "issue",
) -> dict:
    return {
        "title": f"New {item_type} in {owner}/{repo}",
        "body": f"#{issue_number} - {issue_title}",
        "url": issue_url,
        "icon": ICON,
    }


def draft_ready_payload(
    owner: str, repo: str, issue_number: int, pr_number: int, draft_url: str,
) -> dict:
    return {
        "title": f"Draft PR #{pr_number} ready",
        "body": f"{owner}/{repo} issue #{issue_number}",
        "url": draft_url,
        "icon": ICON,
    }


class PushSender:
    def __init__(self, public_key: str, private_key: str, contact_email: str) -> None:
        self.public_key = public_key
        self.private_key = private_key
        self.contact_email = contact_email

    @property
    def configured(self) -> bool:
        return bool(self.public_key and self.private_key and self.contact_email)

    def send(self, subscription: dict, payload: dict) -> str:
        """Deliver *payload* to one subscription.

        Returns ``"sent"``, ``"expired"`` (the push service answered 404 or
        410, so the subscription is gone), ``"failed"`` or ``"skipped"``
        when VAPID keys are not configured.
        """
        if not self.configured:
            logger.warning("VAPID not configured, skipping push")
            return SKIPPED

        endpoint = str(subscription.get("endpoint", ""))[:60]
        sub = self.contact_email
        if not sub.startswith("mailto:"):
            sub = f"mailto:{sub}"
        try:
            webpush(
                subscription_info=subscription,
                data=json.dumps(payload),
                vapid_private_key=self.private_key,
                vapid_claims={"sub": sub},
                timeout=30,
            )
        except WebPushException as exc:
            status = exc.response.status_code if exc.response is not None else None
            if status in (404, 410):
                logger.info("Push subscription expired at %s... (status %s)", endpoint, status)
                return EXPIRED
            logger.warning("Push failed to %s... (status %s): %s", endpoint, status, exc)
            return FAILED
        logger.info("Push sent to %s...", endpoint)
        return SENT
