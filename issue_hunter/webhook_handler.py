"""GitHub webhook event processing.

Payloads are verified via HMAC-SHA256 before processing.

Supported events
----------------
issues
    ``opened`` and ``labeled`` actions are routed to issue discovery;
    other actions are acknowledged and ignored.
ping
    Sent once when the webhook is created; answered with ``pong``.

Any other event type is acknowledged and ignored.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Callable

from issue_hunter.log_utils import sanitize_log
from issue_hunter.models import HANDLED_ISSUE_ACTIONS

log = logging.getLogger(__name__)


def verify_signature(payload_body: bytes, signature: str, secret: str) -> bool:
    if not signature or not secret:
        return False
    expected = "sha256=" + hmac.new(
        secret.encode(), payload_body, hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature)


def route_event(event_type: str, payload: dict) -> dict:
    handler = _EVENT_HANDLERS.get(event_type)
    if handler is None:
        log.debug("Ignoring unhandled event: %s", sanitize_log(event_type))
        return {"status": "ignored", "event": event_type}
    return handler(payload)


def handle_issues(payload: dict) -> dict:
    action = payload.get("action", "")
    if action not in HANDLED_ISSUE_ACTIONS:
        return {"status": "ignored", "event": "issues", "action": action}

    issue = payload.get("issue") or {}
    repository = payload.get("repository") or {}
    if not issue or not repository or "pull_request" in issue:
        return {"status": "ignored", "event": "issues", "action": action}

    full_name = repository.get("full_name", "")
    log.info(
        "Issue %s on %s#%s", sanitize_log(action), sanitize_log(full_name), issue.get("number"),
    )
    return {
        "status": "issue_event",
        "action": action,
        "repository": full_name,
        "issue_number": issue.get("number"),
    }


def handle_ping(payload: dict) -> dict:
    hook_id = payload.get("hook_id")
    log.info("Webhook ping (hook %s)", sanitize_log(hook_id))
    return {"status": "pong", "hook_id": hook_id}


_EVENT_HANDLERS: dict[str, Callable[[dict], dict]] = {
    "issues": handle_issues,
    "ping": handle_ping,
}
