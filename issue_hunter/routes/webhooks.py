"""GitHub webhook receiver."""

import logging

from flask import Blueprint, jsonify, request as flask_request

from issue_hunter.helpers import service
from issue_hunter.log_utils import sanitize_log
from issue_hunter.webhook_handler import route_event, verify_signature

log = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__)


@webhooks_bp.route("/api/webhooks/github", methods=["POST"])
def github_webhook():
    config = service("APP_CONFIG")
    signature = flask_request.headers.get("X-Hub-Signature-256", "")
    if not verify_signature(flask_request.get_data(), signature, config.webhook_secret):
        return jsonify({"error": "Invalid signature"}), 401

    event_type = flask_request.headers.get("X-GitHub-Event", "")
    delivery_id = flask_request.headers.get("X-GitHub-Delivery", "")
    payload = flask_request.get_json(silent=True) or {}

    log.info("Webhook: event=%s delivery=%s", sanitize_log(event_type), sanitize_log(delivery_id))

    result = route_event(event_type, payload)
    if result.get("status") != "issue_event":
        return jsonify({"received": True, **result})

    try:
        stats = service("DISCOVERY").handle_issue_event(payload)
    except Exception:
        log.exception("Webhook processing failed for delivery %s", sanitize_log(delivery_id))
        return jsonify({"error": "Internal server error"}), 500
    return jsonify({"received": True, **result, **stats})
