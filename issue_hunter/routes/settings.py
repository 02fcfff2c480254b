"""Notification settings and push subscription blueprint."""

import logging

from flask import Blueprint, jsonify, request as flask_request

from issue_hunter import database
from issue_hunter.helpers import require_login, service
from issue_hunter.models import NotificationPreferences

log = logging.getLogger(__name__)

settings_bp = Blueprint("settings", __name__)

_PREFERENCE_FIELDS = (
    "email_enabled",
    "push_enabled",
    "new_issue_email",
    "draft_ready_email",
    "new_issue_push",
    "draft_ready_push",
)


def _db_path():
    return service("APP_CONFIG").db_path


@settings_bp.route("/api/settings/notifications", methods=["GET"])
@require_login
def get_settings(user_id: int):
    with database.db_connection(_db_path()) as conn:
        prefs = database.get_preferences(conn, user_id)
    if prefs is None:
        prefs = NotificationPreferences(user_id=user_id)
    result = prefs.to_dict()
    result["vapid_public_key"] = service("APP_CONFIG").vapid_public_key
    return jsonify(result)


@settings_bp.route("/api/settings/notifications", methods=["PATCH", "PUT"])
@require_login
def update_settings(user_id: int):
    body = flask_request.get_json(silent=True) or {}
    fields = {k: bool(body[k]) for k in _PREFERENCE_FIELDS if k in body}
    with database.db_connection(_db_path()) as conn:
        prefs = database.upsert_preferences(conn, user_id, **fields)
    return jsonify(prefs.to_dict())


@settings_bp.route("/api/push/subscribe", methods=["POST"])
@require_login
def subscribe(user_id: int):
    body = flask_request.get_json(silent=True) or {}
    subscription = body.get("subscription", body)
    keys = subscription.get("keys") if isinstance(subscription, dict) else None
    if not (isinstance(subscription, dict) and subscription.get("endpoint")
            and isinstance(keys, dict) and keys.get("p256dh") and keys.get("auth")):
        return jsonify({"error": "Invalid subscription"}), 400
    with database.db_connection(_db_path()) as conn:
        database.set_push_subscription(conn, user_id, {
            "endpoint": subscription["endpoint"],
            "keys": {"p256dh": keys["p256dh"], "auth": keys["auth"]},
        })
    log.info("Push subscription stored for user %s", user_id)
    return jsonify({"success": True})


@settings_bp.route("/api/push/subscribe", methods=["DELETE"])
@require_login
def unsubscribe(user_id: int):
    with database.db_connection(_db_path()) as conn:
        database.set_push_subscription(conn, user_id, None)
    return jsonify({"success": True})
