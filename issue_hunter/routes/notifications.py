"""In-app notification blueprint."""

from flask import Blueprint, jsonify, request as flask_request

from issue_hunter import database
from issue_hunter.helpers import _arg_flag, require_login, service

notifications_bp = Blueprint("notifications", __name__)


def _db_path():
    return service("APP_CONFIG").db_path


@notifications_bp.route("/api/notifications", methods=["GET"])
@require_login
def list_notifications(user_id: int):
    try:
        limit = min(200, max(1, int(flask_request.args.get("limit", 50))))
    except ValueError:
        limit = 50
    with database.db_connection(_db_path()) as conn:
        items = database.query_notifications(
            conn, user_id, unread_only=_arg_flag("unread"), limit=limit,
        )
        unread = database.unread_notification_count(conn, user_id)
    return jsonify({"items": items, "unread_count": unread})


@notifications_bp.route("/api/notifications", methods=["PATCH"])
@require_login
def mark_all_read(user_id: int):
    with database.db_connection(_db_path()) as conn:
        updated = database.mark_all_notifications_read(conn, user_id)
    return jsonify({"success": True, "updated": updated})


@notifications_bp.route("/api/notifications/<int:notification_id>", methods=["PATCH"])
@require_login
def mark_read(user_id: int, notification_id: int):
    with database.db_connection(_db_path()) as conn:
        if not database.mark_notification_read(conn, notification_id, user_id):
            return jsonify({"error": "Notification not found"}), 404
    return jsonify({"success": True})


@notifications_bp.route("/api/notifications/unread-count", methods=["GET"])
@require_login
def unread_count(user_id: int):
    with database.db_connection(_db_path()) as conn:
        count = database.unread_notification_count(conn, user_id)
    return jsonify({"count": count})
