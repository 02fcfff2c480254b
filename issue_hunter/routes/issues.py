"""Tracked-issue blueprint -- listing and the human lifecycle actions."""

import logging

from flask import Blueprint, jsonify, request as flask_request

from issue_hunter import database
from issue_hunter.autofix import ActionError
from issue_hunter.helpers import _arg_flag, action_error_response, require_login, service
from issue_hunter.models import AUTO_FIX_STATUSES

log = logging.getLogger(__name__)

issues_bp = Blueprint("issues", __name__)


@issues_bp.route("/api/issues", methods=["GET"])
@require_login
def list_issues(user_id: int):
    status = flask_request.args.get("status", "")
    if status and status not in AUTO_FIX_STATUSES:
        return jsonify({"error": "Unknown status"}), 400
    with database.db_connection(service("APP_CONFIG").db_path) as conn:
        items = database.query_issues_for_user(
            conn, user_id, status=status, unread_only=_arg_flag("unread"),
        )
    return jsonify({"items": items, "total": len(items)})


@issues_bp.route("/api/issues/<int:issue_id>", methods=["PATCH"])
@require_login
def update_issue(user_id: int, issue_id: int):
    body = flask_request.get_json(silent=True) or {}
    if "is_read" not in body:
        return jsonify({"error": "Nothing to update"}), 400
    with database.db_connection(service("APP_CONFIG").db_path) as conn:
        if database.get_issue_with_repo(conn, issue_id, user_id=user_id) is None:
            return jsonify({"error": "Issue not found"}), 404
        database.update_issue(conn, issue_id, is_read=int(bool(body["is_read"])))
        issue = database.get_tracked_issue(conn, issue_id)
    return jsonify(issue.to_dict())


def _action(fn, user_id: int, issue_id: int):
    try:
        return jsonify(fn(user_id, issue_id))
    except ActionError as exc:
        return action_error_response(exc)


@issues_bp.route("/api/issues/<int:issue_id>/claim", methods=["POST"])
@require_login
def claim_issue(user_id: int, issue_id: int):
    return _action(service("AUTOFIX").claim, user_id, issue_id)


@issues_bp.route("/api/issues/<int:issue_id>/claim", methods=["DELETE"])
@require_login
def unclaim_issue(user_id: int, issue_id: int):
    return _action(service("AUTOFIX").unclaim, user_id, issue_id)


@issues_bp.route("/api/issues/<int:issue_id>/retry", methods=["POST"])
@require_login
def retry_issue(user_id: int, issue_id: int):
    return _action(service("AUTOFIX").retry, user_id, issue_id)


@issues_bp.route("/api/issues/<int:issue_id>/requeue", methods=["POST"])
@require_login
def requeue_issue(user_id: int, issue_id: int):
    return _action(service("AUTOFIX").requeue, user_id, issue_id)


@issues_bp.route("/api/issues/<int:issue_id>/restore", methods=["POST"])
@require_login
def restore_issue(user_id: int, issue_id: int):
    return _action(service("RECONCILER").restore, user_id, issue_id)


@issues_bp.route("/api/issues/<int:issue_id>/archive", methods=["POST"])
@require_login
def archive_issue(user_id: int, issue_id: int):
    return _action(service("RECONCILER").archive, user_id, issue_id)
