"""Drafts blueprint -- review, publish and reject agent-generated PRs."""

from flask import Blueprint, jsonify

from issue_hunter import database
from issue_hunter.autofix import ActionError
from issue_hunter.helpers import action_error_response, require_login, service
from issue_hunter.models import DRAFT_READY

drafts_bp = Blueprint("drafts", __name__)


@drafts_bp.route("/api/drafts", methods=["GET"])
@require_login
def list_drafts(user_id: int):
    with database.db_connection(service("APP_CONFIG").db_path) as conn:
        items = database.query_issues_for_user(conn, user_id, status=DRAFT_READY)
    return jsonify({"items": items, "total": len(items)})


@drafts_bp.route("/api/drafts/<int:issue_id>", methods=["GET"])
@require_login
def get_draft(user_id: int, issue_id: int):
    try:
        return jsonify(service("AUTOFIX").get_draft(user_id, issue_id))
    except ActionError as exc:
        return action_error_response(exc)


@drafts_bp.route("/api/drafts/<int:issue_id>/publish", methods=["POST"])
@require_login
def publish_draft(user_id: int, issue_id: int):
    try:
        return jsonify(service("AUTOFIX").publish(user_id, issue_id))
    except ActionError as exc:
        return action_error_response(exc)


@drafts_bp.route("/api/drafts/<int:issue_id>/reject", methods=["POST"])
@require_login
def reject_draft(user_id: int, issue_id: int):
    try:
        return jsonify(service("AUTOFIX").reject(user_id, issue_id))
    except ActionError as exc:
        return action_error_response(exc)
