"""Watched-repository blueprint -- list, add, edit, remove, sync and search."""

import logging

from flask import Blueprint, jsonify, request as flask_request

from issue_hunter.autofix import ActionError
from issue_hunter.extensions import limiter
from issue_hunter.github_gateway import GatewayError
from issue_hunter.helpers import action_error_response, require_login, service

log = logging.getLogger(__name__)

repos_bp = Blueprint("repos", __name__)

_SEARCH_TYPES = ("all", "name", "owner")
_SEARCH_PER_PAGE = 20


@repos_bp.route("/api/repos", methods=["GET"])
@require_login
def list_repos(user_id: int):
    return jsonify({"items": service("WATCHLIST").list_for_user(user_id)})


@repos_bp.route("/api/repos", methods=["POST"])
@limiter.limit("10/minute")
@require_login
def add_repo(user_id: int):
    body = flask_request.get_json(silent=True) or {}
    try:
        repo = service("WATCHLIST").add(
            user_id,
            body.get("owner", ""),
            body.get("repo", ""),
            label_filters=body.get("label_filters") or body.get("labels") or [],
            title_query=body.get("title_query"),
        )
    except ActionError as exc:
        return action_error_response(exc)
    return jsonify(repo), 201


@repos_bp.route("/api/repos/<int:repo_id>", methods=["PATCH"])
@require_login
def update_repo(user_id: int, repo_id: int):
    body = flask_request.get_json(silent=True) or {}
    frozen = body.get("frozen")
    try:
        repo = service("WATCHLIST").update(
            user_id,
            repo_id,
            label_filters=body.get("label_filters"),
            title_query=body.get("title_query") or None,
            frozen=bool(frozen) if frozen is not None else None,
            clear_title_query="title_query" in body and not body.get("title_query"),
        )
    except ActionError as exc:
        return action_error_response(exc)
    return jsonify(repo)


@repos_bp.route("/api/repos/<int:repo_id>", methods=["DELETE"])
@require_login
def delete_repo(user_id: int, repo_id: int):
    try:
        service("WATCHLIST").remove(user_id, repo_id)
    except ActionError as exc:
        return action_error_response(exc)
    return jsonify({"success": True})


@repos_bp.route("/api/repos/sync", methods=["POST"])
@limiter.limit("6/minute")
@require_login
def sync_repos(user_id: int):
    try:
        stats = service("DISCOVERY").sync_user(user_id)
    except Exception:
        log.exception("Sync failed for user %s", user_id)
        return jsonify({"error": "Failed to sync repositories"}), 500
    return jsonify({"success": True, **stats})


@repos_bp.route("/api/repos/search", methods=["GET"])
@require_login
def search_repos(user_id: int):
    query = (flask_request.args.get("q") or "").strip()
    if len(query) < 2:
        return jsonify({"error": "Query must be at least 2 characters"}), 400
    search_type = flask_request.args.get("type", "all")
    if search_type not in _SEARCH_TYPES:
        search_type = "all"
    try:
        page = max(1, int(flask_request.args.get("page", 1)))
    except ValueError:
        page = 1

    try:
        gateway = service("GATEWAYS").for_user(user_id)
        result = gateway.search_repositories(query, page, _SEARCH_PER_PAGE, search_type)
    except GatewayError as exc:
        log.warning("Repository search failed: %s", exc)
        return jsonify({"error": "Failed to search repositories"}), 500
    return jsonify(result)
