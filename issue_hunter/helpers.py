"""Shared helpers for the Flask blueprints.

Provides the authentication decorators, service lookup and the JSON
shape of action errors.
"""

import functools
import hmac
from typing import Any

from flask import current_app, jsonify, request as flask_request

from issue_hunter.autofix import ActionError
from issue_hunter.oauth import get_current_user_id


def _is_cron_authorized() -> bool:
    """Check the ``Authorization: Bearer <CRON_SECRET>`` header.

    Fails closed: with no secret configured every caller is rejected.
    """
    expected = current_app.config["APP_CONFIG"].cron_secret
    if not expected:
        return False
    auth = flask_request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return False
    provided = auth[7:]
    return bool(provided) and hmac.compare_digest(provided, expected)


def require_cron_secret(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        if not _is_cron_authorized():
            return jsonify({"error": "Unauthorized"}), 401
        return fn(*args, **kwargs)
    return wrapper


def require_login(fn):
    """Decorator for dashboard endpoints; passes ``user_id`` to the view."""
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        user_id = get_current_user_id()
        if user_id is None:
            return jsonify({"error": "Unauthorized"}), 401
        return fn(user_id, *args, **kwargs)
    return wrapper


def service(name: str) -> Any:
    """Fetch a process-scoped service built by ``create_app``."""
    return current_app.config[name]


def action_error_response(exc: ActionError):
    return jsonify({"error": exc.message}), exc.status_code


def _arg_flag(name: str) -> bool:
    return flask_request.args.get(name, "").lower() in ("1", "true", "yes")
