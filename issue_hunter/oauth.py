"""GitHub OAuth sign-in.

The only job of the sign-in flow here is to capture the user's access
token: it is stored on the ``users`` row and used by every gateway call
made on the user's behalf, including cron and webhook work that runs
without a session.  ``session["user_id"]`` identifies the caller of the
dashboard API.
"""

import hmac
import logging
import secrets
from urllib.parse import urlencode

import requests
from flask import (
    Blueprint,
    current_app,
    jsonify,
    redirect,
    request as flask_request,
    session,
    url_for,
)

from issue_hunter import database

log = logging.getLogger(__name__)

oauth_bp = Blueprint("oauth", __name__)

_GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
_GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
_GITHUB_API = "https://api.github.com"

# Assigning the coding agent and mirroring issues into forks needs repo scope.
_SCOPE = "read:user user:email repo"


def _config():
    return current_app.config["APP_CONFIG"]


def is_oauth_configured() -> bool:
    config = _config()
    return bool(config.github_client_id and config.github_client_secret)


def get_current_user_id() -> int | None:
    return session.get("user_id")


def _gh_get(url: str, token: str, params: dict | None = None) -> requests.Response:
    headers = {
        "Authorization": f"token {token}",
        "Accept": "application/vnd.github+json",
    }
    return requests.get(url, headers=headers, params=params or {}, timeout=15)


def _fetch_primary_email(token: str) -> str:
    resp = _gh_get(f"{_GITHUB_API}/user/emails", token)
    if resp.status_code != 200:
        return ""
    for entry in resp.json():
        if entry.get("primary") and entry.get("verified"):
            return entry.get("email", "")
    return ""


def _fetch_user_profile(token: str) -> dict:
    resp = _gh_get(f"{_GITHUB_API}/user", token)
    resp.raise_for_status()
    data = resp.json()
    return {
        "login": data["login"],
        "name": data.get("name") or data["login"],
        "email": data.get("email") or _fetch_primary_email(token),
        "avatar_url": data.get("avatar_url", ""),
    }


def _dashboard_url() -> str:
    return f"{_config().app_base_url}/dashboard"


@oauth_bp.route("/login")
def login():
    if not is_oauth_configured():
        return jsonify({"error": "OAuth not configured"}), 400
    callback = url_for("oauth.callback", _external=True)
    state = secrets.token_urlsafe(24)
    session["oauth_state"] = state
    query = urlencode({
        "client_id": _config().github_client_id,
        "redirect_uri": callback,
        "scope": _SCOPE,
        "state": state,
    })
    return redirect(f"{_GITHUB_AUTHORIZE_URL}?{query}")


@oauth_bp.route("/callback")
def callback():
    code = flask_request.args.get("code")
    expected_state = session.pop("oauth_state", "")
    state = flask_request.args.get("state", "")
    if not code:
        return redirect(_dashboard_url())
    if not expected_state or not hmac.compare_digest(state, expected_state):
        log.warning("OAuth callback with missing or mismatched state")
        return redirect(_dashboard_url())

    config = _config()
    try:
        resp = requests.post(
            _GITHUB_TOKEN_URL,
            json={
                "client_id": config.github_client_id,
                "client_secret": config.github_client_secret,
                "code": code,
            },
            headers={"Accept": "application/json"},
            timeout=15,
        )
    except requests.exceptions.RequestException:
        log.exception("OAuth token exchange failed")
        return redirect(_dashboard_url())
    if resp.status_code != 200:
        log.warning("OAuth token exchange failed: %s", resp.status_code)
        return redirect(_dashboard_url())

    access_token = resp.json().get("access_token")
    if not access_token:
        log.warning("No access_token in OAuth response")
        return redirect(_dashboard_url())

    try:
        profile = _fetch_user_profile(access_token)
    except requests.exceptions.RequestException:
        log.exception("Failed to fetch user profile from GitHub")
        return redirect(_dashboard_url())

    with database.db_connection(config.db_path) as conn:
        user_id = database.upsert_user(
            conn,
            profile["login"],
            access_token,
            name=profile["name"],
            email=profile["email"],
            avatar_url=profile["avatar_url"],
        )
    session.clear()
    session["user_id"] = user_id
    log.info("User signed in: %s", profile["login"])
    return redirect(_dashboard_url())


@oauth_bp.route("/logout")
def logout():
    session.pop("user_id", None)
    return redirect(_config().app_base_url)


@oauth_bp.route("/api/me")
def api_me():
    user_id = get_current_user_id()
    user = None
    if user_id is not None:
        with database.db_connection(_config().db_path) as conn:
            user = database.get_user(conn, user_id)
    if user is None:
        return jsonify({"logged_in": False, "oauth_configured": is_oauth_configured()})
    return jsonify({
        "logged_in": True,
        "oauth_configured": True,
        "user": user.to_dict(),
    })
