"""Flask server for Issue Hunter.

Receives GitHub issue webhooks, exposes the cron endpoints that drive
discovery, agent polling and closure sweeps, and serves the dashboard
JSON API.

Endpoints
---------
POST /api/webhooks/github           GitHub webhook receiver.
GET|POST /api/cron/poll-issues      Discover new issues on watched repos.
GET|POST /api/cron/poll-agent       Check ``generating`` issues for draft PRs.
GET|POST /api/cron/poll-issue-state Archive issues closed upstream.
/api/repos, /api/issues, /api/drafts, /api/notifications,
/api/settings/notifications, /api/push/subscribe
                                    Dashboard API (session login).
/login, /callback, /logout, /api/me GitHub OAuth sign-in.
GET  /healthz                       Health check.

Services are built once here and stored in ``app.config`` so the worker
pool and the senders live as long as the process.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import timedelta

from flask import Flask, jsonify, request as flask_request
from flask_cors import CORS

from issue_hunter import database
from issue_hunter.autofix import AutoFixOrchestrator
from issue_hunter.config import AppConfig
from issue_hunter.discovery import DiscoveryEngine
from issue_hunter.email_sender import EmailSender
from issue_hunter.extensions import limiter
from issue_hunter.github_gateway import GatewayFactory
from issue_hunter.logging_config import set_level
from issue_hunter.notifications import NotificationDispatcher
from issue_hunter.oauth import oauth_bp
from issue_hunter.push_sender import PushSender
from issue_hunter.reconciler import ClosureReconciler
from issue_hunter.routes import (
    cron_bp,
    drafts_bp,
    issues_bp,
    notifications_bp,
    repos_bp,
    settings_bp,
    webhooks_bp,
)
from issue_hunter.watchlist import WatchList

log = logging.getLogger(__name__)


def create_app(
    config: AppConfig | None = None,
    *,
    executor: Executor | None = None,
    gateways: GatewayFactory | None = None,
    email_sender: EmailSender | None = None,
    push_sender: PushSender | None = None,
) -> Flask:
    if config is None:
        config = AppConfig.from_env()

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    set_level(config.log_level)

    app = Flask(__name__)
    app.secret_key = config.secret_key
    app.config["APP_CONFIG"] = config
    CORS(app, resources={r"/api/*": {"origins": config.app_base_url}}, supports_credentials=True)

    with database.db_connection(config.db_path):
        pass

    if executor is None:
        executor = ThreadPoolExecutor(
            max_workers=config.max_workers, thread_name_prefix="issue-hunter",
        )
    if gateways is None:
        gateways = GatewayFactory(
            config.db_path,
            agent_login=config.agent_login,
            fork_ready_attempts=config.fork_ready_attempts,
            fork_ready_delay=config.fork_ready_delay,
        )
    if email_sender is None:
        email_sender = EmailSender(config.resend_api_key, config.from_email, config.app_base_url)
    if push_sender is None:
        push_sender = PushSender(
            config.vapid_public_key, config.vapid_private_key, config.vapid_email,
        )

    dispatcher = NotificationDispatcher(
        config.db_path, email_sender, push_sender, config.app_base_url,
    )
    orchestrator = AutoFixOrchestrator(
        config.db_path, gateways, dispatcher, executor,
        generating_timeout=timedelta(hours=config.generating_timeout_hours),
    )
    app.config.update(
        EXECUTOR=executor,
        GATEWAYS=gateways,
        DISPATCHER=dispatcher,
        AUTOFIX=orchestrator,
        DISCOVERY=DiscoveryEngine(config.db_path, gateways, dispatcher, orchestrator, executor),
        RECONCILER=ClosureReconciler(config.db_path, gateways, dispatcher),
        WATCHLIST=WatchList(config.db_path, gateways),
    )

    limiter.init_app(app)
    limiter.exempt(cron_bp)
    limiter.exempt(webhooks_bp)

    for bp in (
        oauth_bp, cron_bp, webhooks_bp, repos_bp, issues_bp,
        drafts_bp, notifications_bp, settings_bp,
    ):
        app.register_blueprint(bp)

    @app.after_request
    def _set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if flask_request.is_secure:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    @app.route("/healthz")
    def healthz():
        try:
            with database.db_connection(config.db_path) as conn:
                conn.execute("SELECT 1").fetchone()
        except Exception as exc:
            log.error("Health check failed: %s", exc)
            return jsonify({"status": "error", "detail": "database unavailable"}), 503
        return jsonify({"status": "ok"})

    return app
