"""Configuration for the Issue Hunter server.

All settings are loaded from environment variables.  Required variables
(``GITHUB_WEBHOOK_SECRET``, ``CRON_SECRET``, ``FLASK_SECRET_KEY``) must be
set before the server starts.

Tunables of the auto-fix lifecycle can additionally be placed in a YAML
file named by ``ISSUE_HUNTER_CONFIG``; values from the file override the
environment::

    agent_login: copilot
    generating_timeout_hours: 2
    fork_ready_attempts: 12
    fork_ready_delay: 5
    max_workers: 8
    app_base_url: https://hunter.example.com
"""

from __future__ import annotations

import dataclasses
import logging
import os
import sys
from dataclasses import dataclass

import yaml

logger = logging.getLogger(__name__)

_FILE_TUNABLES = {
    "agent_login": str,
    "generating_timeout_hours": float,
    "fork_ready_attempts": int,
    "fork_ready_delay": float,
    "max_workers": int,
    "app_base_url": str,
}


@dataclass(frozen=True)
class AppConfig:
    webhook_secret: str
    cron_secret: str
    secret_key: str

    db_path: str = "issue_hunter.db"

    github_client_id: str = ""
    github_client_secret: str = ""

    resend_api_key: str = ""
    from_email: str = "notifications@opensourcehunter.dev"

    vapid_public_key: str = ""
    vapid_private_key: str = ""
    vapid_email: str = ""

    app_base_url: str = "http://localhost:3000"

    agent_login: str = "copilot"
    generating_timeout_hours: float = 2.0
    fork_ready_attempts: int = 12
    fork_ready_delay: float = 5.0
    max_workers: int = 8

    server_host: str = "0.0.0.0"
    server_port: int = 3000
    debug: bool = False

    log_level: str = "INFO"

    @property
    def push_configured(self) -> bool:
        return bool(self.vapid_public_key and self.vapid_private_key and self.vapid_email)

    @classmethod
    def from_env(cls) -> AppConfig:
        webhook_secret = os.environ.get("GITHUB_WEBHOOK_SECRET", "")
        if not webhook_secret:
            logger.error("GITHUB_WEBHOOK_SECRET is required")
            sys.exit(1)

        cron_secret = os.environ.get("CRON_SECRET", "")
        if not cron_secret:
            logger.error("CRON_SECRET is required")
            sys.exit(1)

        secret_key = os.environ.get("FLASK_SECRET_KEY", "")
        if not secret_key:
            logger.error("FLASK_SECRET_KEY is required")
            sys.exit(1)

        config = cls(
            webhook_secret=webhook_secret,
            cron_secret=cron_secret,
            secret_key=secret_key,
            db_path=os.environ.get("ISSUE_HUNTER_DB_PATH", "issue_hunter.db"),
            github_client_id=os.environ.get("GITHUB_CLIENT_ID", ""),
            github_client_secret=os.environ.get("GITHUB_CLIENT_SECRET", ""),
            resend_api_key=os.environ.get("RESEND_API_KEY", ""),
            from_email=os.environ.get("FROM_EMAIL", "notifications@opensourcehunter.dev"),
            vapid_public_key=os.environ.get("VAPID_PUBLIC_KEY", ""),
            vapid_private_key=os.environ.get("VAPID_PRIVATE_KEY", ""),
            vapid_email=os.environ.get("VAPID_EMAIL", ""),
            app_base_url=os.environ.get("APP_BASE_URL", "http://localhost:3000").rstrip("/"),
            agent_login=os.environ.get("AGENT_LOGIN", "copilot"),
            generating_timeout_hours=float(os.environ.get("GENERATING_TIMEOUT_HOURS", "2")),
            fork_ready_attempts=int(os.environ.get("FORK_READY_ATTEMPTS", "12")),
            fork_ready_delay=float(os.environ.get("FORK_READY_DELAY", "5")),
            max_workers=int(os.environ.get("MAX_WORKERS", "8")),
            server_host=os.environ.get("SERVER_HOST", "0.0.0.0"),
            server_port=int(os.environ.get("SERVER_PORT", "3000")),
            debug=os.environ.get("FLASK_DEBUG", "false").lower() == "true",
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )

        config_file = os.environ.get("ISSUE_HUNTER_CONFIG", "")
        if config_file:
            config = apply_config_file(config, config_file)
        return config


def apply_config_file(config: AppConfig, path: str) -> AppConfig:
    """Return *config* with tunables from the YAML file at *path* applied.

    Unknown keys are ignored with a warning; a missing or unreadable file
    leaves *config* unchanged.
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Could not read config file %s: %s", path, exc)
        return config

    if not isinstance(data, dict):
        logger.warning("Config file %s must contain a mapping", path)
        return config

    overrides: dict = {}
    for key, value in data.items():
        caster = _FILE_TUNABLES.get(key)
        if caster is None:
            logger.warning("Ignoring unknown config key: %s", key)
            continue
        try:
            overrides[key] = caster(value)
        except (TypeError, ValueError):
            logger.warning("Invalid value for %s: %r", key, value)

    if "app_base_url" in overrides:
        overrides["app_base_url"] = overrides["app_base_url"].rstrip("/")
    return dataclasses.replace(config, **overrides)
