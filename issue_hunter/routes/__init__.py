"""Route blueprints for the Issue Hunter Flask application."""

from .cron import cron_bp
from .drafts import drafts_bp
from .issues import issues_bp
from .notifications import notifications_bp
from .repos import repos_bp
from .settings import settings_bp
from .webhooks import webhooks_bp

__all__ = [
    "cron_bp",
    "drafts_bp",
    "issues_bp",
    "notifications_bp",
    "repos_bp",
    "settings_bp",
    "webhooks_bp",
]
