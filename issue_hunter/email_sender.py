"""E-mail delivery through the Resend HTTP API.

Message bodies are rendered from the jinja2 templates shipped in
``issue_hunter/templates``.  When no API key is configured every send is
skipped with a warning, so a deployment without e-mail still runs.
"""

from __future__ import annotations

from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from issue_hunter.log_utils import sanitize_log
from issue_hunter.logging_config import setup_logging
from issue_hunter.retry_utils import request_with_retry

logger = setup_logging(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
TEMPLATES_DIR = Path(__file__).parent / "templates"


def create_template_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=select_autoescape(["html", "xml"]),
    )


class EmailSender:
    def __init__(self, api_key: str, from_email: str, app_base_url: str) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.app_base_url = app_base_url.rstrip("/")
        self.env = create_template_env()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def render(self, template_name: str, **context) -> str:
        context.setdefault("settings_url", f"{self.app_base_url}/dashboard/settings")
        return self.env.get_template(template_name).render(**context)

    def new_issue_email(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        issue_title: str,
        issue_url: str,
        item_type: str = "issue",
    ) -> tuple[str, str]:
        subject = f"New {item_type} in {owner}/{repo}: #{issue_number}"
        html = self.render(
            "new_issue.html",
            owner=owner, repo=repo, issue_number=issue_number,
            issue_title=issue_title, issue_url=issue_url, item_type=item_type,
        )
        return subject, html

    def draft_ready_email(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        pr_number: int,
        draft_url: str,
    ) -> tuple[str, str]:
        subject = f"Draft PR #{pr_number} ready for review: {owner}/{repo}"
        html = self.render(
            "draft_ready.html",
            owner=owner, repo=repo, issue_number=issue_number,
            pr_number=pr_number, draft_url=draft_url,
        )
        return subject, html

    def send(self, to: str, subject: str, html: str) -> bool:
        """Send one message; returns ``True`` when Resend accepted it.

        Network errors propagate to the caller.
        """
        if not self.configured:
            logger.warning("RESEND_API_KEY not set, skipping email")
            return False
        resp = request_with_retry(
            "POST",
            RESEND_API_URL,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json={"from": self.from_email, "to": [to], "subject": subject, "html": html},
            timeout=30,
        )
        if not resp.ok:
            logger.warning(
                "Resend rejected email to %s: %d %s",
                sanitize_log(to), resp.status_code, sanitize_log(resp.text[:200]),
            )
            return False
        return True
