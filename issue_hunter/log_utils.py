"""Utilities for safe logging of user-provided values."""

from __future__ import annotations

import re

_CONTROL_CHAR_RE = re.compile(r"[\r\n\x00-\x1f\x7f]")


def sanitize_log(value: object) -> str:
    """Sanitize a value for safe inclusion in log messages.

    Issue titles, repository names and webhook fields all come from
    GitHub users.  Newlines and other ASCII control characters are
    stripped so they cannot forge log entries (CWE-117).
    """
    return _CONTROL_CHAR_RE.sub("", str(value))


def repo_slug(owner: str, repo: str) -> str:
    """Return a sanitized ``owner/repo`` string for log messages."""
    return f"{sanitize_log(owner)}/{sanitize_log(repo)}"
