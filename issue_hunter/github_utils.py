"""Shared GitHub API helpers for the gateway and the fork utilities."""

from __future__ import annotations

GITHUB_API = "https://api.github.com"
GRAPHQL_URL = f"{GITHUB_API}/graphql"

# Opt-in header required by the Copilot assignment GraphQL fields.
AGENT_FEATURES_HEADER = {"GraphQL-Features": "issues_copilot_assignment_api_support"}


def gh_headers(token: str = "") -> dict[str, str]:
    """Return standard GitHub API request headers.

    Parameters
    ----------
    token : str
        A user OAuth access token.  When empty the ``Authorization``
        header is omitted (anonymous requests).
    """
    h: dict[str, str] = {"Accept": "application/vnd.github+json"}
    if token:
        h["Authorization"] = f"token {token}"
    return h


def label_names(labels: list) -> list[str]:
    """Normalise a GitHub ``labels`` array to a list of names.

    The REST API returns label objects, but webhook payloads and older
    endpoints may carry bare strings; empty names are dropped.
    """
    names = []
    for label in labels or []:
        name = label if isinstance(label, str) else (label or {}).get("name")
        if name:
            names.append(name)
    return names
