"""Cron blueprint -- issue discovery, agent polling and closure sweeps.

Each endpoint is called by an external scheduler with
``Authorization: Bearer <CRON_SECRET>`` and answers with the batch's
count dict.  Failures of individual repos or issues are part of the
counts; only an unexpected error aborts the batch with a 500.
"""

import logging

from flask import Blueprint, jsonify

from issue_hunter.helpers import require_cron_secret, service

log = logging.getLogger(__name__)

cron_bp = Blueprint("cron", __name__)


def _run(job_name: str, job):
    try:
        result = job()
    except Exception:
        log.exception("Cron job %s failed", job_name)
        return jsonify({"error": "Internal server error"}), 500
    return jsonify({"success": True, **result})


@cron_bp.route("/api/cron/poll-issues", methods=["GET", "POST"])
@require_cron_secret
def poll_issues():
    return _run("poll-issues", service("DISCOVERY").poll_all)


@cron_bp.route("/api/cron/poll-agent", methods=["GET", "POST"])
@require_cron_secret
def poll_agent():
    return _run("poll-agent", service("AUTOFIX").poll_generating)


@cron_bp.route("/api/cron/poll-issue-state", methods=["GET", "POST"])
@require_cron_secret
def poll_issue_state():
    return _run("poll-issue-state", service("RECONCILER").sweep)
