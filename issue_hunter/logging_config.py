"""JSON-lines logging for Issue Hunter.

All ``issue_hunter.*`` loggers hand their records to the package logger,
which writes one JSON object per line to stderr.  The contextual fields
below are copied into the object when a call passes them in ``extra``::

    logger = setup_logging(__name__)
    logger.info("Tracking issue", extra={"repo": "acme/widgets", "issue_id": 7})

``create_app`` calls :func:`set_level` with the configured ``LOG_LEVEL``.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone

PACKAGE_LOGGER = "issue_hunter"

CONTEXT_FIELDS = ("repo", "user_id", "issue_id", "issue_number", "status")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(
            (field, getattr(record, field))
            for field in CONTEXT_FIELDS
            if getattr(record, field, None) is not None
        )
        if record.exc_info and record.exc_info[1] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class _StderrHandler(logging.StreamHandler):
    """Always writes to the current ``sys.stderr`` (pytest swaps it out)."""

    @property
    def stream(self):
        return sys.stderr

    @stream.setter
    def stream(self, value):
        pass


def _package_logger() -> logging.Logger:
    root = logging.getLogger(PACKAGE_LOGGER)
    if not any(isinstance(h, _StderrHandler) for h in root.handlers):
        handler = _StderrHandler()
        handler.setFormatter(JSONFormatter())
        root.addHandler(handler)
        root.propagate = False
        root.setLevel(getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO))
    return root


def set_level(level: str) -> None:
    logger = _package_logger()
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))


def setup_logging(name: str = PACKAGE_LOGGER) -> logging.Logger:
    """Return the logger for *name*, making sure JSON output is wired up.

    Names outside the ``issue_hunter`` namespace are nested under it so
    they share the handler.
    """
    _package_logger()
    if name != PACKAGE_LOGGER and not name.startswith(PACKAGE_LOGGER + "."):
        name = f"{PACKAGE_LOGGER}.{name}"
    return logging.getLogger(name)
