"""Fan-out helpers for the process-wide worker pool."""

from __future__ import annotations

from concurrent.futures import Future, as_completed
from typing import Any, Hashable, Mapping

from issue_hunter.logging_config import setup_logging

logger = setup_logging(__name__)


def join_tolerant(
    futures: Mapping[Future, Hashable], what: str = "task",
) -> tuple[dict[Hashable, Any], int]:
    """Wait for every future, collecting results without raising.

    *futures* maps each future to a key (usually an issue id).  Returns
    ``(results, failed)`` where *results* maps keys to return values of the
    futures that completed normally and *failed* counts those that raised;
    each failure is logged with its traceback.
    """
    results: dict[Hashable, Any] = {}
    failed = 0
    for future in as_completed(futures):
        key = futures[future]
        try:
            results[key] = future.result()
        except Exception:
            failed += 1
            logger.error("%s %s failed", what, key, exc_info=True)
    return results, failed
