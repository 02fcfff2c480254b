"""Retrying HTTP requests for GitHub, Resend and the push services.

Transient failures (connection errors, timeouts, 5xx gateway errors and
rate limits) are retried with exponential backoff plus jitter.  When the
server says how long to wait, via ``Retry-After`` or GitHub's
``X-RateLimit-Reset``, that wait is used instead, up to
:data:`MAX_SERVER_WAIT`.  A longer wait is not worth blocking a cron
batch for, so the rate-limited response is handed back to the caller.
"""

from __future__ import annotations

import random
import time

import requests

from issue_hunter.logging_config import setup_logging

logger = setup_logging(__name__)

ATTEMPTS = 3
BACKOFF_BASE = 2.0
JITTER = 1.0
MAX_SERVER_WAIT = 60.0

TRANSIENT_STATUSES = frozenset({429, 502, 503, 504})


def backoff_delay(attempt: int, base: float = BACKOFF_BASE, jitter: float = JITTER) -> float:
    """``base * 2**attempt`` seconds plus up to *jitter* seconds of noise."""
    return base * (2 ** attempt) + random.uniform(0, jitter)


def _is_rate_limited(resp: requests.Response) -> bool:
    # GitHub answers an exhausted quota with 403 rather than 429.
    return resp.status_code == 403 and resp.headers.get("X-RateLimit-Remaining") == "0"


def server_wait(resp: requests.Response, now: float | None = None) -> float | None:
    """Seconds the server asked us to wait, or ``None`` if it did not say."""
    retry_after = resp.headers.get("Retry-After")
    if retry_after is not None:
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            return None
    reset = resp.headers.get("X-RateLimit-Reset")
    if reset is not None and _is_rate_limited(resp):
        try:
            return max(0.0, float(reset) - (time.time() if now is None else now))
        except ValueError:
            return None
    return None


def request_with_retry(
    method: str,
    url: str,
    *,
    attempts: int = ATTEMPTS,
    backoff_base: float = BACKOFF_BASE,
    jitter: float = JITTER,
    **kwargs,
) -> requests.Response:
    """Send a request, retrying transient failures.

    *kwargs* go straight to :func:`requests.request`.  Once the attempts
    are used up the last response is returned whatever its status, and
    the last network error is re-raised.  Callers decide what a non-2xx
    status means.
    """
    for attempt in range(1, attempts):
        try:
            resp = requests.request(method, url, **kwargs)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
            delay = backoff_delay(attempt, backoff_base, jitter)
            logger.info(
                "%s %s failed (%s); attempt %d/%d, retrying in %.1fs",
                method, url, exc, attempt, attempts, delay,
            )
            time.sleep(delay)
            continue

        if not (resp.status_code in TRANSIENT_STATUSES or _is_rate_limited(resp)):
            return resp

        delay = server_wait(resp)
        if delay is None:
            delay = backoff_delay(attempt, backoff_base, jitter)
        elif delay > MAX_SERVER_WAIT:
            logger.warning(
                "%s %s rate limited for %.0fs; not waiting", method, url, delay,
            )
            return resp
        logger.info(
            "%s %s returned %d; attempt %d/%d, retrying in %.1fs",
            method, url, resp.status_code, attempt, attempts, delay,
        )
        time.sleep(delay)

    return requests.request(method, url, **kwargs)
