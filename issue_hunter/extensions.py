"""Flask extensions bound to the app in ``create_app`` via ``init_app``.

The limiter guards the dashboard API.  Cron and webhook blueprints are
exempted when they are registered, since GitHub and the scheduler call
them from a handful of addresses.
"""

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

DEFAULT_RATE_LIMIT = "120/minute"

limiter = Limiter(
    get_remote_address,
    default_limits=[DEFAULT_RATE_LIMIT],
    storage_uri="memory://",
    headers_enabled=True,
)
