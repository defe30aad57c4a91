"""
core/limiter.py -- Shared slowapi rate limiter instance.

Lives in core/ because both HTTP layers need it: api/main.py mounts it as
middleware and api/routes/v1/qr.py applies per-route limits, while
web/routes.py throttles the browser redemption route. Neither layer may
import the other, so the shared instance sits below both.

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Redemption is the endpoint worth throttling: the token space is far too large
to brute-force, but an unthrottled endpoint still lets a client hammer the
identity authority through us.

Layer rule: imports core.config only.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    enabled=get_settings().rate_limit_enabled,
)


def redeem_limit() -> str:
    return get_settings().redeem_rate_limit


def issue_limit() -> str:
    return get_settings().issue_rate_limit
