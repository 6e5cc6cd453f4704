"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the route modules
(to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Limits (per client IP, from core.config):
  POST /auth/register  -- REGISTER_RATE_LIMIT (default 5 per 15 minutes)
  POST /auth/login     -- LOGIN_RATE_LIMIT    (default 10 per 15 minutes)
  everything else      -- DEFAULT_RATE_LIMIT  (default 100 per 15 minutes)
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[_settings.default_rate_limit],
    storage_uri="memory://",
    enabled=_settings.rate_limit_enabled,
)
