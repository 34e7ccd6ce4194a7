"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route
modules under api/routes/v1/ (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

This is the per-IP front door only. The per-account limits that must hold
across processes (code issuance, email sends) live in auth/ratelimit.py and
count durable rows in the database.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

# Applied to login and 2FA completion. LOGIN_RATE_LIMIT, e.g. "10/minute".
LOGIN_LIMIT = get_settings().login_rate_limit
