"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware) and api/routes/v1/auth.py
(per-route limits via @limiter.limit()). One shared instance means every
route counts against the same in-memory store; separate instances per
module would each keep their own counters and never trip.

Login throttling here is per client address and complements the per-account
lockout in auth/credentials.py: the limiter slows one source guessing many
accounts, the lockout slows many sources guessing one account.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_limit() -> str:
    """Resolved per request so tests and operators can change LOGIN_RATE_LIMIT without a reimport."""
    return get_settings().login_rate_limit
