"""
Shared rate limiter (slowapi).

Set ENV=TEST or DISABLE_RATE_LIMITS=1 to disable rate limiting so tests can
run without tripping limits.
"""

import uuid

from slowapi import Limiter
from slowapi.util import get_remote_address

from phiguard.app.config import rate_limits_disabled


def get_limiter() -> Limiter:
    if rate_limits_disabled():
        return Limiter(key_func=lambda: str(uuid.uuid4()), enabled=False)
    return Limiter(key_func=get_remote_address)


limiter = get_limiter()
