# ot_allocation/limiter.py
# Holds the rate limiter instance so main.py and the routers can share it
# without importing each other.

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings

_settings = get_settings()

limiter = Limiter(key_func=get_remote_address, enabled=_settings.rate_limit_enabled)
BOOKING_RATE_LIMIT = _settings.booking_rate_limit
