from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings

_settings = get_settings()

limiter = Limiter(key_func=get_remote_address, enabled=_settings.RATE_LIMIT_ENABLED)


def login_limit() -> str:
    return get_settings().LOGIN_RATE_LIMIT
