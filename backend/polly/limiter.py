from slowapi import Limiter
from slowapi.util import get_remote_address

from polly.core.settings import get_settings

# Coarse per-IP ceiling on the auth endpoints, in front of the login guards.
# If later behind a proxy, parse X-Forwarded-For here.
limiter = Limiter(key_func=get_remote_address)


def auth_rate_limit() -> str:
    return get_settings().global_auth_rate_limit
